"""Lightweight aiohttp server -- the pipeline's local HTTP API.

Producers that can't link the pipeline directly POST events here; dashboards
read aggregates; operators inspect batches and trigger syncs.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from aiohttp import web
from pydantic import ValidationError

from core.models.events import Event

if TYPE_CHECKING:
    from core.config import AppConfig
    from pipeline.service import AnalyticsPipeline

logger = logging.getLogger(__name__)

_BATCH_STATUSES = ("pending", "sending", "complete", "failed")


def create_app(config: AppConfig, pipeline: AnalyticsPipeline) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()

    # Store references for route handlers
    app["config"] = config
    app["pipeline"] = pipeline

    # Register routes
    app.router.add_get("/health", handle_health)
    app.router.add_post("/events", handle_store_events)
    app.router.add_get("/aggregates", handle_list_aggregates)
    app.router.add_get("/aggregates/{aggregate_id}", handle_get_aggregate)
    app.router.add_get("/state/batches", handle_get_batches)
    app.router.add_post("/sync", handle_force_sync)
    app.router.add_post("/batches/{batch_id}/requeue", handle_requeue_batch)

    return app


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    """GET /health -- health check with store counts."""
    pipeline: AnalyticsPipeline = request.app["pipeline"]
    return web.json_response({
        "status": "ok",
        "pipeline": pipeline.stats(),
    })


async def handle_store_events(request: web.Request) -> web.Response:
    """POST /events -- store one event or a list of events.

    Body: {"eventType": "ad_impression", "eventCategory": "impression", ...}
          or a JSON array of such objects.
    """
    pipeline: AnalyticsPipeline = request.app["pipeline"]

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response({"error": "Invalid JSON"}, status=400)

    items = body if isinstance(body, list) else [body]
    if not items:
        return web.json_response({"error": "No events given"}, status=400)

    events: list[Event] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            return web.json_response({"error": f"Event {index} is not an object"}, status=400)
        if "eventType" not in item or "eventCategory" not in item:
            return web.json_response(
                {"error": f"Event {index} missing required fields: eventType, eventCategory"},
                status=400,
            )
        try:
            events.append(Event.model_validate(item))
        except ValidationError as exc:
            return web.json_response(
                {"error": f"Event {index} is invalid", "details": exc.errors(
                    include_url=False, include_context=False, include_input=False,
                )},
                status=400,
            )

    ids = await pipeline.store_events(events)
    if not ids:
        return web.json_response({"error": "Events could not be stored or delivered"}, status=503)

    return web.json_response({"ids": ids, "count": len(ids)}, status=201)


async def handle_list_aggregates(request: web.Request) -> web.Response:
    """GET /aggregates[?type=...] -- list aggregates, optionally by metric family."""
    pipeline: AnalyticsPipeline = request.app["pipeline"]
    aggregates = pipeline.list_aggregates(request.query.get("type"))
    return web.json_response([a.model_dump(mode="json") for a in aggregates])


async def handle_get_aggregate(request: web.Request) -> web.Response:
    """GET /aggregates/{aggregate_id} -- current data of one aggregate."""
    pipeline: AnalyticsPipeline = request.app["pipeline"]
    aggregate_id = request.match_info["aggregate_id"]

    record = pipeline.store.get_aggregate(aggregate_id)
    if record is None:
        return web.json_response({"error": "Aggregate not found"}, status=404)
    return web.json_response(record.model_dump(mode="json"))


async def handle_get_batches(request: web.Request) -> web.Response:
    """GET /state/batches[?status=...&limit=...] -- list delivery batches."""
    pipeline: AnalyticsPipeline = request.app["pipeline"]

    status = request.query.get("status")
    if status and status not in _BATCH_STATUSES:
        return web.json_response(
            {"error": f"status must be one of {list(_BATCH_STATUSES)}"},
            status=400,
        )
    try:
        limit = int(request.query.get("limit", "100"))
    except ValueError:
        return web.json_response({"error": "limit must be an integer"}, status=400)
    if limit < 1:
        return web.json_response({"error": "limit must be at least 1"}, status=400)

    batches = pipeline.store.list_batches(status=status, limit=limit)
    return web.json_response([b.model_dump(mode="json") for b in batches])


async def handle_force_sync(request: web.Request) -> web.Response:
    """POST /sync -- trigger an out-of-band delivery attempt."""
    pipeline: AnalyticsPipeline = request.app["pipeline"]
    triggered = await pipeline.force_sync()
    return web.json_response({"triggered": triggered, "pipeline": pipeline.stats()})


async def handle_requeue_batch(request: web.Request) -> web.Response:
    """POST /batches/{batch_id}/requeue -- give a failed batch another retry budget."""
    pipeline: AnalyticsPipeline = request.app["pipeline"]
    batch_id = request.match_info["batch_id"]

    batch = pipeline.requeue_batch(batch_id)
    if batch is None:
        return web.json_response({"error": "No failed batch with that id"}, status=404)
    return web.json_response(batch.model_dump(mode="json"))
