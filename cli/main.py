"""Beacon CLI -- the `beacon` command.

Usage:
    beacon start                 Start the pipeline and local HTTP API
    beacon status                Show store counts and configuration
    beacon sync                  Deliver pending batches now
    beacon sweep                 Run the retention sweep now
    beacon batches [--status S]  List delivery batches
    beacon requeue <batch_id>    Retry a failed batch with a fresh budget
    beacon aggregate [<id>]      Show one aggregate, or list them
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

import httpx

from core.config import HOME_ENV_VAR, AppConfig, load_config
from core.models.batches import Batch
from pipeline.service import AnalyticsPipeline

# A forced sync waits for the delivery it triggers.
_SERVER_TIMEOUT = 60.0


def _load(args: argparse.Namespace) -> AppConfig:
    if args.home:
        os.environ[HOME_ENV_VAR] = str(Path(args.home).expanduser())
    return load_config(config_path=args.config, env_path=args.env)


def _open_pipeline(config: AppConfig) -> AnalyticsPipeline:
    """A pipeline for one-shot commands: no timers are started."""
    return AnalyticsPipeline(config.pipeline, home=config.home_path)


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _call_server(config: AppConfig, method: str, path: str) -> httpx.Response | None:
    """Hand an operation to a running `beacon start`. None if no server answers.

    The server owns the store while it runs; a second process delivering or
    resetting batches next to it could send a batch twice.
    """
    url = f"http://{config.server.host}:{config.server.port}{path}"
    try:
        return httpx.request(method, url, timeout=_SERVER_TIMEOUT)
    except httpx.TransportError:
        return None


def cmd_start(args: argparse.Namespace) -> None:
    """Start the pipeline and the HTTP API."""
    from main import run, setup_logging
    setup_logging("INFO")

    if args.home:
        os.environ[HOME_ENV_VAR] = str(Path(args.home).expanduser())

    try:
        asyncio.run(run(config_path=args.config, env_path=args.env))
    except KeyboardInterrupt:
        pass


def cmd_status(args: argparse.Namespace) -> None:
    """Show configuration and store counts."""
    from cli.banner import print_banner
    print_banner()

    config = _load(args)
    pipeline = _open_pipeline(config)
    try:
        stats = pipeline.stats()
    finally:
        asyncio.run(pipeline.close())

    cfg = config.pipeline
    print(f"  Home:       {config.home_path}")
    print(f"  Database:   {pipeline.store.path}")
    print(f"  Endpoint:   {cfg.api_endpoint or '(none, local-only)'}")
    print(f"  Privacy:    {cfg.privacy_mode}")
    print(f"  Batch size: {cfg.batch_size}  Sync every: {cfg.sync_interval}s  Max retries: {cfg.max_retries}")
    print()
    print(f"  Events stored:    {stats['events']} ({stats['unbatched_events']} unbatched)")
    for status, count in stats["batches"].items():
        print(f"  Batches {status + ':':<9} {count}")
    print(f"  Aggregates:       {stats['aggregates']}")
    print()


def cmd_sync(args: argparse.Namespace) -> None:
    """Deliver pending batches now."""
    config = _load(args)

    async def _sync() -> tuple[bool, dict]:
        pipeline = _open_pipeline(config)
        try:
            # No server is running, so nothing else is delivering.
            pipeline.recover_in_flight()
            triggered = await pipeline.force_sync()
            return triggered, pipeline.stats()
        finally:
            await pipeline.close()

    response = _call_server(config, "POST", "/sync")
    if response is not None:
        response.raise_for_status()
        data = response.json()
        triggered, stats = data["triggered"], data["pipeline"]
    else:
        triggered, stats = asyncio.run(_sync())
    if not triggered:
        print("  Nothing to sync with: no api_endpoint or capture_dir configured.")
        sys.exit(1)
    batches = stats["batches"]
    print(
        f"  Sync done. pending={batches['pending']} complete={batches['complete']} "
        f"failed={batches['failed']} unbatched_events={stats['unbatched_events']}"
    )


def cmd_sweep(args: argparse.Namespace) -> None:
    """Run the retention sweep now."""
    config = _load(args)
    pipeline = _open_pipeline(config)
    try:
        removed = pipeline.sweep()
    finally:
        asyncio.run(pipeline.close())
    print(f"  Removed {removed} expired batch(es).")


def cmd_batches(args: argparse.Namespace) -> None:
    """List delivery batches."""
    config = _load(args)
    pipeline = _open_pipeline(config)
    try:
        batches = pipeline.store.list_batches(status=args.status, limit=args.limit)
    finally:
        asyncio.run(pipeline.close())

    if not batches:
        print("  No batches.")
        return
    for b in batches:
        line = f"  {b.batch_id}  {b.status:<8} events={len(b.event_ids):<4} attempts={b.attempts}"
        if b.last_error:
            line += f"  last_error={b.last_error}"
        print(line)


def cmd_requeue(args: argparse.Namespace) -> None:
    """Give a failed batch another retry budget."""
    config = _load(args)

    response = _call_server(config, "POST", f"/batches/{args.batch_id}/requeue")
    if response is not None:
        if response.status_code == 404:
            batch = None
        else:
            response.raise_for_status()
            batch = Batch.model_validate(response.json())
    else:
        pipeline = _open_pipeline(config)
        try:
            batch = pipeline.requeue_batch(args.batch_id)
        finally:
            asyncio.run(pipeline.close())

    if batch is None:
        print(f"  No failed batch with id {args.batch_id}.")
        sys.exit(1)
    print(f"  Requeued {batch.batch_id} ({len(batch.event_ids)} events).")


def cmd_aggregate(args: argparse.Namespace) -> None:
    """Show one aggregate, or list aggregates."""
    config = _load(args)
    pipeline = _open_pipeline(config)
    try:
        if args.aggregate_id:
            record = pipeline.store.get_aggregate(args.aggregate_id)
            if record is None:
                print(f"  No aggregate with id {args.aggregate_id}.")
                sys.exit(1)
            _print_json(record.model_dump(mode="json"))
        else:
            _print_json([a.model_dump(mode="json") for a in pipeline.list_aggregates(args.type)])
    finally:
        asyncio.run(pipeline.close())


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="beacon",
        description="Beacon -- durable on-device event pipeline",
    )
    parser.add_argument("--home", type=str, default=None, help="Beacon home directory")
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--env", type=str, default=None, help="Path to .env file")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("start", help="Start the pipeline and HTTP API")
    sub.add_parser("status", help="Show store counts and configuration")
    sub.add_parser("sync", help="Deliver pending batches now")
    sub.add_parser("sweep", help="Delete complete batches past the retention window")

    batches_parser = sub.add_parser("batches", help="List delivery batches")
    batches_parser.add_argument(
        "--status",
        choices=["pending", "sending", "complete", "failed"],
        default=None,
    )
    batches_parser.add_argument("--limit", type=int, default=50)

    requeue_parser = sub.add_parser("requeue", help="Retry a failed batch")
    requeue_parser.add_argument("batch_id", type=str)

    aggregate_parser = sub.add_parser("aggregate", help="Show or list aggregates")
    aggregate_parser.add_argument("aggregate_id", type=str, nargs="?", default=None)
    aggregate_parser.add_argument("--type", type=str, default=None, help="Filter by metric family")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    commands = {
        "start": cmd_start,
        "status": cmd_status,
        "sync": cmd_sync,
        "sweep": cmd_sweep,
        "batches": cmd_batches,
        "requeue": cmd_requeue,
        "aggregate": cmd_aggregate,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
