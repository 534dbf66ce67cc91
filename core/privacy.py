"""Event sanitizer -- the privacy gate every event passes before storage.

In "enhanced" mode metadata is reduced to an allow-list of safe keys for the
event's category, identity and health fields are stripped even when they
would otherwise be allowed, and string values are scrubbed of e-mail
addresses, phone numbers and SSN-like patterns. Anything whose safety can't
be determined is dropped.

In "standard" mode events pass through unchanged.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from core.models.events import Event, EventCategory

PrivacyMode = Literal["standard", "enhanced"]

# Keys safe for every category: identifiers, enums, counts, durations, flags.
BASE_ALLOWED_KEYS = frozenset({
    "id", "type", "category", "questionId", "answerId", "adId",
    "impressionId", "placementId", "interactionType", "duration",
    "completed", "success", "value", "count", "position",
    "referrer", "source", "target", "page", "component",
    "pageId", "action", "viewable", "error",
})

CATEGORY_ALLOWED_KEYS: dict[EventCategory, frozenset[str]] = {
    EventCategory.IMPRESSION: frozenset({
        "loadTime", "viewTime", "visibleRatio", "format", "templateId",
        "campaignId", "creativeId",
    }),
    EventCategory.ENGAGEMENT: frozenset({
        "scrollDepth", "hoverTime", "clickCount", "expanded", "dismissed",
        "engagementScore", "timeToClick",
    }),
    EventCategory.CONTEXT: frozenset({
        "topic", "topics", "intent", "confidence", "questionContext",
        "specialty", "clinicalCategory",
    }),
    EventCategory.USER_JOURNEY: frozenset({
        "step", "stepIndex", "fromPage", "toPage", "sessionAction",
        "pageType", "funnelStage",
    }),
    EventCategory.PERFORMANCE: frozenset({
        "latency", "renderTime", "responseTime", "statusCode",
    }),
    EventCategory.CONVERSION: frozenset({
        "conversionType", "conversionValue",
    }),
    EventCategory.VISIBILITY: frozenset({
        "visibleRatio", "visibleTime", "inViewport",
    }),
    EventCategory.ERROR: frozenset({
        "errorCode", "errorType", "recoverable",
    }),
}

# Stripped unconditionally, matched on the normalized key.
IDENTITY_KEYS = frozenset({
    "name", "firstname", "lastname", "fullname", "username",
    "email", "emailaddress", "phone", "phonenumber", "mobile",
    "address", "streetaddress", "zip", "zipcode", "postalcode",
    "location", "city", "geolocation", "latitude", "longitude",
    "useragent", "ua", "userid", "deviceid", "ipaddress", "ip",
    "dateofbirth", "dob", "birthdate", "age", "gender", "ssn",
    "diagnosis", "condition", "treatment", "medication", "medicalhistory",
    "symptoms", "labresults", "patientid", "mrn", "prescriptionnumber",
    "insuranceid", "healthplannumber", "questiontext",
})

# Any normalized key containing one of these is stripped too.
IDENTITY_KEYWORDS = (
    "email", "phone", "address", "birth", "patient", "diagnos",
    "medication", "symptom", "prescription", "useragent", "location",
    "firstname", "lastname", "fullname", "username",
)

_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_PHONE_RE = re.compile(r"(\+\d{1,3}[\s.-])?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")

_SCALARS = (str, int, float, bool)


class _Dropped:
    """Marker for values that fail the safety check."""


_DROP = _Dropped()


def normalize_key(key: str) -> str:
    return re.sub(r"[\s_\-.]", "", str(key)).lower()


def is_identity_key(key: str) -> bool:
    """True if the key names identity or health data."""
    norm = normalize_key(key)
    if norm in IDENTITY_KEYS:
        return True
    return any(word in norm for word in IDENTITY_KEYWORDS)


def allowed_keys_for(category: EventCategory | str) -> frozenset[str]:
    """Normalized allow-list for a category (base keys plus category extras)."""
    try:
        extras = CATEGORY_ALLOWED_KEYS.get(EventCategory(category), frozenset())
    except ValueError:
        extras = frozenset()
    return frozenset(normalize_key(k) for k in BASE_ALLOWED_KEYS | extras)


def scrub_text(value: str) -> str:
    """Replace e-mail, SSN and phone patterns inside a string."""
    value = _EMAIL_RE.sub("[REDACTED_EMAIL]", value)
    value = _SSN_RE.sub("[REDACTED_SSN]", value)
    value = _PHONE_RE.sub("[REDACTED_PHONE]", value)
    return value


def sanitize_metadata(metadata: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    """Keep allow-listed, non-identity keys whose values are provably safe."""
    result: dict[str, Any] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or is_identity_key(key):
            continue
        if normalize_key(key) not in allowed:
            continue
        clean = _sanitize_value(value, allowed)
        if clean is not _DROP:
            result[key] = clean
    return result


def _sanitize_value(value: Any, allowed: frozenset[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return scrub_text(value)
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, dict):
        return sanitize_metadata(value, allowed)
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            clean = _sanitize_value(item, allowed)
            if clean is _DROP:
                return _DROP
            items.append(clean)
        return items
    # Unknown types can't be shown to be safe.
    return _DROP


def sanitize(event: Event, mode: PrivacyMode = "enhanced") -> Event:
    """Return a copy of the event that is safe to persist and transmit.

    The input event is never modified.
    """
    if mode == "standard":
        return event

    allowed = allowed_keys_for(event.event_category)
    return event.model_copy(update={
        "metadata": sanitize_metadata(event.metadata, allowed),
        "context": event.context.model_copy(update={"user_agent": None}),
    })
