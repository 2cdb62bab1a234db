"""Webhook helper functions.

Secret generation, payload masking for logs, event-name extraction for
inbound requests and URL normalization.
"""

import hashlib
import json
import secrets
import time
from typing import Any, Dict, Iterable, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from .security import header_lookup

SENSITIVE_KEYS = [
    "password", "token", "secret", "key", "authorization", "auth",
    "credit_card", "card", "cvv", "cvc", "ccv", "ssn", "tax_id",
    "account_number", "social_security", "routing_number",
]

REDACTED = "[REDACTED]"

# Payload keys that commonly carry the event name, in lookup order
GENERIC_EVENT_KEYS = ["event", "event_type", "type", "topic", "action", "trigger"]


def generate_secret(length: int = 32) -> str:
    """Random hex secret built from ``length`` bytes of entropy."""
    return secrets.token_hex(length)


def mask_string(value: str) -> str:
    """Mask a sensitive string while keeping a hint of its shape.

    Example:
        >>> mask_string("abc")
        '****'
        >>> mask_string("hunter22")
        'h******2'
        >>> mask_string("sk_live_12345")
        'sk*********45'
    """
    length = len(value)
    if length <= 4:
        return "****"
    if length <= 8:
        return value[0] + "*" * (length - 2) + value[-1]
    return value[:2] + "*" * (length - 4) + value[-2:]


def _is_sensitive(key: str, keys: Iterable[str]) -> bool:
    lowered = key.lower()
    return any(sensitive in lowered for sensitive in keys)


def sanitize_payload(payload: Any, extra_keys: Optional[Iterable[str]] = None) -> Any:
    """Copy of ``payload`` with sensitive values masked, for logging."""
    keys = list(SENSITIVE_KEYS) + [k.lower() for k in (extra_keys or [])]

    if isinstance(payload, list):
        return [sanitize_payload(item, keys) for item in payload]
    if not isinstance(payload, dict):
        return payload

    sanitized: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            sanitized[key] = sanitize_payload(value, keys)
        elif _is_sensitive(str(key), keys):
            sanitized[key] = mask_string(value) if isinstance(value, str) else REDACTED
        else:
            sanitized[key] = value
    return sanitized


def extract_event_name(
    source: str,
    headers: Mapping[str, str],
    payload: Any,
    event_header: str = "X-Webhook-Event",
    event: Optional[str] = None,
) -> str:
    """Work out the event name of an inbound webhook.

    An explicit ``event`` wins, then the configured event header, then the
    provider's conventions, then common payload keys.
    """
    if event:
        return event

    from_header = header_lookup(headers, event_header)
    if from_header:
        return from_header

    data = payload if isinstance(payload, dict) else {}
    source = source.lower()

    if source == "stripe" and data.get("type"):
        return str(data["type"])
    if source == "github":
        github_event = header_lookup(headers, "X-GitHub-Event")
        if github_event:
            return f"github.{github_event}"
    if source == "shopify":
        topic = header_lookup(headers, "X-Shopify-Topic")
        if topic:
            return topic
    if source == "paypal" and data.get("event_type"):
        return str(data["event_type"])

    for key in GENERIC_EVENT_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value

    return "unknown"


def generate_event_id(source: str, event: str, payload: Any) -> str:
    """Unique id for an inbound event (sha256 hex)."""
    body = json.dumps(payload, sort_keys=True, default=str)
    seed = f"{source}|{event}|{body}|{time.time_ns()}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def normalize_url(url: str) -> str:
    """Normalize a destination URL so equivalent URLs share one circuit.

    Lowercases scheme and host, drops default ports and fragments, and
    strips a trailing slash from the path.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()

    port = parts.port
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"

    if parts.username:
        credentials = parts.username
        if parts.password:
            credentials += f":{parts.password}"
        host = f"{credentials}@{host}"

    path = parts.path.rstrip("/") if parts.path not in ("", "/") else ""
    return urlunsplit((scheme, host, path, parts.query, ""))
