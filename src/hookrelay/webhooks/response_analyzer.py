"""Classification of webhook HTTP responses.

Decides whether a destination accepted a delivery, extracts structured
error information using provider-aware rules, and derives retry hints from
status codes, rate-limit headers and response bodies.
"""

import json
import logging
import random
import time
from email.utils import parsedate_to_datetime
from http import HTTPStatus
from typing import Any, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_STATUS_CODES = [200, 201, 202, 203, 204, 205, 206, 207, 208, 226]
DEFAULT_RETRY_STATUS_CODES = [408, 425, 429, 500, 502, 503, 504]
RATE_LIMIT_HEADERS = ["Retry-After", "X-RateLimit-Reset", "X-Rate-Limit-Reset"]
RESET_HEADERS = ["X-RateLimit-Reset", "X-Rate-Limit-Reset"]

RETRYABLE_KEYWORDS = [
    "rate limit", "ratelimit", "too many requests", "timeout",
    "temporarily unavailable", "maintenance", "overloaded",
    "try again", "temporary", "capacity", "busy",
]

GENERIC_ERROR_KEYS = [
    "error", "errors", "message", "error_message",
    "error_description", "errorMessage", "fault",
    "reason", "details", "status",
]

SLACK_ERROR_MESSAGES = {
    "channel_not_found": "The specified channel was not found",
    "not_in_channel": "The user is not in the specified channel",
    "is_archived": "The channel has been archived",
    "msg_too_long": "The message is too long",
    "no_text": "No message text was provided",
    "rate_limited": "The application has been rate limited",
    "invalid_auth": "Invalid authentication token",
    "not_authed": "No authentication token provided",
    "invalid_args": "Invalid arguments were provided",
    "request_timeout": "The request timed out",
    "fatal_error": "A fatal error occurred",
}

# Reset values larger than one day of seconds are epoch timestamps, not delays
RESET_TIMESTAMP_THRESHOLD = 86400


def _parse_json(response: httpx.Response) -> Optional[Any]:
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def status_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Unknown Status Code"


def flatten_errors(errors: Any) -> List[str]:
    """Flatten nested error structures into a list of messages."""
    if isinstance(errors, str):
        return [errors]

    result: List[str] = []
    items = errors.items() if isinstance(errors, dict) else enumerate(errors or [])
    for key, value in items:
        if isinstance(value, str):
            result.append(value)
        elif isinstance(value, dict) and "message" in value:
            result.append(str(value["message"]))
        elif isinstance(value, dict) and "description" in value:
            result.append(str(value["description"]))
        elif isinstance(value, (dict, list)):
            result.extend(flatten_errors(value))
        elif value is not None:
            result.append(f"{key}: {value}")
    return result


class ResponseAnalyzer:
    """Classifies delivery responses.

    Example:
        analyzer = ResponseAnalyzer()
        if not analyzer.is_successful(response, provider="slack"):
            info = analyzer.extract_error_info(response, provider="slack")
            if analyzer.should_retry(response):
                delay = analyzer.calculate_retry_delay(response, attempt=2)
    """

    def __init__(
        self,
        success_status_codes: Optional[Iterable[int]] = None,
        retry_status_codes: Optional[Iterable[int]] = None,
    ):
        self.success_status_codes = set(success_status_codes or DEFAULT_SUCCESS_STATUS_CODES)
        self.retry_status_codes = set(retry_status_codes or DEFAULT_RETRY_STATUS_CODES)

    def is_successful(
        self,
        response: httpx.Response,
        success_status_codes: Optional[Iterable[int]] = None,
        provider: Optional[str] = None,
    ) -> bool:
        """Check the status code, then any provider-specific error markers."""
        allowed = set(success_status_codes) if success_status_codes else self.success_status_codes
        if response.status_code not in allowed:
            return False

        if provider:
            return self._provider_success(response, provider)
        return True

    def _provider_success(self, response: httpx.Response, provider: str) -> bool:
        data = _parse_json(response)
        if not isinstance(data, dict):
            return True

        provider = provider.lower()
        if provider == "stripe":
            return "error" not in data
        if provider == "shopify":
            return "errors" not in data
        if provider == "github":
            return not ("message" in data and "documentation_url" in data)
        if provider == "paypal":
            return "error" not in data and "error_description" not in data
        if provider == "slack":
            return data.get("ok", True) is not False
        return True

    def extract_error_info(
        self,
        response: httpx.Response,
        provider: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build a structured error description for a failed response.

        Returns:
            Dict with ``status_code``, ``message`` and ``body``, plus ``type``
            and ``code`` when the response body carries them.
        """
        error: Dict[str, Any] = {
            "status_code": response.status_code,
            "message": status_message(response.status_code),
            "body": response.text,
        }

        data = _parse_json(response)
        if not isinstance(data, dict):
            return error

        if provider:
            specific = self._provider_error(data, provider.lower())
            if specific:
                error.update(specific)
            return error

        return self._generic_error(data, error)

    def _provider_error(self, data: Dict[str, Any], provider: str) -> Optional[Dict[str, Any]]:
        if provider == "stripe" and isinstance(data.get("error"), dict):
            err = data["error"]
            return {
                "type": err.get("type", "unknown"),
                "code": err.get("code"),
                "message": err.get("message", "Unknown error"),
                "param": err.get("param"),
            }
        if provider == "shopify" and "errors" in data:
            errors = data["errors"]
            message = ", ".join(flatten_errors(errors)) if isinstance(errors, (dict, list)) else str(errors)
            return {"message": message}
        if provider == "github" and "message" in data:
            return {
                "message": data["message"],
                "documentation_url": data.get("documentation_url"),
            }
        if provider == "paypal" and "error" in data:
            return {
                "type": data["error"],
                "message": data.get("error_description", "Unknown error"),
            }
        if provider == "slack" and data.get("ok") is False:
            code = data.get("error", "unknown_error")
            return {
                "code": code,
                "message": SLACK_ERROR_MESSAGES.get(code, f"Unknown error: {code}"),
            }
        return None

    def _generic_error(self, data: Dict[str, Any], error: Dict[str, Any]) -> Dict[str, Any]:
        for key in GENERIC_ERROR_KEYS:
            if key not in data or data[key] is None:
                continue
            value = data[key]
            if isinstance(value, str):
                error["message"] = value
            elif isinstance(value, dict):
                if "message" in value:
                    error["message"] = value["message"]
                elif "description" in value:
                    error["message"] = value["description"]
                else:
                    error["message"] = ", ".join(flatten_errors(value))
                if "code" in value:
                    error["code"] = value["code"]
                elif "type" in value:
                    error["type"] = value["type"]
            elif isinstance(value, list):
                error["message"] = ", ".join(flatten_errors(value))
            break
        return error

    def has_rate_limit_headers(self, response: httpx.Response) -> bool:
        return any(header in response.headers for header in RATE_LIMIT_HEADERS)

    def should_retry(
        self,
        response: httpx.Response,
        provider: Optional[str] = None,
        retry_status_codes: Optional[Iterable[int]] = None,
    ) -> bool:
        """Whether a failed response looks transient."""
        statuses = set(retry_status_codes) if retry_status_codes else self.retry_status_codes
        if response.status_code in statuses:
            return True

        if self.has_rate_limit_headers(response):
            return True

        data = _parse_json(response)
        if not data:
            return False
        return self._has_retryable_errors(data, provider)

    def _has_retryable_errors(self, data: Any, provider: Optional[str]) -> bool:
        if provider and isinstance(data, dict):
            provider = provider.lower()
            if provider == "stripe":
                err = data.get("error")
                return isinstance(err, dict) and err.get("type") in ("rate_limit_error", "idempotency_error")
            if provider == "shopify":
                errors = data.get("errors")
                return isinstance(errors, str) and "rate limit" in errors.lower()
            if provider == "github":
                message = str(data.get("message", "")).lower()
                return "rate limit" in message or "abuse detection" in message
            if provider == "slack":
                return data.get("error") in ("rate_limited", "service_unavailable", "fatal_error")

        serialized = json.dumps(data).lower()
        return any(keyword in serialized for keyword in RETRYABLE_KEYWORDS)

    def calculate_retry_delay(
        self,
        response: httpx.Response,
        attempt: int,
        base_delay: float = 30,
        max_delay: float = 3600,
        multiplier: float = 2,
    ) -> int:
        """Seconds to wait before the next attempt.

        Prefers ``Retry-After`` (seconds or HTTP-date), then rate-limit
        reset headers, then exponential backoff with +/-20% jitter capped at
        ``max_delay``.
        """
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            retry_after = retry_after.strip()
            if retry_after.isdigit():
                return int(retry_after)
            try:
                reset_at = parsedate_to_datetime(retry_after)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring unparseable Retry-After header: {retry_after}")
                reset_at = None
            if reset_at is not None:
                return max(1, int(reset_at.timestamp() - time.time()))

        for header in RESET_HEADERS:
            value = response.headers.get(header)
            if not value:
                continue
            try:
                reset = int(float(value))
            except ValueError:
                logger.debug(f"Ignoring non-numeric {header} header: {value}")
                continue
            if reset > 0:
                if reset > RESET_TIMESTAMP_THRESHOLD:
                    return max(1, reset - int(time.time()))
                return reset

        delay = base_delay * (multiplier ** max(attempt - 1, 0))
        delay *= 1 + random.uniform(-0.2, 0.2)
        return int(min(delay, max_delay))
