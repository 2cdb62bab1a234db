"""Webhook signature generation and verification.

Every validator exposes the same three capabilities:

- ``validate(request, secret, options) -> bool``
- ``generate(payload, secret, options) -> str``
- ``get_signature(request, options) -> Optional[str]``

Validators are looked up by name in ``VALIDATORS``; provider-specific
verification (Stripe, GitHub, Shopify, Slack, PayPal) is HMAC with a preset
table of options rather than a class per provider.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Union

import jwt

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Payload = Union[str, bytes, Dict[str, Any], list]
Options = Optional[Dict[str, Any]]

HASH_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}

DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"


@dataclass
class InboundRequest:
    """Framework-neutral view of an incoming HTTP request.

    Header lookups are case-insensitive.
    """

    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    client_ip: Optional[str] = None

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def has_header(self, name: str) -> bool:
        return name.lower() in self.headers

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the body as JSON; an empty body parses as ``{}``."""
        if not self.body:
            return {}
        return json.loads(self.body)

    def input(self, name: str) -> Optional[Any]:
        """Read a value from the query string, then from a JSON object body."""
        if name in self.query:
            return self.query[name]
        try:
            data = self.json()
        except ValueError:
            return None
        if isinstance(data, dict):
            return data.get(name)
        return None


def serialize_payload(payload: Payload) -> bytes:
    """Serialize a payload to the exact bytes that are sent and signed."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def compute_hmac(
    payload: Payload,
    secret: str,
    algorithm: str = "sha256",
    encoding: str = "hex",
) -> str:
    """Compute an HMAC digest over the serialized payload.

    Args:
        payload: Raw bytes, a string, or a JSON-serializable object.
        secret: The shared secret key.
        algorithm: One of ``HASH_ALGORITHMS``.
        encoding: ``hex`` or ``base64``.

    Returns:
        The encoded digest.

    Raises:
        ConfigurationError: If the algorithm is unknown or the secret empty.
    """
    if not secret:
        raise ConfigurationError("A signing secret is required", key="secret")

    digestmod = HASH_ALGORITHMS.get(algorithm.lower())
    if digestmod is None:
        raise ConfigurationError(f"Unsupported signature algorithm: {algorithm}", key="algorithm")

    digest = hmac.new(secret.encode("utf-8"), serialize_payload(payload), digestmod)
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


class HmacValidator:
    """HMAC signature over the raw body, optionally prefixed by a timestamp.

    Recognized options:
        signature_header: Header carrying the signature.
        algorithm: Hash algorithm (default ``sha256``).
        encoding: ``hex`` (default) or ``base64``.
        prefix: Literal prefix on the header value, e.g. ``sha256=``.
        signature_format: ``stripe`` (``t=...,v1=...``) or ``github``.
        timestamp_header: When present, the signed payload becomes the
            ``signing_template`` applied to the timestamp and body.
        signing_template: Defaults to ``{timestamp}.{body}``.
        tolerance: Maximum age in seconds of the signed timestamp.
    """

    name = "hmac"

    def __init__(self, signature_header: Optional[str] = None, algorithm: str = "sha256"):
        self.signature_header = signature_header or DEFAULT_SIGNATURE_HEADER
        self.algorithm = algorithm

    def get_header_name(self, options: Options = None) -> str:
        return (options or {}).get("signature_header") or self.signature_header

    def get_signature(self, request: InboundRequest, options: Options = None) -> Optional[str]:
        options = options or {}
        value = request.header(self.get_header_name(options))
        if not value:
            return None

        fmt = options.get("signature_format")
        if fmt == "stripe":
            return _parse_stripe_header(value).get("v1")
        if fmt == "github":
            return value[len("sha256="):] if value.startswith("sha256=") else None

        prefix = options.get("prefix")
        if prefix and value.startswith(prefix):
            return value[len(prefix):]
        return value

    def validate(self, request: InboundRequest, secret: str, options: Options = None) -> bool:
        options = options or {}
        signature = self.get_signature(request, options)
        if not signature:
            return False

        timestamp = self._get_timestamp(request, options)
        if timestamp is not None and not _is_fresh(timestamp, options.get("tolerance")):
            logger.debug("Rejected webhook signature with stale timestamp")
            return False

        signed = _signing_payload(request.body, timestamp, options)
        expected = compute_hmac(
            signed,
            secret,
            options.get("algorithm") or self.algorithm,
            options.get("encoding", "hex"),
        )
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8", "surrogateescape"))

    def generate(self, payload: Payload, secret: str, options: Options = None) -> str:
        """Produce the header value a sender would attach to ``payload``.

        Pass ``timestamp`` in options to sign a timestamped payload.
        """
        options = options or {}
        fmt = options.get("signature_format")
        timestamp = options.get("timestamp")
        if fmt == "stripe" and timestamp is None:
            timestamp = int(time.time())

        signed = _signing_payload(serialize_payload(payload), timestamp, options)
        signature = compute_hmac(
            signed,
            secret,
            options.get("algorithm") or self.algorithm,
            options.get("encoding", "hex"),
        )

        if fmt == "stripe":
            return f"t={timestamp},v1={signature}"
        if fmt == "github":
            return f"sha256={signature}"
        return f"{options.get('prefix') or ''}{signature}"

    def _get_timestamp(self, request: InboundRequest, options: Dict[str, Any]) -> Optional[str]:
        if options.get("signature_format") == "stripe":
            value = request.header(self.get_header_name(options)) or ""
            return _parse_stripe_header(value).get("t")

        timestamp_header = options.get("timestamp_header")
        if timestamp_header and request.has_header(timestamp_header):
            return request.header(timestamp_header)
        return None


def _parse_stripe_header(value: str) -> Dict[str, str]:
    parts = {}
    for item in value.split(","):
        key, sep, val = item.strip().partition("=")
        if sep and key not in parts:
            parts[key] = val
    return parts


def _signing_payload(body: bytes, timestamp: Optional[Any], options: Dict[str, Any]) -> bytes:
    if timestamp is None:
        return body
    template = options.get("signing_template", "{timestamp}.{body}")
    head, _, tail = template.partition("{body}")
    return head.format(timestamp=timestamp).encode("utf-8") + body + tail.encode("utf-8")


def _is_fresh(timestamp: Any, tolerance: Optional[int]) -> bool:
    if not tolerance:
        return True
    try:
        age = abs(time.time() - int(timestamp))
    except (TypeError, ValueError):
        return False
    return age <= tolerance


# Option presets for providers that sign with an HMAC variant
PROVIDER_PRESETS: Dict[str, Dict[str, Any]] = {
    "stripe": {
        "signature_header": "Stripe-Signature",
        "signature_format": "stripe",
        "algorithm": "sha256",
    },
    "github": {
        "signature_header": "X-Hub-Signature-256",
        "signature_format": "github",
        "algorithm": "sha256",
    },
    "shopify": {
        "signature_header": "X-Shopify-Hmac-Sha256",
        "algorithm": "sha256",
        "encoding": "base64",
    },
    "slack": {
        "signature_header": "X-Slack-Signature",
        "timestamp_header": "X-Slack-Request-Timestamp",
        "signing_template": "v0:{timestamp}:{body}",
        "prefix": "v0=",
        "algorithm": "sha256",
    },
    "paypal": {
        "signature_header": "Paypal-Transmission-Sig",
        "timestamp_header": "Paypal-Transmission-Time",
        "algorithm": "sha256",
    },
}


class ProviderValidator:
    """HMAC validation using a provider's preset options."""

    name = "provider"

    def __init__(self, provider: str = "stripe"):
        self.provider = provider.lower()
        if self.provider not in PROVIDER_PRESETS:
            raise ConfigurationError(
                f"No signature preset for provider '{provider}'", key="provider"
            )
        self._hmac = HmacValidator()

    def _options(self, options: Options) -> Dict[str, Any]:
        return {**PROVIDER_PRESETS[self.provider], **(options or {})}

    def get_signature(self, request: InboundRequest, options: Options = None) -> Optional[str]:
        return self._hmac.get_signature(request, self._options(options))

    def validate(self, request: InboundRequest, secret: str, options: Options = None) -> bool:
        return self._hmac.validate(request, secret, self._options(options))

    def generate(self, payload: Payload, secret: str, options: Options = None) -> str:
        return self._hmac.generate(payload, secret, self._options(options))


class JwtValidator:
    """HS256/384/512 JSON Web Token carried in a header or query parameter."""

    name = "jwt"
    SUPPORTED_ALGORITHMS = ["HS256", "HS384", "HS512"]

    def get_signature(self, request: InboundRequest, options: Options = None) -> Optional[str]:
        options = options or {}
        header_name = options.get("jwt_header", "Authorization")
        value = request.header(header_name)
        if value:
            if header_name.lower() == "authorization" and value.startswith("Bearer "):
                return value[len("Bearer "):]
            return value
        token = request.input(options.get("query_param", "token"))
        return str(token) if token else None

    def validate(self, request: InboundRequest, secret: str, options: Options = None) -> bool:
        options = options or {}
        token = self.get_signature(request, options)
        if not token:
            return False

        decode_options = {"verify_aud": False}
        try:
            jwt.decode(
                token,
                secret,
                algorithms=options.get("algorithms", self.SUPPORTED_ALGORITHMS),
                options=decode_options,
                issuer=options.get("issuer"),
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"JWT validation failed: {e}")
            return False
        return True

    def generate(self, payload: Payload, secret: str, options: Options = None) -> str:
        options = options or {}
        if isinstance(payload, (str, bytes)):
            try:
                claims = json.loads(payload)
            except ValueError:
                claims = {"data": payload.decode() if isinstance(payload, bytes) else payload}
            if not isinstance(claims, dict):
                claims = {"data": claims}
        elif isinstance(payload, dict):
            claims = dict(payload)
        else:
            claims = {"data": payload}

        now = int(time.time())
        claims = {
            "iat": now,
            "exp": now + options.get("ttl", 3600),
            "iss": options.get("issuer", "hookrelay"),
            **claims,
        }
        return jwt.encode(claims, secret, algorithm=options.get("algorithm", "HS256"))


class BasicAuthValidator:
    """HTTP Basic credentials; the secret is ``user:password``."""

    name = "basic"

    def get_signature(self, request: InboundRequest, options: Options = None) -> Optional[str]:
        return request.header((options or {}).get("auth_header", "Authorization"))

    def validate(self, request: InboundRequest, secret: str, options: Options = None) -> bool:
        value = self.get_signature(request, options)
        if not value:
            return False
        if value.startswith("Basic "):
            value = value[len("Basic "):]
        try:
            credentials = base64.b64decode(value, validate=True).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return False
        return hmac.compare_digest(secret.encode("utf-8"), credentials.encode("utf-8"))

    def generate(self, payload: Payload, secret: str, options: Options = None) -> str:
        return "Basic " + base64.b64encode(secret.encode("utf-8")).decode("ascii")


class ApiKeyValidator:
    """Static API key in a header, the query string, or the JSON body."""

    name = "apikey"

    def get_signature(self, request: InboundRequest, options: Options = None) -> Optional[str]:
        options = options or {}
        value = request.header(options.get("api_key_header", "X-API-Key"))
        if value:
            return value
        value = request.input(options.get("query_param", "api_key"))
        if value is None:
            value = request.input(options.get("body_param", "api_key"))
        return str(value) if value is not None else None

    def validate(self, request: InboundRequest, secret: str, options: Options = None) -> bool:
        api_key = self.get_signature(request, options)
        if not api_key:
            return False
        return hmac.compare_digest(secret.encode("utf-8"), api_key.encode("utf-8", "surrogateescape"))

    def generate(self, payload: Payload, secret: str, options: Options = None) -> str:
        return secret


SignatureValidator = Union[
    HmacValidator, ProviderValidator, JwtValidator, BasicAuthValidator, ApiKeyValidator
]

# Validator name -> factory
VALIDATORS: Dict[str, Callable[..., SignatureValidator]] = {
    "hmac": HmacValidator,
    "provider": ProviderValidator,
    "jwt": JwtValidator,
    "basic": BasicAuthValidator,
    "apikey": ApiKeyValidator,
}


def get_validator(name: str, **kwargs) -> SignatureValidator:
    """Build a validator by its registered name.

    Args:
        name: Key in ``VALIDATORS``.
        **kwargs: Passed to the factory (e.g. ``provider="github"``).

    Raises:
        ConfigurationError: If no validator is registered under ``name``.
    """
    factory = VALIDATORS.get(name)
    if factory is None:
        raise ConfigurationError(f"Unknown signature validator: {name}", key="signature_validator")
    return factory(**kwargs)


def sign_outbound(
    body: bytes,
    secret: str,
    algorithm: str = "sha256",
) -> str:
    """Hex HMAC over the exact bytes of an outbound request body."""
    return compute_hmac(body, secret, algorithm)


def header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup on a plain mapping."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
