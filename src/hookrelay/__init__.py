"""hookrelay - resilient webhook delivery and receiving.

Delivers webhooks outbound to subscriber endpoints with retry, backoff and
per-destination circuit breaking, and accepts inbound webhooks from external
providers with signature verification and handler routing.
"""

__version__ = "0.1.0"
