"""hookrelay - FastAPI application.

Webhook delivery and receiving service: signed outbound deliveries with
retries and circuit breaking, and verified inbound webhooks.
"""

from fastapi import FastAPI

from . import __version__
from .webhooks.router import router as webhooks_router

app = FastAPI(
    title="hookrelay",
    description="Outbound webhook delivery with retries and circuit breaking, "
                "and verified inbound webhook receiving.",
    version=__version__,
)

app.include_router(webhooks_router)


@app.on_event("startup")
async def startup_event():
    """Initialize logging and start delivery workers."""
    from .core.logging_config import setup_logging
    from .webhooks.service import get_services
    setup_logging()
    await get_services().start()


@app.on_event("shutdown")
async def shutdown_event():
    from .webhooks.service import get_services
    await get_services().stop()


@app.get("/")
def root() -> dict:
    """Root endpoint returning service info."""
    return {
        "status": "ok",
        "service": "hookrelay",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
def health() -> dict:
    """Health check endpoint for monitoring and load balancers."""
    return {"status": "healthy"}
