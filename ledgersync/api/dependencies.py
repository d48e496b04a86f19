"""
API dependencies: access to the application context from request state.
"""

from fastapi import HTTPException, Request, status

import structlog

from ledgersync.core.context import AppContext

logger = structlog.get_logger(__name__)


def get_context(request: Request) -> AppContext:
    """The ``AppContext`` attached to the app by the lifespan."""
    context = getattr(request.app.state, "context", None)
    if context is None:
        logger.error("Application context not initialised")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up"
        )
    return context
