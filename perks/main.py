import logging
import os
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from database.connection import init_db
from perks.api import api_router
from perks.core.errors import PartialBatchError, PerksError
from perks.services.sessions import SessionRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()
    if not hasattr(app.state, "sessions"):
        app.state.sessions = SessionRegistry()
    yield
    # Shutdown: unsubscribe every realtime channel
    await app.state.sessions.close()


class DynamicCORSMiddleware(BaseHTTPMiddleware):
    """CORS middleware that allows the web app origin (and its subdomains) in production."""

    def __init__(self, app, allowed_origin_pattern: str | None = None):
        super().__init__(app)
        pattern = allowed_origin_pattern or os.getenv(
            "ALLOWED_ORIGIN_PATTERN", r"^https://([a-z0-9-]+\.)?puffperks\.com$"
        )
        self.origin_pattern = re.compile(pattern)

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("origin")
        env = os.getenv("ENVIRONMENT", "development")

        # Handle preflight requests
        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            response = await call_next(request)

        if origin:
            if env != "production" or self.origin_pattern.match(origin):
                response.headers["Access-Control-Allow-Origin"] = origin
                response.headers["Access-Control-Allow-Credentials"] = "true"
            else:
                logger.warning(f"CORS rejected - Origin '{origin}' does not match pattern")

        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS, PATCH"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization, X-Requested-With"

        return response


async def perks_error_handler(request: Request, exc: PerksError) -> JSONResponse:
    content = {"detail": exc.message}
    if isinstance(exc, PartialBatchError):
        content["applied"] = exc.applied
        content["requested"] = exc.requested
    return JSONResponse(status_code=exc.status_code, content=content)


def create_app(registry: SessionRegistry | None = None) -> FastAPI:
    app = FastAPI(
        title="Perks Dashboard",
        description="Stamp workflow and live presence API for loyalty-card stores",
        version="1.0.0",
        lifespan=lifespan,
    )
    if registry is not None:
        app.state.sessions = registry

    # Dynamic CORS middleware for subdomain support
    app.add_middleware(DynamicCORSMiddleware)

    app.add_exception_handler(PerksError, perks_error_handler)

    # Include all routes
    app.include_router(api_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
