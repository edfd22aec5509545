from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tritonpaste.api.error_handling import register_exception_handlers
from tritonpaste.api.routes import router
from tritonpaste.config import get_settings
from tritonpaste.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 1.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on start-up and release its pools on shutdown."""
    from tritonpaste.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tritonpaste", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the client's ``X-Request-ID`` (or a new one) and echo it back."""

    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_vary_authorization(request, call_next):
    # Responses differ per bearer token; keep shared caches from mixing them
    response = await call_next(request)
    response.headers.add_vary_header("Authorization")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/")
async def hello() -> Dict[str, Any]:
    return {"message": "Hello World"}


@app.get("/health")
async def health():
    """Report database reachability; never takes the process down."""
    from tritonpaste.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return JSONResponse(
            status_code=500, content={"status": "down", "error": "db down: timed out"}
        )
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        return JSONResponse(
            status_code=500, content={"status": "down", "error": f"db down: {exc}"}
        )
    return {"status": "up", "message": "It's healthy"}


def create_app() -> FastAPI:
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        # structlog handles application logging
        access_log=False,
    )
    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    main()
