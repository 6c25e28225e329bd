import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import APP_NAME, APP_VERSION, CORS_ALLOW_ORIGINS, ENVIRONMENT, LOG_LEVEL
from core.logging import configure_logging, request_id_var

log_level = configure_logging(environment=ENVIRONMENT, log_level=LOG_LEVEL)
logger = logging.getLogger(__name__)

from core.db import create_tables  # noqa: E402
from routers.billing.api import router as billing_router  # noqa: E402
from routers.live.api import router as live_router  # noqa: E402
from routers.matching.api import router as matching_router  # noqa: E402
from routers.messaging.api import router as messaging_router  # noqa: E402
from routers.profiles.api import router as profiles_router  # noqa: E402

app = FastAPI(title=APP_NAME, version=APP_VERSION)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=APP_NAME,
        version=APP_VERSION,
        description="""
        Heartsync Backend API

        ## Authentication
        Every endpoint except `/` requires a hosted-auth access token.

        Format: `Authorization: Bearer <your_access_token>`

        SSE endpoints (`.../events`, `.../watch`) also accept `?token=`.
        """,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"bearerAuth": []}]
    app.openapi_schema = openapi_schema
    return openapi_schema


app.openapi = custom_openapi


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)
        request.state.request_id = request_id
        start_time = time.time()

        user_id = None
        auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
        if auth_header and " " in auth_header:
            from auth import decode_access_token

            try:
                user_id = decode_access_token(auth_header.split(" ", 1)[1].strip()).user_id[:8]
            except HTTPException:
                user_id = None

        query_str = f"?{request.url.query}" if request.query_params else ""
        logger.info(
            f"REQUEST | method={request.method} | path={request.url.path}{query_str} | "
            f"user_id={user_id or 'anonymous'} | ip={request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"ERROR | method={request.method} | path={request.url.path} | "
                f"error={type(e).__name__}: {str(e)} | time={time.time() - start_time:.3f}s",
                exc_info=True,
            )
            request_id_var.reset(token)
            raise

        logger.info(
            f"RESPONSE | method={request.method} | path={request.url.path} | "
            f"status={response.status_code} | time={time.time() - start_time:.3f}s | "
            f"user_id={user_id or 'anonymous'}"
        )
        request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Retry-After"],
)

app.include_router(profiles_router)
app.include_router(matching_router)
app.include_router(messaging_router)
app.include_router(live_router)
app.include_router(billing_router)


@app.on_event("startup")
async def startup_event():
    create_tables()

    from routers.dependencies import get_entitlement_gate, get_session_broker

    # Premium state refreshes when a user first shows up or gets a new token
    app.state.detach_entitlements = get_entitlement_gate().attach(get_session_broker())
    logger.info(f"{APP_NAME} started ({ENVIRONMENT})")

    from fastapi.routing import APIRoute

    logger.debug("=== Registered Routes ===")
    for route in app.routes:
        if isinstance(route, APIRoute):
            methods = ",".join(sorted(route.methods))
            logger.debug(f"{methods:8} {route.path}")


@app.on_event("shutdown")
async def shutdown_event():
    from routers.dependencies import get_change_feed

    detach = getattr(app.state, "detach_entitlements", None)
    if detach is not None:
        detach()
        app.state.detach_entitlements = None

    feed = get_change_feed()
    if hasattr(feed, "aclose"):
        await feed.aclose()


@app.get("/")
async def read_root():
    """Health check."""
    return {
        "status": "online",
        "message": f"Welcome to {APP_NAME}!",
        "version": APP_VERSION,
        "environment": ENVIRONMENT,
    }
