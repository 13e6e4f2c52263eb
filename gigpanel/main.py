from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from gigpanel import __version__
from gigpanel.core import config
from gigpanel.core.database.engine import AsyncSessionLocal, init_db
from gigpanel.features.permissions.dependencies import add_rbac_exception_handlers
from gigpanel.features.permissions.exceptions import StoreUnavailable
from gigpanel.features.permissions.routes import router as permission_router
from gigpanel.features.permissions.service import build_permission_services
from gigpanel.features.users.dependencies import get_authorization_header
from gigpanel.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Gig Panel RBAC",
    description="Role, restriction and feature-flag based permissions for the admin panel",
    version=__version__,
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header, default_limits=[config.RATE_LIMIT])
app.state.limiter = limiter
app.state.permissions = build_permission_services(AsyncSessionLocal)
app.add_middleware(SlowAPIMiddleware)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


add_rbac_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Initialize database and load role permission maps."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")
    try:
        await app.state.permissions.cache.warm()
    except StoreUnavailable:
        # Requests will retry the load; until then they get 503
        log.error("Could not warm the permission cache")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Gig Panel RBAC API",
        "version": __version__,
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/permissions/*"],
            "public_endpoints": ["/", "/health"]
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Permission routes (RBAC)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
