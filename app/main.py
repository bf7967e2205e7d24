from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import init_db
from app.features.permissions.exceptions import NotFoundError, PolicyViolationError, UnauthorizedError
from app.features.permissions.routes import router as permission_router
from app.features.permissions.service import build_permission_service
from app.features.retreats.routes import router as retreat_router
from app.features.users.dependencies import get_authorization_header
from app.utils import configure_logging, get_logger


configure_logging()
log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Retreat Access Control",
    description="Retreat-scoped roles, inheritance, delegations and overrides",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter
# Composition root: one engine set per process, shared by every request
app.state.permission_service = build_permission_service()


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


@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(PolicyViolationError)
async def policy_violation_handler(_request: Request, exc: PolicyViolationError):
    log.info("Policy violation: %s", exc)
    return JSONResponse({"detail": str(exc)}, status_code=422)


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(_request: Request, exc: UnauthorizedError):
    log.info("Unauthorized mutation: %s", exc)
    return JSONResponse({"detail": str(exc)}, status_code=403)


@app.on_event("startup")
async def startup():
    """Check settings and initialize the database on application startup."""
    config.check_settings()
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Retreat Access Control API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/permissions/*", "/retreats/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Retreat-scoped RBAC with inheritance, delegations and overrides",
            "retreats": "Retreat creation, membership, invitation and role request workflow",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Permission routes (checks, overrides, delegations, admin)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])

# Retreat routes (memberships, invitations)
app.include_router(retreat_router, prefix="/retreats", tags=["retreats"])
