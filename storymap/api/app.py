import time
import uuid
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storymap import __version__
from storymap.api import schemas
from storymap.api.dependencies import get_db, require_api_token, require_webhook_token
from storymap.api.routes import actions, cards, orchestration, projects, webhooks
from storymap.config import get_config
from storymap.db.database import Database
from storymap.errors import StorymapError
from storymap.logging import get_logger, log_context, log_extra

logger = get_logger(__name__)

app = FastAPI(
    title="Storymap API",
    description="Story-map planning and build orchestration",
    version=__version__,
)

# CORS
config = get_config()
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_allow_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
auth_deps = [Depends(require_api_token)]
app.include_router(projects.router, tags=["Projects"], dependencies=auth_deps)
app.include_router(actions.router, tags=["Planning"], dependencies=auth_deps)
app.include_router(orchestration.router, tags=["Orchestration"], dependencies=auth_deps)
app.include_router(cards.router, tags=["Cards"], dependencies=auth_deps)
app.include_router(webhooks.router, tags=["Webhooks"], dependencies=[Depends(require_webhook_token)])


def _error_body(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": code, "message": message}
    if details:
        body["details"] = details
    return body


@app.exception_handler(StorymapError)
async def storymap_error_handler(request: Request, exc: StorymapError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed",
            extra=log_extra(
                request_id=getattr(request.state, "request_id", None),
                path=request.url.path,
                error=str(exc),
                category=exc.category,
            ),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.error_code, str(exc), getattr(exc, "details", None)),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: Dict[str, List[str]] = {}
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "body"
        details.setdefault(loc, []).append(error.get("msg", "invalid"))
    return JSONResponse(status_code=400, content=_error_body("validation_failed", "Invalid request", details))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra=log_extra(request_id=getattr(request.state, "request_id", None), path=request.url.path),
    )
    return JSONResponse(status_code=500, content=_error_body("internal_error", "Internal server error"))


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id  # type: ignore[attr-defined]
    start = time.time()

    with log_context(request_id=request_id):
        response = await call_next(request)

    duration_s = time.time() - start
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request",
        extra={
            **log_extra(request_id=request_id),
            "path": request.url.path,
            "method": request.method,
            "status_code": int(response.status_code),
            "duration_ms": duration_s * 1000.0,
        },
    )
    return response


@app.on_event("startup")
def bootstrap_database() -> None:
    """
    Ensure DB schema exists.

    This is safe to run multiple times (CREATE TABLE IF NOT EXISTS).
    """
    from storymap.cli.main import get_db as cli_get_db

    cli_get_db().init_schema()


@app.on_event("startup")
def recover_stale_runs() -> None:
    """Fail runs left running by an agent that stopped reporting."""
    from storymap.cli.main import get_db as cli_get_db
    from storymap.cli.main import get_service_context as cli_get_service_context
    from storymap.services.runs import RunService

    ctx = cli_get_service_context()
    if ctx.config.stale_run_minutes <= 0:
        return
    try:
        recovered = RunService(ctx, cli_get_db()).recover_stale_runs()
    except Exception as exc:
        logger.error("stale_run_recovery_failed", extra={"error": str(exc)})
        return
    if recovered:
        logger.warning("stale_runs_recovered", extra={"recovered_count": recovered})


@app.get("/health", response_model=schemas.Health)
def health_check():
    """Health check endpoint."""
    return schemas.Health()


@app.get("/health/live")
def health_live():
    """Liveness probe (process is running)."""
    return {"status": "ok"}


@app.get("/health/ready")
def health_ready(db: Database = Depends(get_db)):
    """Readiness probe (database reachable)."""
    components: Dict[str, str] = {"database": "ok"}
    try:
        db.list_projects()
    except Exception:
        components["database"] = "error"
    status = "ok" if all(v == "ok" for v in components.values()) else "error"
    return {"status": status, "components": components, "version": app.version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
