import logging
import uuid

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from .errors import AccessError
from .routers.accounts import router as accounts_router
from .routers.audit import router as audit_router
from .routers.campaigns import router as campaigns_router
from .routers.health import router as health_router
from .routers.invitations import router as invitations_router
from .routers.links import router as links_router
from .routers.tags import router as tags_router
from .settings import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="UTM Desk API", version="0.1.0")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:  # type: ignore[override]
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    logger.info(
        "request.rejected",
        extra={
            "path": request.url.path,
            "status_code": exc.status_code,
            "kind": exc.kind,
            "rule": exc.rule,
            "request_id": getattr(request.state, "request_id", None),
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app.include_router(health_router)
app.include_router(accounts_router)
app.include_router(invitations_router)
app.include_router(tags_router)
app.include_router(links_router)
app.include_router(campaigns_router)
app.include_router(audit_router)
