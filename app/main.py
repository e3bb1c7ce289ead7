import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.provisioning import router as provisioning_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import observe_request

app = FastAPI(title="PPPoE Provisioning API")
logger = logging.getLogger(__name__)

configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    start = time.monotonic()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    route = request.scope.get("route")
    path = getattr(route, "path", "unmatched")
    observe_request(request.method, path, response.status_code, time.monotonic() - start)
    return response


app.include_router(provisioning_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
