import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from vm_gateway.api import close_clients, router
from vm_gateway.config import get_settings
from vm_gateway.db import configure_sqlite_runtime, engine
from vm_gateway.errors import VMGatewayError
from vm_gateway.logging_config import configure_logging
from vm_gateway.models import Base


logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


app = FastAPI(title="Chrome VM Gateway")
app.include_router(router)


@app.middleware("http")
async def permissive_cors(request: Request, call_next) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


def describe_validation_errors(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request"


@app.exception_handler(VMGatewayError)
async def gateway_error_handler(_request: Request, exc: VMGatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.detail}, headers=CORS_HEADERS
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": describe_validation_errors(exc.errors())},
        headers=CORS_HEADERS,
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
        headers=CORS_HEADERS,
    )


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    if settings.store_backend == "sql":
        configure_sqlite_runtime()
        Base.metadata.create_all(bind=engine)
    logger.info(
        "vm-gateway startup complete store=%s public_base_url=%s provisioner=%s",
        settings.store_backend,
        settings.public_base_url,
        settings.provisioner_url or "none",
    )


@app.on_event("shutdown")
def shutdown() -> None:
    close_clients()
