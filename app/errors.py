import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.outline_client import OutlineApiError

logger = logging.getLogger(__name__)


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", jsonable_errors(exc)
            ),
        )

    @app.exception_handler(OutlineApiError)
    async def outline_exception_handler(request: Request, exc: OutlineApiError):
        logger.warning("Outline server error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=502,
            content=_error_payload(
                "outline_unavailable",
                "Outline server request failed",
                {"status_code": exc.status_code or None},
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None
            ),
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may carry the raw exception instance, which JSONResponse cannot encode
    errors = []
    for err in exc.errors():
        item = {k: v for k, v in err.items() if k != "ctx"}
        errors.append(item)
    return errors
