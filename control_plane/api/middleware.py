from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from control_plane.config import settings
from control_plane.core.errors import ControlPlaneError

logger = logging.getLogger(__name__)

# Code d'erreur -> statut HTTP
ERROR_CODE_TO_STATUS = {
    "VALIDATION_FAILED": 422,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "UNAVAILABLE": 503,
    "RESOLUTION_FAILED": 502,
    "PARTIAL_APPLY": 500,
    "INTERNAL": 500,
}


def status_for_error_code(code: str) -> int:
    return ERROR_CODE_TO_STATUS.get(code, 500)


async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    status = status_for_error_code(exc.code)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.method} {request.url.path}: erreur inattendue: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL",
            "detail": str(exc) if settings.DEBUG else "Erreur interne inattendue",
        },
    )


def setup_middlewares(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
