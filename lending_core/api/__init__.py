"""
Lending API Application Factory
"""

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

from .. import __version__
from ..errors import LendingError, ValidationError
from .deps import LendingSystem, get_lending_system
from .loans import router as loans_router
from .payments import router as payments_router

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "domain": 422,
    "storage": 503,
}


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies share the validation error shape and status"""
    error = ValidationError("Invalid request", {"errors": exc.errors()})
    return JSONResponse(
        status_code=ERROR_STATUS_CODES[error.kind],
        content=jsonable_encoder({"error": error.to_dict()})
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Core API",
        description="Loan lifecycle and payment ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LendingError, lending_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "lending_core_api",
            "version": __version__
        }

    @app.get("/audit/integrity")
    def verify_audit_integrity(system: LendingSystem = Depends(get_lending_system)):
        """Verify the audit hash chain"""
        if system.audit_trail is None:
            return {"enabled": False}
        return {"enabled": True, **system.audit_trail.verify_integrity()}

    return app


app = create_app()
