"""
Loan Engine API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..exceptions import LedgerImbalance, LoanEngineError, LoanValidationError, NotFoundError
from ..logging_config import get_logger, setup_logging
from .dependencies import LoanSystem, get_loan_system
from .ledger import router as ledger_router
from .loans import router as loans_router
from .payments import router as payments_router


logger = get_logger("loan_engine.api")

# First match wins; everything else is a conflict with the current state
_ERROR_STATUS = (
    (NotFoundError, 404),
    (LoanValidationError, 400),
    (LedgerImbalance, 500),
    (LoanEngineError, 409),
)


def error_status(exc: LoanEngineError) -> int:
    for error_cls, status_code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return 400


async def loan_engine_error_handler(request: Request, exc: LoanEngineError) -> JSONResponse:
    status_code = error_status(exc)
    body = exc.to_dict()
    body["retryable"] = bool(getattr(exc, "retryable", False))
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={
        "code": "INVALID_REQUEST",
        "message": str(exc),
        "details": {},
        "retryable": False,
    })


def create_app(system: Optional[LoanSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Components to serve; defaults to the lazily created global instance
    """
    app = FastAPI(
        title="Loan Engine API",
        description="Loan lifecycle, amortization schedules and a double-entry loan ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LoanEngineError, loan_engine_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    if system is not None:
        app.dependency_overrides[get_loan_system] = lambda: system

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, tags=["Payments"])
    app.include_router(ledger_router, tags=["Ledger"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "payments": "/payments/{payment_id}",
                "accounts": "/accounts",
                "journals": "/journals/{journal_id}",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        "loan_engine.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level="debug" if debug else "info"
    )
