"""
Payment Engine API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import router as auth_router
from .users import router as users_router
from .payments import router as payments_router
from .products import router as products_router
from .autopay import router as autopay_router
from .. import __version__
from ..errors import EngineError, ErrorKind
from ..logging_config import get_logger, log_action
from ..system import PaymentSystem

logger = get_logger("payment_engine.api")

STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.INVALID_CREDENTIAL: 401,
    ErrorKind.INVALID_PIN: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.INSUFFICIENT_FUNDS: 422,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.INTERNAL_FAILURE: 500,
}


def create_app(system: Optional[PaymentSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    The payment system is started and stopped with the application.
    """
    system = system or PaymentSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.start()
        try:
            yield
        finally:
            await system.stop()

    app = FastAPI(
        title="Payment Engine API",
        description="Serialized transfers, recurring mandates and account lockout",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        status_code = STATUS_CODES.get(exc.kind, 500)
        if status_code >= 500:
            log_action(
                logger, "error", f"{request.method} {request.url.path} failed: {exc.message}",
                action="http_request", resource=request.url.path,
                extra={"kind": exc.kind.value}
            )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": ErrorKind.INVALID_REQUEST.value,
                "message": "Invalid request body",
                "detail": {"errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                    for err in exc.errors()
                ]}
            }
        )

    # Include routers
    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(payments_router, prefix="/payment", tags=["Payments"])
    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(autopay_router, prefix="/autopay", tags=["Autopay"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "payment_engine",
            "version": __version__,
            "scheduler_running": system.scheduler.running,
            "circuits": {
                op_class.value: breaker.state.value
                for op_class, breaker in system.queue.breakers.items()
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 3000, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "payment_engine.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
