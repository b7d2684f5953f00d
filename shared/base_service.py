"""
Base service class for the P4rsec services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from prometheus_client import CONTENT_TYPE_LATEST
import time
import os

from shared.config import ServiceConfig, get_config
from shared.deadline import set_request_deadline, clear_request_deadline
from shared.logging import configure_logging, get_logger, set_request_id, clear_context, request_id_var
from shared.metrics import get_metrics_collector
from shared.errors import NotFoundError, ServiceException, ValidationError


class BaseService:
    """Base service class with common functionality."""

    version = "1.0.0"

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)

        # Configure logging
        configure_logging(service_name, self.config.log_level)

        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        # Create FastAPI app
        self.app = self._create_app()

        # Set up middleware
        self._setup_middleware()

        # Set up routes
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        local = self.config.env in ("local", "development")
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"P4rsec - {self.service_name.title()} Service",
            version=self.version,
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        # CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Origin", "Content-Type", "Accept", "Authorization", "X-Request-ID"],
        )

        # Request context and timing middleware
        @self.app.middleware("http")
        async def request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            set_request_deadline(self.config.request_timeout_seconds)
            start_time = time.time()

            try:
                response = await call_next(request)
            finally:
                clear_request_deadline()

            duration = time.time() - start_time

            self.metrics.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=duration
            )

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )

            response.headers["X-Request-ID"] = request_id
            clear_context()
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return await self.health_response()

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=self.metrics.export(),
                media_type=CONTENT_TYPE_LATEST
            )

        # Error handlers
        @self.app.exception_handler(ServiceException)
        async def service_exception_handler(request: Request, exc: ServiceException):
            """Handle ServiceException."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.info
            log(
                "Service error",
                code=exc.code,
                message=exc.message,
                details=exc.details,
                path=request.url.path
            )
            self.metrics.record_error(exc.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response(trace_id=request_id_var.get()).model_dump()
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            """Render routing errors (unknown path, wrong method) in the standard error format."""
            if exc.status_code == 404:
                error = NotFoundError("Route not found", {"path": request.url.path})
            else:
                error = ServiceException("HTTP_ERROR", str(exc.detail))
            self.metrics.record_error(error.code)
            return JSONResponse(
                status_code=exc.status_code,
                content=error.to_response(trace_id=request_id_var.get()).model_dump(),
                headers=getattr(exc, "headers", None)
            )

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            """Render request validation failures in the standard error format."""
            errors = [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
                for error in exc.errors()
            ]
            error = ValidationError("Invalid request", {"errors": errors})
            self.metrics.record_error(error.code)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(trace_id=request_id_var.get()).model_dump()
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "trace_id": request_id_var.get(),
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    async def health_response(self) -> JSONResponse:
        """Build the health payload; 503 when a critical dependency is down."""
        try:
            status, dependencies = await self._check_dependencies()
        except Exception as e:
            self.logger.error("Health check failed", error=str(e))
            status, dependencies = "error", {"error": str(e)}

        self.metrics.record_health_check(status)

        return JSONResponse(
            status_code=503 if status == "error" else 200,
            content={
                "service": self.service_name,
                "status": status,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime_seconds": self._get_uptime(),
                "dependencies": dependencies,
                "version": self.version,
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }
        )

    async def _check_dependencies(self) -> Tuple[str, Dict[str, Any]]:
        """Check service dependencies. Override in subclasses."""
        return "ok", {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    async def start(self):
        """Open connections. Override in subclasses."""

    async def stop(self):
        """Close connections. Override in subclasses."""

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
