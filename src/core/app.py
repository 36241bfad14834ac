"""
Playbook Engine - Core Application

Builds the FastAPI application: lifespan, middleware, error rendering
and the versioned API routes.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import time

from .config import get_settings
from .database import init_db, close_db
from .exceptions import BaseAPIException

logger = logging.getLogger(__name__)


class PlaybookEngineApp:
    """Application wrapper holding settings and the FastAPI instance."""

    def __init__(self):
        self.settings = get_settings()
        self.app = None
        self._create_app()

    def _create_app(self):
        """Create the FastAPI application instance."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            logger.info(f"Starting {self.settings.PROJECT_NAME} v{self.settings.VERSION}")
            await init_db()
            logger.info("Database initialized")

            yield

            logger.info(f"Shutting down {self.settings.PROJECT_NAME}")
            await close_db()

        self.app = FastAPI(
            title=self.settings.PROJECT_NAME,
            version=self.settings.VERSION,
            description="Package, publish, license and deploy multi-agent playbooks",
            openapi_url=f"{self.settings.API_V1_STR}/openapi.json",
            docs_url=f"{self.settings.API_V1_STR}/docs",
            redoc_url=f"{self.settings.API_V1_STR}/redoc",
            lifespan=lifespan,
        )

        self._add_middleware()
        self._add_exception_handlers()
        self._add_routes()

    def _add_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=list(self.settings.BACKEND_CORS_ORIGINS),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_process_time_header(request, call_next):
            start_time = time.time()
            response = await call_next(request)
            response.headers["X-Process-Time"] = str(time.time() - start_time)
            return response

    def _add_exception_handlers(self):
        @self.app.exception_handler(BaseAPIException)
        async def api_exception_handler(request: Request, exc: BaseAPIException):
            if exc.status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def _add_routes(self):
        @self.app.get("/")
        async def root():
            return {
                "name": self.settings.PROJECT_NAME,
                "version": self.settings.VERSION,
                "docs": f"{self.settings.API_V1_STR}/docs",
            }

        @self.app.get("/health")
        async def health():
            return {"status": "ok", "version": self.settings.VERSION}

        from api.v1 import api_router
        self.app.include_router(api_router, prefix=self.settings.API_V1_STR)

    def get_app(self) -> FastAPI:
        return self.app


def create_app() -> FastAPI:
    """Create and return the FastAPI application."""
    app_instance = PlaybookEngineApp()
    return app_instance.get_app()
