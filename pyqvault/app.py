import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from pyqvault.api.dependencies import AppServices
from pyqvault.api.routes import admin, feedback, papers, subjects
from pyqvault.clients.redis_client import ListingCache
from pyqvault.config import Config, load_config
from pyqvault.document.compressor import CompressionService
from pyqvault.errors import PyqVaultError, ValidationError
from pyqvault.pipelines.ingest_pipeline import IngestionPipeline
from pyqvault.services.database_service import PaperDatabase, create_database
from pyqvault.services.feedback_service import FeedbackService, SubjectService
from pyqvault.services.moderation_service import ModerationGate, create_moderation_gate
from pyqvault.services.paper_service import PaperService
from pyqvault.services.storage_service import StorageUploader, create_storage_uploader
from pyqvault.services.vote_service import VoteLedger
from pyqvault.utils.file_utils import ensure_directory

logger = logging.getLogger(__name__)


def uploads_mount_path(config: Config) -> str:
    return urlparse(config.PUBLIC_BASE_URL).path.rstrip("/") or "/uploads"


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_services(
    config: Config,
    database: Optional[PaperDatabase] = None,
    uploader: Optional[StorageUploader] = None,
    moderation: Optional[ModerationGate] = None,
    cache: Optional[ListingCache] = None,
) -> AppServices:
    """Wire every component from one configuration. Arguments override the defaults."""
    database = database or create_database(config)
    uploader = uploader or create_storage_uploader(config)
    moderation = moderation or create_moderation_gate(config)
    cache = cache or ListingCache(config)

    pipeline = IngestionPipeline(
        moderation=moderation,
        compression=CompressionService.from_config(config),
        uploader=uploader,
        database=database,
        max_upload_bytes=config.MAX_UPLOAD_BYTES,
        concurrency=config.PIPELINE_CONCURRENCY,
        moderation_fail_open=config.MODERATION_FAIL_OPEN,
    )

    return AppServices(
        config=config,
        database=database,
        uploader=uploader,
        papers=PaperService(database, pipeline, uploader, cache),
        votes=VoteLedger(database, cache),
        feedback=FeedbackService(database),
        subjects=SubjectService(database),
    )


def create_app(config: Optional[Config] = None, services: Optional[AppServices] = None) -> FastAPI:
    config = config or load_config()
    configure_logging(config.LOG_LEVEL)
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.database.init_schema()
        logger.info(
            "PYQ Vault ready (storage=%s, moderation=%s, database=%s)",
            config.STORAGE_BACKEND,
            config.MODERATION_PROVIDER,
            "postgres" if config.DATABASE_URL else "memory",
        )
        yield

    app = FastAPI(
        title="PYQ Vault",
        description="Upload, moderation and voting service for past year question papers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=config.CORS_ALLOW_CREDENTIALS,
        allow_methods=config.CORS_ALLOW_METHODS,
        allow_headers=config.CORS_ALLOW_HEADERS,
    )

    @app.exception_handler(PyqVaultError)
    async def handle_pyqvault_error(request: Request, exc: PyqVaultError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        error = ValidationError(f"{location}: {first.get('msg', 'invalid request')}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "kind": "internal_error", "message": "Internal server error"},
        )

    app.include_router(papers.router)
    app.include_router(admin.router)
    app.include_router(feedback.router)
    app.include_router(subjects.router)

    if config.STORAGE_BACKEND == "local":
        # Serve payloads where LocalDiskBackend says they live
        ensure_directory(config.UPLOAD_DIR)
        app.mount(uploads_mount_path(config), StaticFiles(directory=config.UPLOAD_DIR), name="uploads")

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "ok": True,
            "status": "healthy",
            "service": "pyqvault",
            "storage": config.STORAGE_BACKEND,
            "moderation": config.MODERATION_PROVIDER,
        }

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "service": "PYQ Vault",
            "version": "1.0.0",
            "endpoints": {
                "health": "GET /health",
                "upload": "POST /upload",
                "papers": "GET /papers?subject=&semester=",
                "upvote": "PUT /papers/{paper_id}/files/{index}/upvote",
                "downvote": "PUT /papers/{paper_id}/files/{index}/downvote",
                "feedback": "POST /api/feedback",
                "subjects": "GET|POST /api/subjects",
                "admin": "GET /admin/papers, DELETE /admin/papers/{paper_id}",
            },
        }

    return app


def main():
    import uvicorn
    uvicorn.run("pyqvault.app:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
