import logging
from contextlib import asynccontextmanager
from time import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from localizer.api import dubbing as dubbing_api
from localizer.api import segments as segments_api
from localizer.api import videos as videos_api
from localizer.core.errors import PipelineError
from localizer.core.logging_config import configure_logging
from localizer.db.database import init_models
from localizer.services.pipeline import LocalizationPipeline, build_pipeline
from localizer.websocket import status_ws

logger = logging.getLogger(__name__)


def create_app(pipeline: LocalizationPipeline | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        await init_models()
        # nothing can be running right after a start: anything in flight was interrupted
        swept = await app.state.pipeline.sweep_stuck(0)
        if swept:
            logger.warning("Videos interrupted by the last shutdown marked failed: %s", swept)
        yield
        await app.state.pipeline.runner.shutdown()

    app = FastAPI(title="Video Localization Pipeline", lifespan=lifespan)
    app.state.pipeline = pipeline or build_pipeline()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(videos_api.router)
    app.include_router(segments_api.router)
    app.include_router(dubbing_api.router)
    app.include_router(status_ws.router)

    @app.exception_handler(PipelineError)
    async def _pipeline_error(request: Request, exc: PipelineError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):
        start = time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            dur_ms = int((time() - start) * 1000)
            logger.info("%s %s -> %s %dms", request.method, request.url.path, status, dur_ms)

    return app


app = create_app()
