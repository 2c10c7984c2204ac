from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

import logging  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from docsumm.api.routes_health import router as health_router  # noqa: E402
from docsumm.api.routes_summaries import router as summaries_router  # noqa: E402
from docsumm.api.routes_worker import router as worker_router  # noqa: E402
from docsumm.core.config import settings  # noqa: E402
from docsumm.core.errors import AppError  # noqa: E402
from docsumm.core.logging import configure_logging  # noqa: E402
from docsumm.db.session import init_db  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request failed path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


def create_app() -> FastAPI:
    configure_logging(settings)
    app = FastAPI(title="Document & Video Summarizer", version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(AppError, app_error_handler)
    app.include_router(health_router)
    app.include_router(summaries_router)
    app.include_router(worker_router)
    return app


app = create_app()
