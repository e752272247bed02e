# auditflow/main.py
import contextlib
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auditflow.api.router import router
from auditflow.audit.queue import JobQueue, get_job_queue
from auditflow.config import get_settings
from auditflow.database import dispose_engine, init_db
from auditflow.services.logger import configure_logging

logger = logging.getLogger(__name__)


def create_app(queue: Optional[JobQueue] = None, init_database: bool = True) -> FastAPI:
    """
    Build the API. With `queue` given, routes use it instead of the process-wide
    queue; `init_database=False` skips schema creation and engine disposal.
    """
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        job_queue = queue or get_job_queue()
        if init_database:
            init_db()
        job_queue.start()
        logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
        try:
            yield
        finally:
            await job_queue.stop(cancel_running=True)
            if init_database:
                dispose_engine()

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if queue is not None:
        app.dependency_overrides[get_job_queue] = lambda: queue

    app.include_router(router)

    # ---------------------------
    # Health
    # ---------------------------
    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "app": settings.APP_NAME}

    return app


app = create_app()


# ---------------------------
# Run Uvicorn (local dev)
# ---------------------------
if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("auditflow.main:app", host="0.0.0.0", port=port)
