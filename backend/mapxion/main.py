import asyncio
import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contextlib import asynccontextmanager

from mapxion.routes.health import router as health_router
from mapxion.routes.files import router as files_router
from mapxion.routes.jobs import router as jobs_router
from mapxion.work_queue import build_work_queue
from mapxion.log import configure_logging
from mapxion.errors import AppError
from mapxion.settings import settings
from mapxion.models import Base
from mapxion.db import engine


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.jobs_dir.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)

    queue = build_work_queue(settings)
    app.state.work_queue = queue
    monitor = asyncio.create_task(queue.run_monitor(settings.broker_check_interval))
    logger.info("mapxion api started, data dir %s", settings.data_dir)
    try:
        yield
    finally:
        monitor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await monitor
        queue.close()


app = FastAPI(title="Mapxion Jobs API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allow_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "invalid request")
    return JSONResponse(status_code=400, content={"error": "invalid_request", "message": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})


app.include_router(health_router)
app.include_router(jobs_router)
app.include_router(files_router)


def run() -> None:
    import uvicorn

    uvicorn.run("mapxion.main:app", host="0.0.0.0", port=3000)
