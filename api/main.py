import logging
import os
from contextlib import asynccontextmanager

from database import init_db
from errors import StorageError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers import admin, fingerprinting, status, submit
from worker import WORKER_THREADS, get_service, reset_stuck_jobs, start_worker, stop_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = os.getenv("APP_NAME", "Track Fingerprint")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    reset_stuck_jobs()
    service = get_service()
    logger.info(
        "%s API up: decoder=%s, %d worker thread(s), %d compare worker(s)",
        APP_NAME,
        service.decoder_config.backend,
        WORKER_THREADS,
        service.compare_workers,
    )
    start_worker(service)
    yield
    logger.info("%s API shutting down, stopping workers", APP_NAME)
    stop_worker()


app = FastAPI(title=f"{APP_NAME} API", lifespan=lifespan)

_hostname = os.environ.get("SERVER_HOSTNAME", "")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"https://{_hostname}"] if _hostname else ["http://localhost", "http://localhost:8000"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-Admin-Token"],
)

for module in (submit, status, fingerprinting, admin):
    app.include_router(module.router)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse({"detail": "Fingerprint storage unavailable"}, status_code=503)


@app.get("/health")
def health():
    return {"ok": True}
