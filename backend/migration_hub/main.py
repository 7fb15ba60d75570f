import asyncio
import logging
import os
import platform
import signal
import subprocess
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI

from migration_hub.core.middleware import apply_cors
from migration_hub.routes import health_router, v1_router

logger = logging.getLogger(__name__)

# Track Celery subprocesses for cleanup
_celery_processes: List[subprocess.Popen] = []

CELERY_QUEUES = "migration,default"


def _backend_dir() -> str:
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _spawn(cmd: List[str], label: str) -> Optional[subprocess.Popen]:
    is_windows = platform.system() == "Windows"
    kwargs = {"cwd": _backend_dir()}
    if is_windows:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    try:
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, **kwargs)
        logger.info(f"{label} started (PID: {process.pid})")
        return process
    except OSError as e:
        logger.error(f"Failed to start {label}: {e}")
        return None


def _start_celery_worker() -> Optional[subprocess.Popen]:
    """Start Celery worker as a subprocess."""
    pool_type = "solo" if platform.system() == "Windows" else "prefork"
    cmd = [
        sys.executable, "-m", "celery",
        "-A", "migration_hub.celery_app",
        "worker",
        f"--pool={pool_type}",
        "-Q", CELERY_QUEUES,
        "-l", "info",
    ]
    return _spawn(cmd, "Celery worker")


def _start_celery_beat() -> Optional[subprocess.Popen]:
    """Start Celery Beat scheduler as a subprocess."""
    cmd = [
        sys.executable, "-m", "celery",
        "-A", "migration_hub.celery_app",
        "beat",
        "-l", "info",
    ]
    return _spawn(cmd, "Celery Beat")


def _stop_celery_processes():
    """Stop all Celery subprocesses."""
    for process in _celery_processes:
        if process and process.poll() is None:
            try:
                logger.info(f"Stopping Celery process (PID: {process.pid})...")
                if platform.system() == "Windows":
                    process.terminate()
                else:
                    process.send_signal(signal.SIGTERM)
                process.wait(timeout=10)
                logger.info(f"Celery process {process.pid} stopped")
            except subprocess.TimeoutExpired:
                logger.warning(f"Force killing Celery process {process.pid}")
                process.kill()

    _celery_processes.clear()


def _check_rate_limiter() -> None:
    """Touch the shared limiter backend so a missing Redis shows up at boot."""
    try:
        from migration_hub.utils.rate_limiter import get_platform_rate_limiter

        status = get_platform_rate_limiter("shopify").get_status("startup-check")
        logger.info(f"Rate limiter initialized: capacity={status['capacity']} key={status['key']}")
    except Exception as e:
        logger.warning(f"Rate limiter initialization failed (Redis may be unavailable): {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan event handler.

    On startup:
    - Start Celery worker and Beat subprocesses (AUTO_START_CELERY)
    - Verify the rate limiter backend

    On shutdown:
    - Stop Celery subprocesses
    """
    logger.info("=== Store Migration Hub Starting ===")

    auto_start_celery = os.getenv("AUTO_START_CELERY", "true").lower() == "true"

    if auto_start_celery:
        worker_process = _start_celery_worker()
        if worker_process:
            _celery_processes.append(worker_process)

        # Small delay before starting beat
        await asyncio.sleep(2)

        beat_process = _start_celery_beat()
        if beat_process:
            _celery_processes.append(beat_process)

        logger.info(f"Started {len(_celery_processes)} Celery processes")
    else:
        logger.info("Celery auto-start disabled (AUTO_START_CELERY=false)")

    _check_rate_limiter()

    logger.info("=== Store Migration Hub Ready ===")

    yield

    logger.info("=== Store Migration Hub Shutting Down ===")
    if _celery_processes:
        _stop_celery_processes()
    logger.info("Shutdown complete")


app = FastAPI(title="Store Migration Hub", lifespan=lifespan)
logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")

apply_cors(app)

app.include_router(health_router)
app.include_router(v1_router)
