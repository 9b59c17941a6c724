import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import app
from logging_config import get_logger

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"
    logger.info(f"Starting CallMesh signaling hub on {host}:{port}")
    # Rooms live in this process's memory: a single worker owns every room
    uvicorn.run("app:app" if reload else app, host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    main()
