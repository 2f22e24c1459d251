import logging
import os

import uvicorn

from lead_autosync.api import build_app
from lead_autosync.config import load_settings

# Configure logging level from environment
log_level = os.getenv("LAS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    # Fail fast: a sweep must never start with missing credentials.
    settings = load_settings().validate()
    app = build_app(settings)
    uvicorn.run(app, host=settings.http_host, port=int(settings.http_port))
