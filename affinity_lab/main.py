"""
Main FastAPI Application - Affinity Laboratory
"""

import datetime
import logging
import os

from fastapi import FastAPI

from affinity_lab import __version__
from affinity_lab.routes.api_laboratory import router as laboratory_router
from affinity_lab.utils.env import env_str
from affinity_lab.utils.run_logging import LOG_DATE_FORMAT, LOG_FORMAT


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)


configure_logging(env_str("LOG_LEVEL", "INFO"))

app = FastAPI(title="affinity-lab", version=__version__)
APP_VERSION = os.getenv("APP_VERSION", app.version)
BUILD_AT = os.getenv("BUILD_AT", datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z"))

logging.getLogger().info(f"Starting affinity-lab {APP_VERSION} (built {BUILD_AT})")

# Include API routers
app.include_router(laboratory_router, prefix="/api/laboratory", tags=["laboratory"])


@app.get("/health")
async def health_check():
    return {"ok": True, "status": "healthy", "version": APP_VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(env_str("PORT", "8080")))
