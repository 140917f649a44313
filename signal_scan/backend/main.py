import logging
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signal_scan.backend.routers import scan
from signal_scan.config import load_settings
from signal_scan.database.db import Base, engine


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
    )


settings = load_settings()
configure_logging(settings.log_level)
log = structlog.get_logger()

app = FastAPI(title="Signal Scan", version="0.1.0")

allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    settings.frontend_origin,
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    log.info("startup_complete")


@app.get("/health")
def healthcheck() -> dict[str, Any]:
    return {"status": "ok"}


app.include_router(scan.router)
