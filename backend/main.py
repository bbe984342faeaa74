import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    ABSENCE_JOB_ENABLED,
    ABSENCE_JOB_INTERVAL_MINUTES,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
)
from backend.logging_config import setup_logging
from backend.routers import admin, attendance, auth, core, sessions, students, teachers
from backend.services.absence import AbsenceSweeper
from database.db import create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    sweeper = None
    if ABSENCE_JOB_ENABLED:
        sweeper = AbsenceSweeper(interval_minutes=ABSENCE_JOB_INTERVAL_MINUTES)
        sweeper.start()
    app.state.absence_sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Attendo API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=CORS_ALLOW_CREDENTIALS,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
    )

    app.include_router(core.router)
    app.include_router(auth.router)
    app.include_router(sessions.router)
    app.include_router(attendance.router)
    app.include_router(students.router)
    app.include_router(teachers.router)
    app.include_router(admin.router)
    return app


setup_logging()
app = create_app()
