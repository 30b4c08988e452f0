from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app_logger import get_logger, setup_logging
from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
)
from backend.routers import admin, attendance, auth, core, devices, sessions
from database.db import create_tables

logger = get_logger(__name__)


# -----------------------------
# Startup
# -----------------------------
@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    create_tables()
    logger.info("Rollcall API ready")
    yield


app = FastAPI(title="Rollcall API", lifespan=lifespan)


# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(devices.router)
app.include_router(attendance.router)
app.include_router(sessions.router)
app.include_router(admin.router)
