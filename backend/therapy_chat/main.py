# therapy chat backend api
# fastapi app with async mongodb, jwt auth, ai replies, danger detection and therapist oversight

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from therapy_chat.config import settings
from therapy_chat.errors import register_exception_handlers
from therapy_chat.services.db import db, ensure_indexes
from therapy_chat.routers import alerts, assignments, chat, conversations, dashboard, drafts, notes

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """startup: connect to mongodb and ensure indexes. shutdown: close connection."""
    logger.info("Starting therapy chat backend...")
    await db.connect()
    await ensure_indexes(db)
    logger.info("Therapy chat backend ready")
    yield
    logger.info("Shutting down therapy chat backend...")
    await db.close()


app = FastAPI(
    title="Therapy Chat API",
    description="Backend API for supervised patient chat: ai replies, danger detection, tagging, drafts and notes",
    version="0.1.0",
    lifespan=lifespan,
)

# cors: allow the chat and dashboard frontends
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# register routers
app.include_router(chat.router)
app.include_router(conversations.router)
app.include_router(notes.router)
app.include_router(drafts.router)
app.include_router(alerts.router)
app.include_router(dashboard.router)
app.include_router(assignments.router)


@app.get("/health")
async def health_check():
    """basic health check endpoint"""
    return {"status": "ok", "service": "therapy-chat-api"}
