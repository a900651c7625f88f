"""
FastAPI server for voice sessions with knowledge retrieval.

Hosts the signaling proxy to the realtime speech backend, the context
retrieval endpoint, conversation persistence and document ingestion.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voicerag.api import documents, voice
from voicerag.config import settings
from voicerag.db.postgres import db
from voicerag.dependencies import close_dependencies
from voicerag.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Voice RAG server starting ({settings.environment})")
    if not settings.realtime_backend_url:
        logger.warning("REALTIME_BACKEND_URL is not set; /api/voice/offer will fail")
    if settings.is_development:
        try:
            await db.create_tables()
        except Exception as e:
            logger.warning(f"Database unavailable, conversation saving disabled: {e}")

    yield

    await close_dependencies()
    await db.close()
    logger.info("Voice RAG server stopped")


app = FastAPI(
    title="Voice RAG",
    description="Realtime voice sessions with relevance-gated knowledge injection",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(voice.router)
app.include_router(documents.router)


@app.get("/health")
async def health_check():
    """Liveness plus which collaborators are configured."""
    return {
        "status": "healthy",
        "environment": settings.environment,
        "realtime_backend_configured": bool(settings.realtime_backend_url),
        "pinecone_configured": bool(settings.pinecone_api_key),
        "database_connected": await db.health_check(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("voicerag.main:app", host=settings.host, port=settings.port)
