"""
Main FastAPI application per xlsx-ingest.

Espone trigger di ingestione e polling del progresso; l'elaborazione dei
chunk avviene nei worker (consumer.py).
"""
import logging
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routers import ingest
from core.config import get_config
from core.database import DocumentStore, create_mongo_client, ensure_indexes
from core.logger import setup_colored_logging
from core.progress import ProgressTracker, SessionProgress
from core.storage import ObjectStorage
from ingest.orchestrator import IngestionOrchestrator
from messaging.dispatcher import WorkDispatcher
from messaging.stream import ensure_group, get_redis

# Configurazione logging colorato
setup_colored_logging("ingest-api")
logger = logging.getLogger(__name__)

app = FastAPI(title="XLSX Ingest", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest.router)


@app.on_event("startup")
async def startup_event():
    """Crea i client (uno per processo) e i componenti condivisi."""
    config = get_config()

    redis_client = get_redis(config.redis_url)
    mongo_client = create_mongo_client(config)
    db = mongo_client[config.mongo_db]
    storage = ObjectStorage.from_config(config)

    tracker = ProgressTracker(redis_client, ttl_sec=config.progress_ttl_sec)
    app.state.redis = redis_client
    app.state.mongo = mongo_client
    app.state.tracker = tracker
    app.state.orchestrator = IngestionOrchestrator(
        storage=storage,
        store=DocumentStore(db),
        tracker=tracker,
        session_progress=SessionProgress(redis_client, ttl_sec=config.progress_ttl_sec),
        dispatcher=WorkDispatcher(redis_client, stream=config.stream_name),
        config=config,
    )

    try:
        await ensure_group(redis_client, config.stream_name, config.consumer_group)
        await ensure_indexes(db, config.raw_collection)
    except Exception as e:
        logger.warning(f"Startup checks failed (continuing anyway): {e}", exc_info=True)

    logger.info(f"{config.processor_name} {config.processor_version} started")


@app.on_event("shutdown")
async def shutdown_event():
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        await redis_client.aclose()
    mongo_client = getattr(app.state, "mongo", None)
    if mongo_client is not None:
        mongo_client.close()


@app.get("/health")
async def health_check():
    """Health check del servizio (Redis + MongoDB)"""
    config = get_config()

    redis_status = "unknown"
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        try:
            await redis_client.ping()
            redis_status = "connected"
        except Exception as e:
            redis_status = f"error: {str(e)}"

    mongo_status = "unknown"
    mongo_client = getattr(app.state, "mongo", None)
    if mongo_client is not None:
        try:
            await mongo_client.admin.command("ping")
            mongo_status = "connected"
        except Exception as e:
            mongo_status = f"error: {str(e)}"

    healthy = redis_status == "connected" and mongo_status == "connected"
    return {
        "status": "healthy" if healthy else "unhealthy",
        "service": config.processor_name,
        "version": config.processor_version,
        "timestamp": str(datetime.utcnow()),
        "redis": redis_status,
        "mongodb": mongo_status,
        "endpoints": {
            "ingest_session": "/api/ingest/sessions/{session_id}",
            "ingest_object": "/api/ingest/objects",
            "session_status": "/api/ingest/sessions/{session_id}",
            "job_status": "/api/ingest/jobs/{upload_id}",
        },
    }
