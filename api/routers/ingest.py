"""
Router per ingestione a chunk.

Endpoint:
- POST /api/ingest/sessions/{session_id}: avvia ingestione dei file di una sessione
- POST /api/ingest/objects: avvia ingestione da notifica object-created (bucket + key)
- GET  /api/ingest/sessions/{session_id}: stato sessione (+ job indicati)
- GET  /api/ingest/jobs/{upload_id}: stato di un job (polling)
"""
import logging
from dataclasses import replace
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from core.errors import InvalidObjectKey
from core.logger import log_with_context, set_request_context
from core.progress import ProgressTracker
from core.storage import build_object_key, parse_object_key
from ingest.orchestrator import IngestionOrchestrator
from ingest.types import FileRef

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ingest", tags=["ingest"])


class FileRequest(BaseModel):
    upload_id: str
    file_name: str
    file_id: Optional[str] = None
    bucket: Optional[str] = None
    object_key: Optional[str] = None


class SessionIngestRequest(BaseModel):
    project_id: str
    files: List[FileRequest] = Field(default_factory=list)


class ObjectCreatedRequest(BaseModel):
    bucket: str
    key: str
    file_id: Optional[str] = None


def get_orchestrator(request: Request) -> IngestionOrchestrator:
    return request.app.state.orchestrator


def get_tracker(request: Request) -> ProgressTracker:
    return request.app.state.tracker


def _to_file_ref(session_id: str, project_id: str, file: FileRequest, default_bucket: str) -> FileRef:
    return FileRef(
        project_id=project_id,
        session_id=session_id,
        upload_id=file.upload_id,
        file_name=file.file_name,
        file_id=file.file_id,
        bucket=file.bucket or default_bucket,
        object_key=file.object_key or build_object_key(project_id, session_id, file.upload_id, file.file_name),
    )


@router.post("/sessions/{session_id}")
async def ingest_session(
    session_id: str,
    body: SessionIngestRequest,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """
    Avvia ingestione di tutti i file della sessione.

    Ritorna il JobResult appena i chunk sono pubblicati; il completamento
    si segue con GET /api/ingest/jobs/{upload_id}.
    """
    set_request_context(session_id=session_id)
    default_bucket = orchestrator.config.s3_bucket
    files = [_to_file_ref(session_id, body.project_id, f, default_bucket) for f in body.files]

    log_with_context("info", f"Session ingestion requested: {len(files)} file(s)")
    try:
        result = await orchestrator.run_session(session_id, files)
    except RedisError as e:
        logger.error(f"Error starting session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail=f"Progress store unavailable: {str(e)}")

    return result.to_dict()


@router.post("/objects")
async def ingest_object(
    body: ObjectCreatedRequest,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Ingestione di un singolo oggetto appena caricato (notifica storage)."""
    try:
        file = parse_object_key(body.bucket, body.key)
    except InvalidObjectKey as e:
        raise HTTPException(status_code=422, detail=str(e))

    if body.file_id:
        file = replace(file, file_id=body.file_id)

    try:
        result = await orchestrator.ingest_object(file)
    except RedisError as e:
        logger.error(f"Error starting ingestion of {body.key}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail=f"Progress store unavailable: {str(e)}")

    return result.to_dict()


@router.get("/sessions/{session_id}")
async def get_session_status(
    session_id: str,
    upload_ids: List[str] = Query(default=[]),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.session_status(session_id, upload_ids)
    except RedisError as e:
        logger.error(f"Error reading session status {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail=f"Progress store unavailable: {str(e)}")


@router.get("/jobs/{upload_id}")
async def get_job_status(upload_id: str, tracker: ProgressTracker = Depends(get_tracker)):
    """
    Stato di un job di ingestione.

    NOT_FOUND (chiave assente o scaduta) è uno stato, non un errore HTTP.
    """
    try:
        state = await tracker.read(upload_id)
    except RedisError as e:
        logger.error(f"Error getting job status {upload_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail=f"Progress store unavailable: {str(e)}")
    return state.to_dict()
