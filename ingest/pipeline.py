"""
Pipeline di un file - un job di ingestione per file caricato.

Flow:
1. Gate: formato dall'estensione (xlsx/csv/tsv)
2. Probe: righe dati esatte (<dimension>) o stimate (dimensione oggetto)
3. Plan: intervalli di righe contigui
4. Progress: reset (inizializzazione dal primo chunk, o qui se non ci sono righe)
5. Dispatch: un messaggio per chunk sullo stream dei worker

Ritorna appena pubblicato; l'avanzamento si osserva dal progress tracker.
"""
import asyncio
import logging
import time

from core.config import IngestionConfig
from core.errors import DispatchPartialFailure, ProbeFailed, UnsupportedFormat
from core.logger import log_json, set_request_context
from core.progress import ProgressTracker, RetryPolicy
from core.storage import ObjectStorage
from ingest.gate import detect_format
from ingest.planner import plan_chunks
from ingest.prober import probe_row_count
from ingest.types import FileOutcome, FileRef
from messaging.dispatcher import WorkDispatcher

logger = logging.getLogger(__name__)


async def ingest_file(
    file: FileRef,
    storage: ObjectStorage,
    tracker: ProgressTracker,
    dispatcher: WorkDispatcher,
    config: IngestionConfig,
) -> FileOutcome:
    """
    Avvia l'ingestione di un file.

    Errori attesi (formato, probe, dispatch) diventano FileOutcome con
    success=False e stato FAILED sul tracker; altri errori (es. Redis non
    raggiungibile) si propagano al chiamante.
    """
    start_time = time.time()
    set_request_context(upload_id=file.upload_id, session_id=file.session_id)
    outcome = FileOutcome(file_name=file.file_name, upload_id=file.upload_id, success=False)

    logger.info(f"[PIPELINE] Starting ingestion: {file.file_name} (s3://{file.bucket}/{file.object_key})")

    # Gate
    try:
        file_format = detect_format(file.file_name)
    except UnsupportedFormat as e:
        outcome.error = str(e)
        await tracker.mark_failed(file.upload_id, outcome.error)
        return outcome

    # Probe (boto3 sincrono → thread)
    try:
        estimate = await asyncio.to_thread(
            probe_row_count,
            storage,
            file.bucket,
            file.object_key,
            file_format,
            config.bytes_per_row,
            config.probe_prefix_bytes,
        )
    except ProbeFailed as e:
        outcome.error = str(e)
        await tracker.mark_failed(file.upload_id, outcome.error)
        return outcome

    # Oggetto vuoto: nessuna riga, totale certo
    exact = estimate.exact or estimate.rows == 0
    outcome.total_rows = estimate.rows
    outcome.total_rows_exact = exact

    # Plan
    chunks = plan_chunks(estimate.rows, config.chunk_size, exact)
    outcome.total_chunks = len(chunks)

    # Progress: nuova ingestione dello stesso upload riparte da zero.
    # L'inizializzazione spetta al primo chunk; senza chunk non c'è worker.
    await tracker.reset(file.upload_id)

    if not chunks:
        logger.info(f"[PIPELINE] {file.file_name}: no data rows, nothing to dispatch")
        await tracker.initialize(file.upload_id, 0, True, RetryPolicy.from_config(config))
        outcome.success = True
        return outcome

    # Dispatch
    try:
        report = await dispatcher.dispatch(
            file,
            chunks,
            total_rows=estimate.rows,
            total_rows_exact=exact,
            file_format=file_format,
            collection=config.raw_collection,
        )
        outcome.published_chunks = report.published
        outcome.success = True
    except DispatchPartialFailure as e:
        outcome.published_chunks = e.published
        outcome.error = str(e)
        await tracker.mark_failed(file.upload_id, outcome.error)

    log_json(
        level='info' if outcome.success else 'error',
        message=f"File job dispatched: {file.file_name}",
        stage='dispatch',
        file_name=file.file_name,
        rows_total=estimate.rows,
        elapsed_sec=time.time() - start_time,
        rows_exact=exact,
        probe_method=estimate.method,
        chunks=outcome.total_chunks,
        published=outcome.published_chunks,
    )
    return outcome
