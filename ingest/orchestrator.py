"""
Orchestratore di sessione: un job di ingestione per ogni file caricato.

Non attende i worker: il risultato descrive la pianificazione e il dispatch.
Il completamento si osserva dal progress tracker (await_completion o
endpoint di polling).
"""
import asyncio
import logging
import time
from typing import Dict, Iterable, Optional, Sequence

from pymongo.errors import PyMongoError

from core.config import IngestionConfig
from core.database import DocumentStore
from core.logger import log_json, set_request_context
from core.progress import ProgressTracker, SessionProgress
from core.storage import ObjectStorage
from ingest.pipeline import ingest_file
from ingest.types import FileOutcome, FileRef, JobResult, ProgressState, ProgressStatus
from messaging.dispatcher import WorkDispatcher

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (ProgressStatus.COMPLETED, ProgressStatus.FAILED)


class IngestionOrchestrator:
    def __init__(
        self,
        storage: ObjectStorage,
        store: DocumentStore,
        tracker: ProgressTracker,
        session_progress: SessionProgress,
        dispatcher: WorkDispatcher,
        config: IngestionConfig,
    ):
        self.storage = storage
        self.store = store
        self.tracker = tracker
        self.session_progress = session_progress
        self.dispatcher = dispatcher
        self.config = config

    async def run_session(self, session_id: str, files: Sequence[FileRef]) -> JobResult:
        """
        Avvia l'ingestione di tutti i file di una sessione.

        Per ogni file: cancella le righe già ingerite per (sessione, file),
        poi probe → plan → reset progress → dispatch. Il fallimento di un file
        non interrompe gli altri.
        """
        start_time = time.time()
        set_request_context(session_id=session_id)
        result = JobResult(session_id=session_id)

        await self.session_progress.start(session_id)

        if not files:
            result.message = "Nessun file da ingerire per la sessione"
            await self.session_progress.update(session_id, -1, result.message)
            logger.warning(f"[ORCHESTRATOR] Session {session_id}: no files")
            return result

        await self._clear_derived(session_id)

        total = len(files)
        for idx, file in enumerate(files, start=1):
            outcome = await self._run_file(file)
            result.files.append(outcome)
            # 100 riservato alla chiusura della sessione
            await self.session_progress.update(
                session_id,
                int(idx * 99 / total),
                f"{idx}/{total} files dispatched ({file.file_name})",
            )

        succeeded = sum(1 for f in result.files if f.success)
        failed = total - succeeded
        if failed == 0:
            result.message = f"{total} file(s) dispatched, {result.total_rows} rows planned"
        else:
            errors = "; ".join(f"{f.file_name}: {f.error}" for f in result.files if not f.success)
            result.message = f"{succeeded}/{total} file(s) dispatched, {failed} failed ({errors})"

        await self.session_progress.update(session_id, 100 if succeeded else -1, result.message)

        log_json(
            level='info' if result.success else 'warning',
            message=result.message,
            stage='session',
            rows_total=result.total_rows,
            elapsed_sec=time.time() - start_time,
            file_count=result.file_count,
            failed_files=failed,
        )
        return result

    async def ingest_object(self, file: FileRef) -> JobResult:
        """
        Ingestione di un singolo oggetto appena caricato.

        Solo il job del file: avanzamento e dati derivati della sessione
        restano invariati.
        """
        set_request_context(upload_id=file.upload_id, session_id=file.session_id)
        result = JobResult(session_id=file.session_id)
        outcome = await self._run_file(file)
        result.files.append(outcome)
        if outcome.success:
            result.message = f"{file.file_name}: {outcome.total_chunks} chunk(s) dispatched"
        else:
            result.message = f"{file.file_name}: {outcome.error}"
        logger.info(f"[ORCHESTRATOR] Object {file.object_key}: {result.message}")
        return result

    async def _clear_derived(self, session_id: str) -> None:
        # Dati derivati della sessione: errore non fatale
        try:
            await self.store.delete_session_rows(self.config.derived_collection, session_id)
        except PyMongoError as e:
            logger.warning(
                f"[ORCHESTRATOR] Clearing {self.config.derived_collection} for session {session_id} failed: {e}"
            )

    async def _run_file(self, file: FileRef) -> FileOutcome:
        try:
            await self.store.delete_file_rows(self.config.raw_collection, file.session_id, file.upload_id)
        except PyMongoError as e:
            logger.error(f"[ORCHESTRATOR] Clearing previous rows of {file.file_name} failed: {e}")
            return FileOutcome(
                file_name=file.file_name,
                upload_id=file.upload_id,
                success=False,
                error=f"Cancellazione righe precedenti fallita: {e}",
            )

        try:
            return await ingest_file(file, self.storage, self.tracker, self.dispatcher, self.config)
        except Exception as e:
            logger.error(f"[ORCHESTRATOR] File job {file.file_name} ({file.upload_id}) failed: {e}", exc_info=True)
            return FileOutcome(
                file_name=file.file_name,
                upload_id=file.upload_id,
                success=False,
                error=str(e),
            )

    async def await_completion(
        self,
        upload_ids: Iterable[str],
        poll_interval: float = 2.0,
        timeout: Optional[float] = None,
    ) -> Dict[str, ProgressState]:
        """
        Polling del tracker finché tutti i job sono COMPLETED/FAILED o scade
        il timeout. Ritorna l'ultimo stato letto per job.
        """
        pending = list(dict.fromkeys(upload_ids))
        states: Dict[str, ProgressState] = {}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while True:
            for upload_id in pending:
                states[upload_id] = await self.tracker.read(upload_id)
            pending = [u for u in pending if states[u].status not in TERMINAL_STATUSES]

            if not pending:
                return states
            if deadline is not None and loop.time() >= deadline:
                logger.warning(f"[ORCHESTRATOR] Timeout waiting for {len(pending)} job(s): {pending}")
                return states
            await asyncio.sleep(poll_interval)

    async def session_status(self, session_id: str, upload_ids: Iterable[str] = ()) -> Dict:
        """Stato sessione più stato di ciascun job indicato."""
        session = await self.session_progress.read(session_id)
        jobs = [(await self.tracker.read(upload_id)).to_dict() for upload_id in upload_ids]
        status = session.to_dict()
        status["jobs"] = jobs
        return status
