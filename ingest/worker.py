"""
Chunk worker: elabora un ChunkJobDescriptor.

1. Primo chunk: inizializzazione condizionale del progresso (retry limitati)
2. Download streaming dell'oggetto su file temporaneo
3. Lettura header, skip righe prima di start_row, righe [start_row, end_row]
4. Bulk insert a batch + incremento atomico, idempotente per batch
5. Fine foglio prima di end_row (o chunk open-ended): fissa il totale reale
"""
import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from redis.exceptions import RedisError

from core.database import DocumentStore
from core.errors import ChunkProcessingFailure
from core.logger import log_json, set_request_context
from core.progress import ProgressTracker, RetryPolicy
from core.storage import ObjectStorage
from ingest.reader import RowStream, build_header, open_rows, row_to_data
from ingest.types import CellValue, ChunkJobDescriptor, IngestedRecord

logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
    upload_id: str
    chunk_number: int
    rows_read: int = 0
    rows_inserted: int = 0
    settled_total: Optional[int] = None
    peak_buffered: int = 0


class ChunkWorker:
    """Una unità logica di lavoro per messaggio; nessuno stato tra chunk."""

    def __init__(
        self,
        storage: ObjectStorage,
        store: DocumentStore,
        tracker: ProgressTracker,
        batch_size: int = 20000,
        row_cache_size: int = 100,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self.storage = storage
        self.store = store
        self.tracker = tracker
        self.batch_size = batch_size
        self.row_cache_size = row_cache_size
        self.retry = retry

    @classmethod
    def from_config(cls, config, storage: ObjectStorage, store: DocumentStore, tracker: ProgressTracker) -> "ChunkWorker":
        return cls(
            storage=storage,
            store=store,
            tracker=tracker,
            batch_size=config.batch_size,
            row_cache_size=config.row_cache_size,
            retry=RetryPolicy.from_config(config),
        )

    async def process(self, descriptor: ChunkJobDescriptor) -> ChunkResult:
        """
        Elabora un chunk.

        Raises:
            ChunkProcessingFailure: Errore di download, parsing o insert
                (il messaggio resta non confermato)
        """
        set_request_context(
            upload_id=descriptor.upload_id,
            session_id=descriptor.session_id,
            chunk_number=descriptor.chunk_number,
        )
        start_time = time.time()
        logger.info(
            f"[WORKER] Chunk {descriptor.chunk_number}/{descriptor.total_chunks} of {descriptor.file_name}: "
            f"rows {descriptor.start_row}-{'EOF' if descriptor.open_ended else descriptor.end_row}"
        )

        if descriptor.is_first_chunk:
            await self.tracker.initialize(
                descriptor.upload_id,
                descriptor.total_rows,
                descriptor.total_rows_exact,
                self.retry,
            )

        try:
            with tempfile.TemporaryDirectory(prefix="ingest-") as tmp:
                path = Path(tmp) / f"source.{descriptor.file_format}"
                size = await asyncio.to_thread(
                    self.storage.download_to, descriptor.bucket, descriptor.object_key, path
                )
                logger.info(f"[WORKER] Downloaded {descriptor.object_key} ({size} bytes)")
                result = await self._ingest(descriptor, path)
        except ChunkProcessingFailure:
            raise
        except Exception as e:
            logger.error(
                f"[WORKER] Chunk {descriptor.chunk_number} of {descriptor.upload_id} failed: {e}",
                exc_info=True,
            )
            raise ChunkProcessingFailure(descriptor.upload_id, descriptor.chunk_number, e) from e

        log_json(
            level='info',
            message=f"Chunk {descriptor.chunk_number}/{descriptor.total_chunks} completed",
            stage='chunk',
            file_name=descriptor.file_name,
            rows_total=descriptor.total_rows,
            rows_processed=result.rows_inserted,
            elapsed_sec=time.time() - start_time,
            rows_read=result.rows_read,
            peak_buffered=result.peak_buffered,
            settled_total=result.settled_total,
        )
        return result

    async def _ingest(self, descriptor: ChunkJobDescriptor, path: Path) -> ChunkResult:
        result = ChunkResult(upload_id=descriptor.upload_id, chunk_number=descriptor.chunk_number)

        with open_rows(path, descriptor.file_format, window=self.row_cache_size) as stream:
            rows = iter(stream)
            first = next(rows, None)
            if first is None:
                logger.warning(f"[WORKER] {descriptor.file_name} has no header row")
                result.settled_total = 0
                await self._settle(descriptor.upload_id, 0)
                return result

            _, header_values = first
            header = build_header(header_values)
            logger.debug(f"[WORKER] Header ({len(header)} columns): {header}")

            finished = False
            while not finished:
                batch, finished = await asyncio.to_thread(self._next_batch, rows, header, descriptor)
                if not batch:
                    continue
                result.rows_read += len(batch)
                result.rows_inserted += await self.store.insert_batch(descriptor.collection, batch)
                # Conta il batch intero, una sola volta anche se riconsegnato
                batch_id = f"{descriptor.chunk_number}:{batch[0].row_number}"
                await self._increment(descriptor.upload_id, len(batch), batch_id)

            result.peak_buffered = stream.peak_buffered
            reached_eof = stream.exhausted
            last_row = stream.row_number

        if reached_eof and (descriptor.open_ended or last_row < descriptor.end_row):
            actual = max(last_row - 1, 0)
            logger.info(
                f"[WORKER] End of sheet at row {last_row} (planned end {descriptor.end_row}): "
                f"settling total at {actual}"
            )
            result.settled_total = actual
            await self._settle(descriptor.upload_id, actual)

        return result

    def _next_batch(
        self,
        rows: Iterator[Tuple[int, List[CellValue]]],
        header: Sequence[str],
        descriptor: ChunkJobDescriptor,
    ) -> Tuple[List[IngestedRecord], bool]:
        """Prossimo batch di record; True se range o foglio sono terminati."""
        batch: List[IngestedRecord] = []
        for row_number, values in rows:
            if row_number < descriptor.start_row:
                continue

            batch.append(IngestedRecord(
                project_id=descriptor.project_id,
                session_id=descriptor.session_id,
                upload_id=descriptor.upload_id,
                file_id=descriptor.file_id,
                row_number=row_number,
                data=row_to_data(header, values),
            ))

            if not descriptor.open_ended and row_number >= descriptor.end_row:
                return batch, True
            if len(batch) >= self.batch_size:
                return batch, False

        return batch, True

    async def _increment(self, upload_id: str, delta: int, batch_id: str) -> None:
        if delta <= 0:
            return
        try:
            await self.tracker.increment_processed(upload_id, delta, batch_id=batch_id)
        except RedisError as e:
            logger.warning(f"[WORKER] Progress increment of {delta} failed for {upload_id}: {e}")

    async def _settle(self, upload_id: str, actual_rows: int) -> None:
        try:
            await self.tracker.settle_total(upload_id, actual_rows)
        except RedisError as e:
            logger.warning(f"[WORKER] Settling total failed for {upload_id}: {e}")
