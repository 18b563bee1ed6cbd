"""
Work dispatcher: un messaggio per chunk pianificato sullo stream dei worker.

Ritorna appena pubblicato, senza attendere l'elaborazione. I chunk già
pubblicati non vengono ritirati se altri falliscono.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.errors import DispatchPartialFailure
from ingest.planner import ChunkRange
from ingest.types import ChunkJobDescriptor, FileFormat, FileRef
from messaging.stream import publish_chunk

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    upload_id: str
    total: int
    message_ids: List[str] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def published(self) -> int:
        return len(self.message_ids)


def build_descriptor(
    file: FileRef,
    chunk: ChunkRange,
    total_rows: int,
    total_rows_exact: bool,
    file_format: FileFormat,
    collection: str,
) -> ChunkJobDescriptor:
    return ChunkJobDescriptor(
        project_id=file.project_id,
        session_id=file.session_id,
        upload_id=file.upload_id,
        file_id=file.file_id,
        bucket=file.bucket,
        object_key=file.object_key,
        file_name=file.file_name,
        file_format=file_format,
        collection=collection,
        start_row=chunk.start_row,
        end_row=chunk.end_row,
        total_rows=total_rows,
        total_rows_exact=total_rows_exact,
        chunk_number=chunk.chunk_number,
        total_chunks=chunk.total_chunks,
        is_first_chunk=chunk.is_first_chunk,
        open_ended=chunk.open_ended,
    )


class WorkDispatcher:
    def __init__(self, r: redis.Redis, stream: str = "ingest_chunks"):
        self.r = r
        self.stream = stream

    async def dispatch(
        self,
        file: FileRef,
        chunks: Sequence[ChunkRange],
        total_rows: int,
        total_rows_exact: bool = True,
        file_format: FileFormat = "xlsx",
        collection: str = "raw_data",
    ) -> DispatchReport:
        """
        Pubblica tutti i chunk di un file.

        Raises:
            DispatchPartialFailure: Se almeno una pubblicazione fallisce
                (dopo aver tentato tutte le altre)
        """
        report = DispatchReport(upload_id=file.upload_id, total=len(chunks))

        for chunk in chunks:
            descriptor = build_descriptor(file, chunk, total_rows, total_rows_exact, file_format, collection)
            try:
                msg_id = await publish_chunk(self.r, self.stream, descriptor)
                report.message_ids.append(msg_id)
            except RedisError as e:
                logger.error(
                    f"[DISPATCHER] Publish failed for chunk {chunk.chunk_number}/{chunk.total_chunks} "
                    f"of {file.upload_id}: {e}"
                )
                report.failed.append(chunk.chunk_number)

        logger.info(
            f"[DISPATCHER] {file.file_name}: {report.published}/{report.total} chunks published to {self.stream}"
        )

        if report.failed:
            raise DispatchPartialFailure(file.upload_id, report.published, report.failed, report.total)
        return report
