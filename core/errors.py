"""
Eccezioni della pipeline di ingestione.

ProgressReadMiss non è un'eccezione: è lo stato NOT_FOUND di ProgressState.
"""
from typing import List, Optional


class IngestionError(Exception):
    """Base per tutti gli errori della pipeline."""


class UnsupportedFormat(IngestionError):
    """Estensione file non gestita dal reader streaming."""


class InvalidObjectKey(IngestionError):
    """Chiave oggetto che non segue projects/{p}/sessions/{s}/uploads/{u}/{file}."""


class ProbeFailed(IngestionError):
    """Impossibile stimare le righe: nemmeno la dimensione dell'oggetto è disponibile.

    Fatale per il job del file: nessun chunk viene pianificato.
    """

    def __init__(self, object_key: str, cause: Optional[BaseException] = None):
        self.object_key = object_key
        self.cause = cause
        super().__init__(f"Row count probe failed for {object_key}: {cause}")


class DispatchPartialFailure(IngestionError):
    """Alcuni chunk pubblicati, altri no. I pubblicati non vengono ritirati."""

    def __init__(self, upload_id: str, published: int, failed: List[int], total: int):
        self.upload_id = upload_id
        self.published = published
        self.failed = failed
        self.total = total
        super().__init__(
            f"Dispatch for {upload_id}: {published}/{total} chunks published, "
            f"failed chunk numbers: {failed}"
        )


class ChunkProcessingFailure(IngestionError):
    """Errore di parsing o scrittura dentro un worker.

    Il messaggio non viene confermato (XACK) e torna in consegna.
    """

    def __init__(self, upload_id: str, chunk_number: int, cause: BaseException):
        self.upload_id = upload_id
        self.chunk_number = chunk_number
        self.cause = cause
        super().__init__(f"Chunk {chunk_number} of {upload_id} failed: {cause}")


class ProgressInitFailure(IngestionError):
    """Inizializzazione progress fallita dopo tutti i tentativi (non fatale)."""

    def __init__(self, upload_id: str, attempts: int, cause: Optional[BaseException] = None):
        self.upload_id = upload_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Progress init for {upload_id} failed after {attempts} attempts: {cause}")
