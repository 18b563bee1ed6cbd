from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

FileFormat = Literal["xlsx", "csv", "tsv"]

CellValue = Union[str, int, float, bool, None]


class ProgressStatus(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    NOT_STARTED = "NOT_STARTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class FileRef:
    """File caricato in una sessione, indirizzato nello storage."""
    project_id: str
    session_id: str
    upload_id: str
    file_name: str
    bucket: str
    object_key: str
    file_id: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.upload_id


class ChunkJobDescriptor(BaseModel):
    """Messaggio Dispatcher → Worker (una riga di Redis Stream)."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    session_id: str
    upload_id: str
    file_id: Optional[str] = None
    bucket: str
    object_key: str
    file_name: str
    file_format: FileFormat = "xlsx"
    collection: str = "raw_data"

    # Righe foglio 1-based, estremi inclusi (riga 1 = header)
    start_row: int = Field(ge=2)
    end_row: int = Field(ge=1)
    total_rows: int = Field(ge=0)
    total_rows_exact: bool = True
    chunk_number: int = Field(ge=1)
    total_chunks: int = Field(ge=1)
    is_first_chunk: bool = False
    open_ended: bool = False

    @property
    def row_count(self) -> int:
        return self.end_row - self.start_row + 1


@dataclass(frozen=True)
class IngestedRecord:
    project_id: str
    session_id: str
    upload_id: str
    row_number: int
    data: Dict[str, CellValue]
    file_id: Optional[str] = None
    ingested_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def document_id(self) -> str:
        # Unico per (job, riga): un re-insert da riconsegna è un duplicato
        return f"{self.upload_id}:{self.row_number}"

    def to_document(self) -> Dict[str, Any]:
        ts = self.ingested_at.isoformat()
        return {
            "_id": self.document_id,
            "project_id": self.project_id,
            "session_id": self.session_id,
            "upload_id": self.upload_id,
            "file_id": self.file_id,
            "row_number": self.row_number,
            "data": dict(self.data),
            "is_hidden": False,
            "created_at": ts,
            "updated_at": ts,
        }


@dataclass
class ProgressState:
    upload_id: str
    status: ProgressStatus
    total_rows: int = 0
    processed_rows: int = 0
    total_rows_exact: bool = True
    failed_chunks: int = 0
    message: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        if self.status == ProgressStatus.COMPLETED:
            return 100
        if self.total_rows <= 0:
            return 0
        percent = int(self.processed_rows * 100 / self.total_rows)
        # Con totale stimato non si mostra 100 prima del completamento
        return min(percent, 100 if self.total_rows_exact else 99)

    @property
    def found(self) -> bool:
        return self.status != ProgressStatus.NOT_FOUND

    @classmethod
    def not_found(cls, upload_id: str) -> "ProgressState":
        return cls(upload_id=upload_id, status=ProgressStatus.NOT_FOUND)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "status": self.status.value,
            "progress": self.progress_percent,
            "processed_rows": self.processed_rows,
            "total_rows": self.total_rows,
            "total_rows_exact": self.total_rows_exact,
            "failed_chunks": self.failed_chunks,
            "message": self.message,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


@dataclass
class SessionProgressState:
    session_id: str
    status: ProgressStatus
    progress: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
        }


@dataclass
class FileOutcome:
    file_name: str
    upload_id: str
    success: bool
    total_rows: int = 0
    total_rows_exact: bool = False
    total_chunks: int = 0
    published_chunks: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "upload_id": self.upload_id,
            "success": self.success,
            "total_rows": self.total_rows,
            "total_rows_exact": self.total_rows_exact,
            "total_chunks": self.total_chunks,
            "published_chunks": self.published_chunks,
            "error": self.error,
        }


@dataclass
class JobResult:
    session_id: str
    files: List[FileOutcome] = field(default_factory=list)
    message: str = ""

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def success(self) -> bool:
        return bool(self.files) and all(f.success for f in self.files)

    @property
    def row_counts(self) -> Dict[str, int]:
        return {f.upload_id: f.total_rows for f in self.files}

    @property
    def total_rows(self) -> int:
        return sum(f.total_rows for f in self.files if f.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "success": self.success,
            "file_count": self.file_count,
            "processed_file_count": sum(1 for f in self.files if f.success),
            "total_rows": self.total_rows,
            "row_counts": self.row_counts,
            "files": [f.to_dict() for f in self.files],
            "message": self.message,
        }


def normalize_temporal(value: Union[datetime, date, time]) -> str:
    """Date/ora → stringa ISO-8601 canonica."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return datetime.combine(value, time()).isoformat()
    return value.isoformat()
