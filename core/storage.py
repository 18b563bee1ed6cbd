"""
Object storage S3 compatibile per i file caricati.

Letture sempre in streaming: HEAD per la dimensione, GET con Range per il
probe, GET a blocchi verso file temporaneo per i worker.
"""
import io
import logging
import shutil
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.errors import InvalidObjectKey
from ingest.types import FileRef

logger = logging.getLogger(__name__)

KEY_TEMPLATE = "projects/{project_id}/sessions/{session_id}/uploads/{upload_id}/{file_name}"

DOWNLOAD_CHUNK_BYTES = 1024 * 1024

StorageError = (BotoCoreError, ClientError)


def build_object_key(project_id: str, session_id: str, upload_id: str, file_name: str) -> str:
    return KEY_TEMPLATE.format(
        project_id=project_id, session_id=session_id, upload_id=upload_id, file_name=file_name
    )


def parse_object_key(bucket: str, key: str) -> FileRef:
    """
    Ricava il FileRef da una chiave projects/{p}/sessions/{s}/uploads/{u}/{file}.

    Usato per le notifiche object-created dello storage.

    Raises:
        InvalidObjectKey: Se la chiave non segue il formato atteso
    """
    parts = key.split("/", 6)
    if (
        len(parts) != 7
        or parts[0] != "projects"
        or parts[2] != "sessions"
        or parts[4] != "uploads"
        or not all(parts[i] for i in (1, 3, 5, 6))
    ):
        raise InvalidObjectKey(f"Chiave S3 non valida: {key}")

    return FileRef(
        project_id=parts[1],
        session_id=parts[3],
        upload_id=parts[5],
        file_name=parts[6],
        bucket=bucket,
        object_key=key,
    )


class RangedObjectReader(io.RawIOBase):
    """File-like seekable sopra GET con Range.

    zipfile legge central directory e singole entry con seek/read: ogni read
    diventa una richiesta Range, senza scaricare l'oggetto.
    """

    def __init__(self, storage: "ObjectStorage", bucket: str, key: str, size: int):
        super().__init__()
        self._storage = storage
        self._bucket = bucket
        self._key = key
        self._size = size
        self._pos = 0
        self.requests = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = self._size + offset
        else:
            raise ValueError(f"whence non valido: {whence}")
        if pos < 0:
            # Come un file reale: zipfile gestisce OSError sugli oggetti troppo corti
            raise OSError(f"seek prima dell'inizio dell'oggetto: {pos}")
        self._pos = pos
        return self._pos

    def readinto(self, buffer) -> int:
        if self._pos >= self._size:
            return 0
        length = min(len(buffer), self._size - self._pos)
        data = self._storage.read_range(self._bucket, self._key, self._pos, length)
        self.requests += 1
        n = len(data)
        buffer[:n] = data
        self._pos += n
        return n


class ObjectStorage:
    """Adapter boto3 (S3 / MinIO / qualsiasi endpoint S3)."""

    def __init__(self, client, default_bucket: Optional[str] = None):
        self._client = client
        self.default_bucket = default_bucket

    @classmethod
    def from_config(cls, config) -> "ObjectStorage":
        client = boto3.client(
            "s3",
            region_name=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
        )
        logger.info(f"[STORAGE] S3 client initialized (region={config.s3_region}, endpoint={config.s3_endpoint_url or 'aws'})")
        return cls(client, default_bucket=config.s3_bucket)

    def object_size(self, bucket: str, key: str) -> int:
        response = self._client.head_object(Bucket=bucket, Key=key)
        return int(response["ContentLength"])

    def read_range(self, bucket: str, key: str, offset: int, length: int) -> bytes:
        if length <= 0:
            return b""
        response = self._client.get_object(
            Bucket=bucket,
            Key=key,
            Range=f"bytes={offset}-{offset + length - 1}",
        )
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def open_ranged(
        self, bucket: str, key: str, size: Optional[int] = None, buffer_size: int = 64 * 1024
    ) -> io.BufferedReader:
        if size is None:
            size = self.object_size(bucket, key)
        raw = RangedObjectReader(self, bucket, key, size)
        return io.BufferedReader(raw, buffer_size=buffer_size)

    def download_to(self, bucket: str, key: str, path: Path) -> int:
        """Copia l'oggetto su disco a blocchi; ritorna i byte scritti."""
        response = self._client.get_object(Bucket=bucket, Key=key)
        body = response["Body"]
        try:
            with open(path, "wb") as fh:
                shutil.copyfileobj(body, fh, DOWNLOAD_CHUNK_BYTES)
                written = fh.tell()
        finally:
            body.close()
        logger.debug(f"[STORAGE] Downloaded s3://{bucket}/{key} ({written} bytes)")
        return written
