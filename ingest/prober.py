"""
Row-count prober.

Stima le righe dati (header escluso) di un file nello storage senza
scaricarlo:
1. XLSX: legge solo l'inizio del primo foglio (richieste Range sulla
   central directory e sull'entry) e cerca <dimension ref="A1:F10524"/>
2. Fallback: dimensione oggetto / byte medi per riga
"""
import logging
import re
import zipfile
from dataclasses import dataclass
from typing import Optional

from core.errors import ProbeFailed
from core.storage import ObjectStorage, StorageError
from ingest.types import FileFormat

logger = logging.getLogger(__name__)

DIMENSION_RE = re.compile(rb'<dimension\s+ref="([A-Z]+)(\d+)(?::([A-Z]+)(\d+))?"')
WORKSHEET_RE = re.compile(r"^xl/worksheets/sheet(\d+)\.xml$")

DIMENSION_PROBE_ERRORS = (zipfile.BadZipFile, KeyError, OSError, EOFError) + StorageError


@dataclass(frozen=True)
class RowCountEstimate:
    rows: int
    exact: bool
    method: str  # "dimension" | "size"


def first_worksheet(names) -> Optional[str]:
    """Entry del primo foglio (numero più basso) nel contenitore zip."""
    sheets = []
    for name in names:
        match = WORKSHEET_RE.match(name)
        if match:
            sheets.append((int(match.group(1)), name))
    if not sheets:
        return None
    return min(sheets)[1]


def parse_dimension(prefix: bytes) -> Optional[int]:
    """
    Ultima riga dichiarata dal tag <dimension>.

    "A1:F10524" → 10524, "A1" (foglio con una sola cella) → 1.
    """
    match = DIMENSION_RE.search(prefix)
    if not match:
        return None
    last_row = match.group(4) or match.group(2)
    return int(last_row)


def read_prefix(fh, limit: int) -> bytes:
    # read() può restituire meno byte del richiesto: si cicla fino a limit o EOF
    buffer = bytearray()
    while len(buffer) < limit:
        chunk = fh.read(limit - len(buffer))
        if not chunk:
            break
        buffer.extend(chunk)
    return bytes(buffer)


def _probe_dimension(storage: ObjectStorage, bucket: str, key: str, size: int, prefix_bytes: int) -> Optional[int]:
    with storage.open_ranged(bucket, key, size=size) as raw:
        with zipfile.ZipFile(raw) as archive:
            sheet = first_worksheet(archive.namelist())
            if sheet is None:
                logger.warning(f"[PROBER] No worksheet entry in {key}")
                return None
            with archive.open(sheet) as fh:
                prefix = read_prefix(fh, prefix_bytes)

    last_row = parse_dimension(prefix)
    if last_row is None:
        logger.info(f"[PROBER] No <dimension> tag in first {len(prefix)} bytes of {sheet}")
    return last_row


def probe_row_count(
    storage: ObjectStorage,
    bucket: str,
    key: str,
    file_format: FileFormat = "xlsx",
    bytes_per_row: int = 200,
    prefix_bytes: int = 2048,
) -> RowCountEstimate:
    """
    Stima righe dati di un oggetto.

    Args:
        storage: Adapter object storage
        bucket: Bucket
        key: Chiave oggetto
        file_format: 'xlsx', 'csv' o 'tsv' (csv/tsv solo fallback)
        bytes_per_row: Costante per la stima da dimensione
        prefix_bytes: Byte del foglio letti per cercare <dimension>

    Returns:
        RowCountEstimate (rows >= 0)

    Raises:
        ProbeFailed: Se non è disponibile nemmeno la dimensione dell'oggetto
    """
    try:
        size = storage.object_size(bucket, key)
    except StorageError as e:
        logger.error(f"[PROBER] Cannot read size of s3://{bucket}/{key}: {e}")
        raise ProbeFailed(key, e) from e

    if file_format == "xlsx":
        try:
            last_row = _probe_dimension(storage, bucket, key, size, prefix_bytes)
            if last_row is not None:
                rows = max(last_row - 1, 0)
                logger.info(f"[PROBER] {key}: {rows} rows from <dimension> (exact)")
                return RowCountEstimate(rows=rows, exact=True, method="dimension")
        except DIMENSION_PROBE_ERRORS as e:
            logger.warning(f"[PROBER] Dimension probe failed for {key}: {e}, falling back to size estimate")

    rows = size // bytes_per_row
    if rows == 0 and size > 0:
        # File piccolo ma non vuoto: almeno un chunk (open-ended) va letto
        rows = 1
    logger.info(f"[PROBER] {key}: ~{rows} rows estimated from size ({size} bytes / {bytes_per_row})")
    return RowCountEstimate(rows=rows, exact=False, method="size")
