"""
Gate - Routing file per formato.

Determina quale reader streaming usare in base all'estensione del file.
"""
import logging
from typing import Optional

from core.errors import UnsupportedFormat
from ingest.types import FileFormat

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("xlsx", "csv", "tsv")


def detect_format(file_name: str, ext: Optional[str] = None) -> FileFormat:
    """
    Formato file dall'estensione.

    Args:
        file_name: Nome file
        ext: Estensione file (se None, estrae da file_name)

    Returns:
        'xlsx', 'csv' o 'tsv'

    Raises:
        UnsupportedFormat: Se estensione mancante o non gestita
    """
    if ext is None:
        if '.' not in file_name:
            raise UnsupportedFormat(f"Impossibile determinare estensione file: {file_name}")
        ext = file_name.rsplit('.', 1)[-1]

    ext = ext.lower().strip().lstrip('.')

    if ext in SUPPORTED_FORMATS:
        logger.debug(f"[GATE] File {file_name} routed to {ext} reader")
        return ext

    error_msg = f"Formato file non supportato: .{ext}. Supportati: XLSX, CSV, TSV"
    logger.error(f"[GATE] {error_msg}")
    raise UnsupportedFormat(error_msg)
