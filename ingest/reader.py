"""
Reader streaming per i chunk worker.

XLSX con openpyxl in read-only (nessun caricamento completo del foglio),
CSV/TSV con csv.reader su file aperto. Entrambi passano da RowStream, una
finestra fissa di righe in memoria.

Conversione celle:
- XLSX: numeri/booleani/testo invariati, date/ore → ISO-8601
- CSV: il testo viene tipizzato (bool, int, float, data ISO), '' → None
"""
import codecs
import csv
import logging
import re
from collections import deque
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from itertools import islice
from pathlib import Path
from typing import Any, Callable, Deque, Iterable, Iterator, List, Optional, Sequence, Tuple

import chardet
from openpyxl import load_workbook

from core.errors import UnsupportedFormat
from ingest.types import CellValue, FileFormat, normalize_temporal

logger = logging.getLogger(__name__)

SNIFF_BYTES = 64 * 1024

INT_RE = re.compile(r"^[-+]?(0|[1-9]\d*)$")
FLOAT_RE = re.compile(r"^[-+]?((\d+\.\d*|\.\d+)([eE][-+]?\d+)?|\d+[eE][-+]?\d+)$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?$")


def detect_encoding(sample: bytes) -> Tuple[str, float]:
    """
    Rileva encoding provando: utf-8-sig → utf-8 → chardet → cp1252 → latin-1.

    Il campione può terminare a metà di un carattere multibyte: la decodifica
    di prova è incrementale e non finale.

    Returns:
        Tuple (encoding, confidence)
    """
    result = chardet.detect(sample[:10000])
    detected = result.get('encoding')
    confidence = result.get('confidence') or 0.0

    candidates = ['utf-8-sig' if sample.startswith(codecs.BOM_UTF8) else 'utf-8']
    if detected:
        candidates.append(detected.lower())
    candidates.extend(['cp1252', 'latin-1'])

    for enc in candidates:
        try:
            codecs.getincrementaldecoder(enc)().decode(sample, final=False)
            logger.debug(f"[READER] Encoding detection: {enc} (confidence={confidence:.2f})")
            return enc, confidence
        except (UnicodeDecodeError, LookupError):
            continue

    logger.warning("[READER] Encoding detection failed, using latin-1")
    return 'latin-1', 0.0


def detect_delimiter(sample: str, file_format: FileFormat = "csv") -> str:
    """Separatore: tab per TSV, csv.Sniffer altrimenti, fallback ','."""
    if file_format == "tsv":
        return '\t'

    lines = [line for line in sample.splitlines()[:10] if line.strip()]
    if not lines:
        return ','

    try:
        delimiter = csv.Sniffer().sniff('\n'.join(lines[:3]), delimiters=',;\t|').delimiter
        logger.debug(f"[READER] CSV Sniffer detected delimiter: '{delimiter}'")
        return delimiter
    except csv.Error:
        logger.debug("[READER] CSV Sniffer failed, using ','")
        return ','


def xlsx_cell(value: Any) -> CellValue:
    if value is None:
        return None
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date, time)):
        return normalize_temporal(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    return str(value)


def csv_cell(text: Optional[str]) -> CellValue:
    """Tipizza una cella CSV dalla sua rappresentazione testuale."""
    if text is None:
        return None
    value = text.strip()
    if value == "":
        return None

    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if INT_RE.match(value):
        return int(value)
    if FLOAT_RE.match(value):
        return float(value)
    if ISO_DATE_RE.match(value):
        try:
            return normalize_temporal(datetime.fromisoformat(value))
        except ValueError:
            return text
    return text


def build_header(values: Sequence[CellValue]) -> List[str]:
    """
    Nomi colonna dalla riga header, in ordine.

    Cella vuota → Column_{indice 0-based}; nomi ripetuti → nome_2, nome_3...
    """
    header: List[str] = []
    seen = set()
    for idx, value in enumerate(values):
        name = str(value).strip() if value is not None else ""
        if not name:
            name = f"Column_{idx}"
        if name in seen:
            suffix = 2
            while f"{name}_{suffix}" in seen:
                suffix += 1
            name = f"{name}_{suffix}"
        seen.add(name)
        header.append(name)
    return header


def row_to_data(header: Sequence[str], values: Sequence[CellValue]) -> dict:
    """Mapping header → valore; celle mancanti → None, celle oltre l'header ignorate."""
    return {
        name: (values[idx] if idx < len(values) else None)
        for idx, name in enumerate(header)
    }


class RowStream:
    """
    Iteratore su (numero riga 1-based, valori convertiti) con al più
    `window` righe grezze in memoria.
    """

    def __init__(
        self,
        rows: Iterable[Sequence[Any]],
        window: int = 100,
        convert: Callable[[Any], CellValue] = xlsx_cell,
    ):
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        self._rows = iter(rows)
        self._window = window
        self._convert = convert
        self._buffer: Deque[Sequence[Any]] = deque()
        self.row_number = 0
        self.peak_buffered = 0
        self.exhausted = False

    def _fill(self) -> None:
        self._buffer.extend(islice(self._rows, self._window))
        self.peak_buffered = max(self.peak_buffered, len(self._buffer))

    def __iter__(self) -> Iterator[Tuple[int, List[CellValue]]]:
        while True:
            if not self._buffer:
                self._fill()
                if not self._buffer:
                    self.exhausted = True
                    return
            raw = self._buffer.popleft()
            self.row_number += 1
            yield self.row_number, [self._convert(v) for v in raw]


@contextmanager
def open_rows(path: Path, file_format: FileFormat, window: int = 100) -> Iterator[RowStream]:
    """
    Apre un file locale come RowStream (primo foglio per XLSX).

    Raises:
        UnsupportedFormat: Formato non gestito
    """
    if file_format == "xlsx":
        workbook = load_workbook(path, read_only=True, data_only=True)
        try:
            sheet = workbook.worksheets[0]
            # <dimension> può essere sbagliato: si legge fino alla fine reale
            sheet.reset_dimensions()
            yield RowStream(sheet.iter_rows(values_only=True), window=window, convert=xlsx_cell)
        finally:
            workbook.close()
        return

    if file_format in ("csv", "tsv"):
        with open(path, "rb") as fh:
            sample = fh.read(SNIFF_BYTES)
        encoding, _ = detect_encoding(sample)
        delimiter = detect_delimiter(sample.decode(encoding, errors="ignore"), file_format)
        logger.info(f"[READER] {path.name}: encoding={encoding}, delimiter={delimiter!r}")
        with open(path, newline="", encoding=encoding, errors="replace") as fh:
            yield RowStream(csv.reader(fh, delimiter=delimiter), window=window, convert=csv_cell)
        return

    raise UnsupportedFormat(f"Formato file non supportato: {file_format}")
