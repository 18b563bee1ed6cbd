"""
Logging strutturato per xlsx-ingest.

Unifica logging colorato e structured logging con supporto JSON.
Il contesto (upload_id, session_id, correlation_id) viaggia in contextvars,
quindi ogni task asyncio (un chunk, una sessione) ha il proprio.
"""
import contextvars
import json
import logging
import sys
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import colorlog

# Context variables per tracciare job e sessioni
_request_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar('request_context', default={})


LEVEL_COLORS = {
    'DEBUG': 'thin_white',
    'INFO': 'green',
    'WARNING': 'bold_yellow',
    'ERROR': 'bold_red',
    'CRITICAL': 'bold_red,bg_white',
}

# Client S3/Mongo/HTTP: solo warning e oltre
NOISY_LIBRARIES = ('botocore', 'boto3', 's3transfer', 'urllib3', 'pymongo', 'httpx')


def setup_colored_logging(service_name: str = "ingest", level: int = logging.INFO):
    """
    Configura il root logger con output colorato (colorlog) su stdout.

    Chiamabile più volte: sostituisce gli handler esistenti invece di
    accumularli (API e worker la invocano all'avvio).

    Args:
        service_name: Etichetta del processo mostrata in ogni riga
        level: Livello del root logger
    """
    line_format = (
        '%(asctime)s %(log_color)s%(levelname)-8s%(reset)s '
        f'%(purple)s{service_name}%(reset)s %(name)s: %(message)s'
    )
    console = colorlog.StreamHandler(sys.stdout)
    console.setFormatter(
        colorlog.ColoredFormatter(line_format, datefmt='%H:%M:%S', log_colors=LEVEL_COLORS)
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(console)
    root.setLevel(level)

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def set_request_context(
    upload_id: Optional[str] = None,
    session_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    **fields
):
    """
    Imposta contesto per logging strutturato.

    Args:
        upload_id: ID job di ingestione (un file)
        session_id: ID sessione di lavoro
        correlation_id: ID correlazione (genera se None)
        **fields: Campi aggiuntivi (es. chunk_number)
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())

    context: Dict[str, Any] = {}
    if upload_id is not None:
        context["upload_id"] = upload_id
    if session_id is not None:
        context["session_id"] = session_id
    context["correlation_id"] = correlation_id
    context.update({k: v for k, v in fields.items() if v is not None})

    _request_context.set(context)


def get_request_context() -> Dict[str, Any]:
    """Recupera contesto corrente."""
    return _request_context.get({})


def get_correlation_id() -> Optional[str]:
    """Recupera correlation ID dal contesto."""
    return get_request_context().get("correlation_id")


def log_with_context(level: str, message: str, **extra):
    """
    Log con prefisso di contesto ([upload_id=...] [chunk=...]).

    Args:
        level: 'info', 'warning', 'error', 'debug'
        message: Messaggio da loggare
        **extra: Passati al logger (es. exc_info=True)
    """
    ctx = get_request_context()

    prefix = ""
    if ctx.get("upload_id"):
        prefix += f"[upload_id={ctx['upload_id']}] "
    if ctx.get("chunk_number"):
        prefix += f"[chunk={ctx['chunk_number']}] "

    logger = logging.getLogger(__name__)
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(f"{prefix}{message}", **extra)


def log_json(
    level: str,
    message: str,
    stage: Optional[str] = None,
    file_name: Optional[str] = None,
    rows_total: Optional[int] = None,
    rows_processed: Optional[int] = None,
    elapsed_sec: Optional[float] = None,
    **extra
):
    """
    Log strutturato in formato JSON line (per produzione).

    Args:
        level: 'info', 'warning', 'error', 'debug'
        message: Messaggio da loggare
        stage: Fase pipeline (probe, plan, dispatch, chunk, session)
        file_name: Nome file processato
        rows_total: Righe totali (stimate o esatte)
        rows_processed: Righe inserite
        elapsed_sec: Tempo elaborazione in secondi
        **extra: Campi aggiuntivi
    """
    log_data: Dict[str, Any] = {
        "timestamp": datetime.utcnow().isoformat(),
        "level": level.upper(),
        "message": message,
    }
    log_data.update(get_request_context())

    if stage:
        log_data["stage"] = stage
    if file_name:
        log_data["file_name"] = file_name
    if rows_total is not None:
        log_data["rows_total"] = rows_total
    if rows_processed is not None:
        log_data["rows_processed"] = rows_processed
    if elapsed_sec is not None:
        log_data["elapsed_sec"] = round(elapsed_sec, 3)

    log_data.update(extra)

    logger = logging.getLogger(__name__)
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_data, ensure_ascii=False, default=str))
