"""
Avvio API di ingestione (uvicorn multi-worker).
"""
import logging
import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

# Logging prima degli import applicativi
from core.logger import setup_colored_logging
setup_colored_logging("ingest-api")

from core.config import get_config

logger = logging.getLogger(__name__)


def _redacted(url: str) -> str:
    """URL senza credenziali (user:password@)."""
    return url.rsplit('@', 1)[-1]


def main():
    config = get_config()
    bind_host = os.getenv("HOST", "0.0.0.0")
    api_workers = int(os.getenv("UVICORN_WORKERS", "2"))

    logger.info(
        f"[BOOT] {config.processor_name} v{config.processor_version} "
        f"-> http://{bind_host}:{config.port} (workers={api_workers})"
    )
    logger.info(
        f"[BOOT] redis={_redacted(config.redis_url)} mongo_db={config.mongo_db} "
        f"bucket={config.s3_bucket} chunk_size={config.chunk_size}"
    )

    try:
        # colorlog gestisce già il root logger
        uvicorn.run(
            "api.main:app",
            host=bind_host,
            port=config.port,
            workers=api_workers,
            access_log=True,
            use_colors=False,
        )
    except Exception as e:
        logger.error(f"[BOOT] Server non avviato: {e}")
        raise


if __name__ == "__main__":
    main()
