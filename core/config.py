"""
Configurazione per xlsx-ingest usando pydantic-settings.

Gestisce tutte le variabili d'ambiente della pipeline di ingestione a chunk.
"""
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Carica .env
load_dotenv()

logger = logging.getLogger(__name__)


class IngestionConfig(BaseSettings):
    """Configurazione completa della pipeline di ingestione."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Redis (coda chunk + progress tracker)
    redis_url: str = Field(default="redis://localhost:6379/0", description="URL connessione Redis")

    # MongoDB (document store)
    mongo_uri: str = Field(default="mongodb://localhost:27017", description="URI connessione MongoDB")
    mongo_db: str = Field(default="ingest_db", description="Database MongoDB")
    raw_collection: str = Field(default="raw_data", description="Collection righe grezze")
    derived_collection: str = Field(default="process_data", description="Collection dati derivati")

    # Object storage (S3 compatibile)
    s3_endpoint_url: Optional[str] = Field(default=None, description="Endpoint S3 (None = AWS)")
    s3_region: str = Field(default="ap-northeast-2", description="Regione S3")
    s3_bucket: str = Field(default="excel-uploads", description="Bucket upload di default")

    # Pianificazione chunk
    chunk_size: int = Field(default=2000, ge=1, description="Righe per chunk")
    batch_size: int = Field(default=20000, ge=1, description="Righe per bulk insert")
    row_cache_size: int = Field(default=100, ge=1, description="Finestra righe in memoria del reader")

    # Prober
    bytes_per_row: int = Field(default=200, ge=1, description="Byte medi per riga (stima fallback)")
    probe_prefix_bytes: int = Field(default=2048, ge=64, description="Byte letti dal foglio per <dimension>")

    # Progress tracker
    progress_ttl_sec: int = Field(default=86400, ge=1, description="TTL chiavi progresso")
    progress_init_attempts: int = Field(default=3, ge=1, description="Tentativi inizializzazione progresso")
    progress_init_backoff_sec: float = Field(default=5.0, ge=0.0, description="Attesa fissa tra tentativi")

    # Redis Stream
    stream_name: str = Field(default="ingest_chunks", description="Stream messaggi chunk")
    consumer_group: str = Field(default="chunk-workers", description="Consumer group worker")
    consumer_name: str = Field(default="worker-1", description="Nome consumer (hostname/istanza)")
    stream_block_ms: int = Field(default=10_000, ge=0, description="BLOCK per XREADGROUP")
    max_deliveries: int = Field(default=5, ge=1, description="Consegne massime prima del dead-letter")
    reclaim_idle_ms: int = Field(default=15 * 60 * 1000, ge=0, description="Idle minimo per riprendere un pending")
    chunk_timeout_sec: float = Field(default=900.0, gt=0, description="Timeout esecuzione singolo chunk")

    # Server
    port: int = Field(default=8001, description="Porta server FastAPI")

    # Processor info
    processor_name: str = Field(default="xlsx-ingest", description="Nome servizio")
    processor_version: str = Field(default="1.0.0", description="Versione servizio")

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.stream_name}:dead"

    def validate_config(self) -> bool:
        """Valida configurazione critica."""
        errors = []

        if not self.redis_url:
            errors.append("REDIS_URL non configurato")

        if not self.mongo_uri:
            errors.append("MONGO_URI non configurato")

        if self.reclaim_idle_ms and self.reclaim_idle_ms < self.chunk_timeout_sec * 1000:
            # Un chunk ancora in esecuzione potrebbe essere ripreso da un altro worker
            logger.warning(
                f"RECLAIM_IDLE_MS ({self.reclaim_idle_ms}) < CHUNK_TIMEOUT_SEC "
                f"({self.chunk_timeout_sec}): possibili consegne doppie"
            )

        if errors:
            error_msg = "❌ Configurazione ingest mancante:\n" + "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

        logger.info("✅ Configurazione ingest validata con successo")
        return True


# Istanza globale configurazione
_config: IngestionConfig | None = None


def get_config() -> IngestionConfig:
    """Ottiene istanza configurazione (singleton)."""
    global _config
    if _config is None:
        _config = IngestionConfig()
        _config.validate_config()
    return _config


def validate_config() -> bool:
    """Valida configurazione critica (funzione standalone per compatibilità)."""
    config = get_config()
    return config.validate_config()
