"""
Configurazione pytest e fixture comuni.
"""
import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from core.config import IngestionConfig
from core.progress import ProgressTracker, RetryPolicy, SessionProgress
from core.storage import ObjectStorage
from tests.mocks import BUCKET, FakeDocumentStore, FakeS3Client


@pytest.fixture
def config():
    """Configurazione di test: chunk piccoli, nessuna attesa tra retry."""
    return IngestionConfig(
        redis_url="redis://localhost:6379/0",
        mongo_uri="mongodb://localhost:27017",
        s3_bucket=BUCKET,
        chunk_size=10,
        batch_size=4,
        row_cache_size=5,
        progress_init_backoff_sec=0.0,
        stream_block_ms=0,
        reclaim_idle_ms=0,
        chunk_timeout_sec=5.0,
    )


@pytest.fixture
def fake_redis():
    """Redis in memoria, server isolato per test."""
    return FakeAsyncRedis(server=FakeServer(), decode_responses=True)


@pytest.fixture
def tracker(fake_redis):
    return ProgressTracker(fake_redis, ttl_sec=86400)


@pytest.fixture
def session_progress(fake_redis):
    return SessionProgress(fake_redis, ttl_sec=86400)


@pytest.fixture
def no_wait_retry():
    return RetryPolicy(max_attempts=3, backoff_sec=0.0)


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def storage(s3_client):
    return ObjectStorage(s3_client, default_bucket=BUCKET)


@pytest.fixture
def document_store():
    return FakeDocumentStore()
