# consumer.py - worker dei chunk (scalare avviando N processi con CONSUMER_NAME diversi)
import asyncio
import logging
from typing import Optional

from core.config import get_config
from core.database import DocumentStore, create_mongo_client
from core.logger import setup_colored_logging
from core.progress import ProgressTracker
from core.storage import ObjectStorage
from ingest.types import ChunkJobDescriptor
from ingest.worker import ChunkWorker
from messaging.stream import StreamConsumer, get_redis

logger = logging.getLogger(__name__)


def make_dead_letter_handler(tracker: ProgressTracker):
    async def on_dead_letter(descriptor: Optional[ChunkJobDescriptor], reason: str):
        if descriptor is None:
            return
        failed = await tracker.record_failed_chunk(descriptor.upload_id, descriptor.chunk_number, reason)
        logger.error(
            f"Chunk {descriptor.chunk_number}/{descriptor.total_chunks} of {descriptor.upload_id} "
            f"dead-lettered ({failed} failed chunk(s) so far): {reason}"
        )
    return on_dead_letter


async def main():
    config = get_config()
    logger.info(f"Starting consumer: {config.consumer_name}")

    redis_client = get_redis(config.redis_url)
    mongo_client = create_mongo_client(config)
    try:
        tracker = ProgressTracker(redis_client, ttl_sec=config.progress_ttl_sec)
        worker = ChunkWorker.from_config(
            config,
            storage=ObjectStorage.from_config(config),
            store=DocumentStore(mongo_client[config.mongo_db]),
            tracker=tracker,
        )
        consumer = StreamConsumer.from_config(
            redis_client, config, on_dead_letter=make_dead_letter_handler(tracker)
        )
        await consumer.consume_forever(worker.process)
    finally:
        await redis_client.aclose()
        mongo_client.close()


if __name__ == "__main__":
    setup_colored_logging("ingest-worker")
    asyncio.run(main())
