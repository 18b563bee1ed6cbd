# messaging/stream.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ingest.types import ChunkJobDescriptor

logger = logging.getLogger(__name__)

ProcessFn = Callable[[ChunkJobDescriptor], Awaitable[Any]]
DeadLetterFn = Callable[[Optional[ChunkJobDescriptor], str], Awaitable[None]]


def get_redis(url: str) -> redis.Redis:
    if not url:
        raise RuntimeError("REDIS_URL not set")
    return redis.from_url(url, decode_responses=True)


async def ensure_group(r: redis.Redis, stream: str, group: str):
    # Crea consumer group se non esiste (MKSTREAM=True per creare stream vuota).
    # Id "0": i chunk pubblicati prima dell'avvio dei worker vengono consegnati
    try:
        await r.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
    except redis.ResponseError as e:
        # Già esiste
        if "BUSYGROUP" not in str(e):
            raise


async def publish_chunk(r: redis.Redis, stream: str, descriptor: ChunkJobDescriptor) -> str:
    # Singolo campo "payload" JSON
    return await r.xadd(stream, {"payload": descriptor.model_dump_json()})


def _parse_descriptor(fields: Optional[Dict[str, str]]) -> Optional[ChunkJobDescriptor]:
    try:
        return ChunkJobDescriptor.model_validate_json(fields["payload"])
    except (KeyError, TypeError, ValidationError):
        return None


class StreamConsumer:
    """
    Consumer di un gruppo: un messaggio alla volta, XACK solo a elaborazione
    riuscita.

    I pending rimasti fermi oltre reclaim_idle_ms (worker morto, errore,
    timeout) vengono ripresi; oltre max_deliveries consegne finiscono nello
    stream dead-letter e vengono confermati.
    """

    def __init__(
        self,
        r: redis.Redis,
        stream: str,
        group: str,
        consumer_name: str,
        dead_stream: Optional[str] = None,
        block_ms: int = 10_000,
        max_deliveries: int = 5,
        reclaim_idle_ms: int = 15 * 60 * 1000,
        chunk_timeout_sec: Optional[float] = 900.0,
        on_dead_letter: Optional[DeadLetterFn] = None,
    ):
        self.r = r
        self.stream = stream
        self.group = group
        self.consumer_name = consumer_name
        self.dead_stream = dead_stream or f"{stream}:dead"
        self.block_ms = block_ms
        self.max_deliveries = max_deliveries
        self.reclaim_idle_ms = reclaim_idle_ms
        self.chunk_timeout_sec = chunk_timeout_sec
        self.on_dead_letter = on_dead_letter

    @classmethod
    def from_config(cls, r: redis.Redis, config, on_dead_letter: Optional[DeadLetterFn] = None) -> "StreamConsumer":
        return cls(
            r,
            stream=config.stream_name,
            group=config.consumer_group,
            consumer_name=config.consumer_name,
            dead_stream=config.dead_letter_stream,
            block_ms=config.stream_block_ms,
            max_deliveries=config.max_deliveries,
            reclaim_idle_ms=config.reclaim_idle_ms,
            chunk_timeout_sec=config.chunk_timeout_sec,
            on_dead_letter=on_dead_letter,
        )

    async def reclaim_stale(self, count: int = 10) -> List[Tuple[str, Optional[Dict[str, str]], int]]:
        """Riprende pending inattivi; ritorna (id, campi, consegne dopo il claim)."""
        pending = await self.r.xpending_range(
            self.stream,
            self.group,
            min="-",
            max="+",
            count=count,
            idle=self.reclaim_idle_ms or None,
        )
        if not pending:
            return []

        deliveries = {p["message_id"]: p["times_delivered"] + 1 for p in pending}
        claimed = await self.r.xclaim(
            self.stream,
            self.group,
            self.consumer_name,
            min_idle_time=self.reclaim_idle_ms,
            message_ids=list(deliveries),
        )
        result = []
        for msg_id, fields in claimed:
            if msg_id is None:
                continue
            result.append((msg_id, fields, deliveries.get(msg_id, 1)))
        if result:
            logger.info(f"[STREAM] Reclaimed {len(result)} stale pending message(s)")
        return result

    async def dead_letter(
        self, msg_id: str, fields: Optional[Dict[str, str]], reason: str, deliveries: int
    ) -> None:
        await self.r.xadd(self.dead_stream, {
            "payload": (fields or {}).get("payload", ""),
            "source_id": msg_id,
            "reason": reason,
            "deliveries": deliveries,
        })
        await self.r.xack(self.stream, self.group, msg_id)
        logger.error(f"[STREAM] {msg_id} moved to {self.dead_stream}: {reason}")

        if self.on_dead_letter is not None:
            try:
                await self.on_dead_letter(_parse_descriptor(fields), reason)
            except Exception as e:
                logger.warning(f"[STREAM] Dead-letter callback failed for {msg_id}: {e}")

    async def handle(
        self, msg_id: str, fields: Optional[Dict[str, str]], deliveries: int, process_fn: ProcessFn
    ) -> bool:
        """
        Elabora un messaggio.

        Returns:
            True se confermato (elaborato o dead-letter), False se resta pending
        """
        if fields is None:
            # Entry cancellata dallo stream ma ancora nel PEL
            await self.r.xack(self.stream, self.group, msg_id)
            return True

        if deliveries > self.max_deliveries:
            await self.dead_letter(
                msg_id, fields, f"max deliveries exceeded ({deliveries - 1}/{self.max_deliveries})", deliveries
            )
            return True

        try:
            descriptor = ChunkJobDescriptor.model_validate_json(fields["payload"])
        except (KeyError, ValidationError) as e:
            await self.dead_letter(msg_id, fields, f"invalid payload: {e}", deliveries)
            return True

        try:
            await asyncio.wait_for(process_fn(descriptor), timeout=self.chunk_timeout_sec)
        except asyncio.TimeoutError:
            # Non facciamo XACK: il messaggio resta in PEL e verrà ripreso
            logger.error(
                f"[STREAM] {msg_id} (chunk {descriptor.chunk_number} of {descriptor.upload_id}) "
                f"timed out after {self.chunk_timeout_sec}s (delivery {deliveries})"
            )
            return False
        except Exception as e:
            # Non facciamo XACK: il messaggio resta in PEL per retry o dead-letter
            logger.error(
                f"[STREAM] errore su {msg_id} (chunk {descriptor.chunk_number} of {descriptor.upload_id}, "
                f"delivery {deliveries}): {e}",
                exc_info=True,
            )
            return False

        await self.r.xack(self.stream, self.group, msg_id)
        return True

    async def run_once(self, process_fn: ProcessFn) -> int:
        """Un giro: pending ripresi, poi al più un messaggio nuovo. Ritorna i messaggi gestiti."""
        handled = 0
        for msg_id, fields, deliveries in await self.reclaim_stale():
            await self.handle(msg_id, fields, deliveries, process_fn)
            handled += 1

        records = await self.r.xreadgroup(
            groupname=self.group,
            consumername=self.consumer_name,
            streams={self.stream: ">"},
            count=1,
            block=self.block_ms or None,
        )
        for _stream, messages in records or []:
            for msg_id, fields in messages:
                await self.handle(msg_id, fields, 1, process_fn)
                handled += 1
        return handled

    async def consume_forever(self, process_fn: ProcessFn):
        await ensure_group(self.r, self.stream, self.group)
        logger.info(
            f"[STREAM] Consumer {self.consumer_name} listening on {self.stream} (group={self.group})"
        )
        while True:
            await self.run_once(process_fn)
