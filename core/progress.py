"""
Progress tracker condiviso su Redis.

Un hash per job (upload:status:{upload_id}) con contatore atomico delle righe
inserite, e un hash per sessione (session:complete:{session_id}) con
l'avanzamento dell'orchestratore.

Tutte le mutazioni sono HINCRBY/HSETNX/HSET dentro MULTI: nessun
read-modify-write lato client sul contatore. I batch già contati stanno in
un set (upload:counted:{upload_id}) scritto nella stessa transazione.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from core.errors import ProgressInitFailure
from ingest.types import ProgressState, ProgressStatus, SessionProgressState

logger = logging.getLogger(__name__)

PROGRESS_KEY = "upload:status:{upload_id}"
COUNTED_KEY = "upload:counted:{upload_id}"
SESSION_KEY = "session:complete:{session_id}"


def _now() -> str:
    return datetime.utcnow().isoformat()


def _as_int(value: Optional[str], default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class RetryPolicy:
    """Tentativi massimi e attesa fissa tra un tentativo e l'altro."""
    max_attempts: int = 3
    backoff_sec: float = 5.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.progress_init_attempts,
            backoff_sec=config.progress_init_backoff_sec,
        )


class ProgressTracker:
    """Stato di avanzamento per job di ingestione (un file caricato)."""

    def __init__(
        self,
        redis: Redis,
        ttl_sec: int = 86400,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._redis = redis
        self._ttl_sec = ttl_sec
        self._sleep = sleep

    @staticmethod
    def key(upload_id: str) -> str:
        return PROGRESS_KEY.format(upload_id=upload_id)

    async def initialize(
        self,
        upload_id: str,
        total_rows: int,
        total_rows_exact: bool = True,
        retry: RetryPolicy = RetryPolicy(),
    ) -> bool:
        """
        Inizializzazione condizionale con retry limitati.

        Ogni campo è scritto solo se assente: una seconda chiamata (primo
        chunk riconsegnato) non azzera un contatore già avanzato da altri
        chunk.

        Returns:
            True se l'hash è inizializzato, False se i tentativi sono esauriti
            (il chunk prosegue senza visibilità del progresso)
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, retry.max_attempts + 1):
            try:
                logger.info(
                    f"[PROGRESS] Init attempt {attempt}/{retry.max_attempts} for {upload_id} "
                    f"(total_rows={total_rows}, exact={total_rows_exact})"
                )
                await self._initialize_once(upload_id, total_rows, total_rows_exact)
                logger.info(f"[PROGRESS] Init succeeded for {upload_id} (attempt {attempt})")
                return True
            except RedisError as e:
                last_error = e
                logger.warning(f"[PROGRESS] Init failed for {upload_id} (attempt {attempt}): {e}")
                if attempt < retry.max_attempts:
                    logger.info(f"[PROGRESS] Retrying in {retry.backoff_sec}s")
                    await self._sleep(retry.backoff_sec)

        failure = ProgressInitFailure(upload_id, retry.max_attempts, last_error)
        logger.warning(f"[PROGRESS] {failure} - processing continues without progress tracking")
        return False

    async def _initialize_once(self, upload_id: str, total_rows: int, total_rows_exact: bool) -> None:
        key = self.key(upload_id)
        now = _now()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, "processed_rows", 0)
            pipe.hsetnx(key, "total_rows", total_rows)
            pipe.hsetnx(key, "total_rows_exact", int(total_rows_exact))
            pipe.hsetnx(key, "status", ProgressStatus.PROCESSING.value)
            pipe.hsetnx(key, "started_at", now)
            pipe.hset(key, "updated_at", now)
            pipe.expire(key, self._ttl_sec)
            pipe.hmget(key, "processed_rows", "total_rows", "total_rows_exact")
            results = await pipe.execute()

        processed, total, exact = results[-1]
        await self._complete_if_done(key, _as_int(processed), total, exact)

    async def increment_processed(self, upload_id: str, delta: int, batch_id: Optional[str] = None) -> int:
        """
        Incremento atomico delle righe elaborate.

        Con batch_id il conteggio è idempotente per batch: l'id entra nel set
        upload:counted:{upload_id} nella stessa transazione dell'HINCRBY, e un
        batch già contato (chunk riconsegnato) non incrementa di nuovo.

        Returns:
            Valore cumulativo dopo l'incremento
        """
        if batch_id is None:
            async with self._redis.pipeline(transaction=True) as pipe:
                self._queue_increment(pipe, upload_id, delta)
                processed, (total, exact), _, _ = await pipe.execute()
        else:
            counted = await self._increment_batch_once(upload_id, delta, batch_id)
            if counted is None:
                logger.info(f"[PROGRESS] {upload_id}: batch {batch_id} already counted")
                return _as_int(await self._redis.hget(self.key(upload_id), "processed_rows"))
            processed, total, exact = counted

        processed = int(processed)
        await self._complete_if_done(self.key(upload_id), processed, total, exact)

        if total:
            logger.info(
                f"[PROGRESS] {upload_id}: {processed}/{total} rows "
                f"({int(processed * 100 / int(total)) if int(total) else 100}%)"
            )
        return processed

    def _queue_increment(self, pipe, upload_id: str, delta: int) -> None:
        key = self.key(upload_id)
        pipe.hincrby(key, "processed_rows", delta)
        pipe.hmget(key, "total_rows", "total_rows_exact")
        pipe.hset(key, "updated_at", _now())
        pipe.expire(key, self._ttl_sec)

    async def _increment_batch_once(
        self, upload_id: str, delta: int, batch_id: str
    ) -> Optional[Tuple[int, Optional[str], Optional[str]]]:
        """
        WATCH sul set dei batch contati, poi SADD + HINCRBY in MULTI.

        Returns:
            (processed, total, exact) se il batch è stato contato ora,
            None se era già nel set
        """
        counted_key = COUNTED_KEY.format(upload_id=upload_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(counted_key)
                    if await pipe.sismember(counted_key, batch_id):
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.sadd(counted_key, batch_id)
                    pipe.expire(counted_key, self._ttl_sec)
                    self._queue_increment(pipe, upload_id, delta)
                    _, _, processed, (total, exact), _, _ = await pipe.execute()
                    return int(processed), total, exact
                except WatchError:
                    # Altro batch dello stesso upload contato nel frattempo
                    continue

    async def settle_total(self, upload_id: str, actual_rows: int) -> None:
        """
        Fissa il totale reale osservato da un worker arrivato a fine foglio.

        Con totale stimato il job non può completarsi finché il totale non
        viene fissato.
        """
        key = self.key(upload_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={
                "total_rows": actual_rows,
                "total_rows_exact": 1,
                "updated_at": _now(),
            })
            pipe.expire(key, self._ttl_sec)
            pipe.hget(key, "processed_rows")
            _, _, processed = await pipe.execute()

        logger.info(f"[PROGRESS] {upload_id}: total settled at {actual_rows} rows")
        await self._complete_if_done(key, _as_int(processed), str(actual_rows), "1")

    async def _complete_if_done(
        self, key: str, processed: int, total: Optional[str], exact: Optional[str]
    ) -> bool:
        # COMPLETED è finale e idempotente: processed non decresce mai
        if total is None or exact != "1" or processed < int(total):
            return False
        now = _now()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, "status", ProgressStatus.COMPLETED.value)
            pipe.hsetnx(key, "completed_at", now)
            await pipe.execute()
        logger.info(f"[PROGRESS] {key} COMPLETED ({processed}/{total})")
        return True

    async def mark_failed(self, upload_id: str, message: str) -> None:
        key = self.key(upload_id)
        now = _now()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={
                "status": ProgressStatus.FAILED.value,
                "message": message,
                "updated_at": now,
            })
            pipe.hsetnx(key, "processed_rows", 0)
            pipe.expire(key, self._ttl_sec)
            await pipe.execute()
        logger.warning(f"[PROGRESS] {upload_id} FAILED: {message}")

    async def record_failed_chunk(self, upload_id: str, chunk_number: Optional[int], reason: str) -> int:
        key = self.key(upload_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "failed_chunks", 1)
            pipe.hset(key, "message", f"chunk {chunk_number} dead-lettered: {reason}")
            pipe.expire(key, self._ttl_sec)
            failed, _, _ = await pipe.execute()
        return int(failed)

    async def reset(self, upload_id: str) -> None:
        """Cancella lo stato di un job (nuova ingestione dello stesso file)."""
        await self._redis.delete(self.key(upload_id), COUNTED_KEY.format(upload_id=upload_id))

    async def read(self, upload_id: str) -> ProgressState:
        """
        Stato corrente del job.

        NOT_FOUND se la chiave manca, è scaduta, o non è mai stata
        inizializzata (solo incrementi senza status).
        """
        data = await self._redis.hgetall(self.key(upload_id))
        if not data or "status" not in data:
            return ProgressState.not_found(upload_id)

        return ProgressState(
            upload_id=upload_id,
            status=ProgressStatus(data["status"]),
            total_rows=_as_int(data.get("total_rows")),
            processed_rows=_as_int(data.get("processed_rows")),
            total_rows_exact=data.get("total_rows_exact", "1") == "1",
            failed_chunks=_as_int(data.get("failed_chunks")),
            message=data.get("message"),
            started_at=data.get("started_at"),
            updated_at=data.get("updated_at"),
            completed_at=data.get("completed_at"),
        )


class SessionProgress:
    """Avanzamento dell'orchestratore per una sessione (0-100, messaggio)."""

    def __init__(self, redis: Redis, ttl_sec: int = 86400):
        self._redis = redis
        self._ttl_sec = ttl_sec

    @staticmethod
    def key(session_id: str) -> str:
        return SESSION_KEY.format(session_id=session_id)

    async def start(self, session_id: str, message: str = "Session ingestion started") -> None:
        key = self.key(session_id)
        now = _now()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping={
                "status": ProgressStatus.PROCESSING.value,
                "progress": 0,
                "message": message,
                "started_at": now,
                "updated_at": now,
            })
            pipe.expire(key, self._ttl_sec)
            await pipe.execute()

    async def update(self, session_id: str, progress: int, message: str) -> None:
        """
        Aggiorna avanzamento sessione: >= 100 → COMPLETED, < 0 → FAILED.

        Errori Redis solo loggati: l'avanzamento non blocca l'orchestratore.
        """
        mapping = {"progress": progress, "message": message, "updated_at": _now()}
        if progress >= 100:
            mapping["status"] = ProgressStatus.COMPLETED.value
        elif progress < 0:
            mapping["status"] = ProgressStatus.FAILED.value
        try:
            await self._redis.hset(self.key(session_id), mapping=mapping)
            logger.debug(f"[PROGRESS] Session {session_id}: {progress}% {message}")
        except RedisError as e:
            logger.warning(f"[PROGRESS] Session progress update failed for {session_id}: {e}")

    async def read(self, session_id: str) -> SessionProgressState:
        data = await self._redis.hgetall(self.key(session_id))
        if not data:
            return SessionProgressState(
                session_id=session_id,
                status=ProgressStatus.NOT_STARTED,
                message="Session ingestion not started",
            )
        return SessionProgressState(
            session_id=session_id,
            status=ProgressStatus(data.get("status", ProgressStatus.PROCESSING.value)),
            progress=_as_int(data.get("progress")),
            message=data.get("message", ""),
        )
