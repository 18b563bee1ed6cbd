"""
Database core module per xlsx-ingest (MongoDB via motor).

Gestisce connessione, indici, bulk insert idempotente delle righe e pulizia
per sessione/file.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import BulkWriteError

from ingest.types import IngestedRecord

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000


def create_mongo_client(config) -> AsyncIOMotorClient:
    """Crea il client motor (uno per processo)."""
    client = AsyncIOMotorClient(config.mongo_uri, serverSelectionTimeoutMS=5000)
    logger.info(f"[DATABASE] MongoDB client created (db={config.mongo_db})")
    return client


async def ensure_indexes(db: AsyncIOMotorDatabase, collection: str) -> None:
    """Indice per query a range e cancellazioni per sessione/file."""
    await db[collection].create_index(
        [("session_id", ASCENDING), ("upload_id", ASCENDING), ("row_number", ASCENDING)],
        name="session_upload_row",
    )
    await db[collection].create_index([("file_id", ASCENDING)], name="file_id", sparse=True)
    logger.info(f"[DATABASE] Indexes ensured on {collection}")


class DocumentStore:
    """Scritture e cancellazioni sulle collection di righe ingerite."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self._db = db

    async def insert_batch(self, collection: str, records: Sequence[IngestedRecord]) -> int:
        """
        Bulk insert non ordinato di un batch.

        I documenti hanno _id deterministico (upload_id:row_number): le righe
        già presenti (riconsegna dello stesso chunk) falliscono con duplicate
        key e vengono ignorate. Il progresso non dipende da questo valore:
        il worker conta il batch intero, una volta per batch_id.

        Returns:
            Numero di documenti effettivamente inseriti ora

        Raises:
            BulkWriteError: Se almeno un errore non è duplicate key
        """
        if not records:
            return 0

        documents = [r.to_document() for r in records]
        try:
            result = await self._db[collection].insert_many(documents, ordered=False)
            return len(result.inserted_ids)
        except BulkWriteError as e:
            details: Dict[str, Any] = e.details or {}
            write_errors: List[Dict[str, Any]] = details.get("writeErrors", [])
            inserted = int(details.get("nInserted", 0))
            other = [err for err in write_errors if err.get("code") != DUPLICATE_KEY]
            if other:
                logger.error(
                    f"[DATABASE] Bulk insert into {collection}: {inserted} inserted, "
                    f"{len(other)} non-duplicate errors (first: {other[0].get('errmsg')})"
                )
                raise
            logger.info(
                f"[DATABASE] Bulk insert into {collection}: {inserted} inserted, "
                f"{len(write_errors)} rows already present"
            )
            return inserted

    async def delete_file_rows(self, collection: str, session_id: str, upload_id: str) -> int:
        result = await self._db[collection].delete_many(
            {"session_id": session_id, "upload_id": upload_id}
        )
        logger.info(
            f"[DATABASE] Cleared {collection} for session={session_id}, upload={upload_id}: "
            f"{result.deleted_count} deleted"
        )
        return result.deleted_count

    async def delete_session_rows(self, collection: str, session_id: str) -> int:
        result = await self._db[collection].delete_many({"session_id": session_id})
        logger.info(
            f"[DATABASE] Cleared {collection} for session={session_id}: {result.deleted_count} deleted"
        )
        return result.deleted_count

    async def count_rows(self, collection: str, session_id: str, upload_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"session_id": session_id}
        if upload_id is not None:
            query["upload_id"] = upload_id
        return await self._db[collection].count_documents(query)
