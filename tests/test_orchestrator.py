"""
Test per orchestratore di sessione e pipeline di un file.

Flusso completo con S3 finto, fakeredis e document store in memoria:
run_session → stream → worker → progress.
"""
from unittest.mock import AsyncMock, patch

import pytest
from pymongo.errors import PyMongoError
from redis.exceptions import ConnectionError as RedisConnectionError

from core.storage import build_object_key
from ingest.orchestrator import IngestionOrchestrator
from ingest.types import ChunkJobDescriptor, FileRef, ProgressStatus
from ingest.worker import ChunkWorker
from messaging.dispatcher import WorkDispatcher
from messaging.stream import StreamConsumer, ensure_group, publish_chunk
from tests.mocks import BUCKET, build_xlsx, numbered_rows

HEADER = ["id", "name", "value"]


def make_file(upload_id: str, file_name: str = "ledger.xlsx", session_id: str = "sess-1") -> FileRef:
    return FileRef(
        project_id="proj-1",
        session_id=session_id,
        upload_id=upload_id,
        file_name=file_name,
        bucket=BUCKET,
        object_key=build_object_key("proj-1", session_id, upload_id, file_name),
    )


@pytest.fixture
def dispatcher(fake_redis, config):
    return WorkDispatcher(fake_redis, config.stream_name)


@pytest.fixture
def orchestrator(storage, document_store, tracker, session_progress, dispatcher, config):
    return IngestionOrchestrator(storage, document_store, tracker, session_progress, dispatcher, config)


def upload(s3_client, file: FileRef, rows: int):
    s3_client.put(file.bucket, file.object_key, build_xlsx(numbered_rows(rows), header=HEADER))


async def drain(fake_redis, config, worker):
    """Consuma lo stream finché non restano messaggi."""
    await ensure_group(fake_redis, config.stream_name, config.consumer_group)
    consumer = StreamConsumer.from_config(fake_redis, config)
    while await consumer.run_once(worker.process):
        pass


class TestRunSession:
    @pytest.mark.asyncio
    async def test_files_are_planned_and_dispatched(self, orchestrator, s3_client, fake_redis, config):
        files = [make_file("up-1"), make_file("up-2", "second.xlsx")]
        upload(s3_client, files[0], 25)
        upload(s3_client, files[1], 8)

        result = await orchestrator.run_session("sess-1", files)

        assert result.success
        assert result.file_count == 2
        assert result.row_counts == {"up-1": 25, "up-2": 8}
        assert [f.total_chunks for f in result.files] == [3, 1]
        assert await fake_redis.xlen(config.stream_name) == 4
        # Nessuna init prima dei worker: la fa il primo chunk
        assert (await orchestrator.tracker.read("up-1")).status == ProgressStatus.NOT_FOUND

        session = await orchestrator.session_progress.read("sess-1")
        assert session.status == ProgressStatus.COMPLETED
        assert session.progress == 100

    @pytest.mark.asyncio
    async def test_failing_file_does_not_stop_others(self, orchestrator, s3_client, fake_redis, config):
        """Oggetto mancante: probe fallito solo per quel file."""
        files = [make_file("up-missing", "gone.xlsx"), make_file("up-ok")]
        upload(s3_client, files[1], 12)

        result = await orchestrator.run_session("sess-1", files)

        missing, ok = result.files
        assert not missing.success
        assert "probe failed" in missing.error.lower()
        assert ok.success
        assert ok.total_chunks == 2
        assert not result.success
        assert (await orchestrator.tracker.read("up-missing")).status == ProgressStatus.FAILED
        assert (await orchestrator.tracker.read("up-ok")).status == ProgressStatus.NOT_FOUND
        assert await fake_redis.xlen(config.stream_name) == 2
        assert "1/2" in result.message

    @pytest.mark.asyncio
    async def test_unsupported_format_marks_job_failed(self, orchestrator, s3_client):
        file = make_file("up-pdf", "invoice.pdf")
        s3_client.put(BUCKET, file.object_key, b"%PDF-1.4")

        result = await orchestrator.run_session("sess-1", [file])

        assert not result.files[0].success
        state = await orchestrator.tracker.read("up-pdf")
        assert state.status == ProgressStatus.FAILED
        assert "Formato file non supportato" in state.message
        session = await orchestrator.session_progress.read("sess-1")
        assert session.status == ProgressStatus.FAILED
        assert session.progress == -1

    @pytest.mark.asyncio
    async def test_header_only_file_completes_without_chunks(self, orchestrator, s3_client, fake_redis, config):
        file = make_file("up-empty")
        s3_client.put(BUCKET, file.object_key, build_xlsx([], header=HEADER))

        result = await orchestrator.run_session("sess-1", [file])

        assert result.files[0].success
        assert result.files[0].total_chunks == 0
        assert await fake_redis.exists(config.stream_name) == 0
        assert (await orchestrator.tracker.read("up-empty")).status == ProgressStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_initialization_left_to_first_chunk(self, orchestrator, s3_client, tracker):
        files = [make_file("up-1"), make_file("up-empty", "empty.xlsx")]
        upload(s3_client, files[0], 25)
        s3_client.put(BUCKET, files[1].object_key, build_xlsx([], header=HEADER))

        with patch.object(tracker, "initialize", AsyncMock(return_value=True)) as initialize:
            await orchestrator.run_session("sess-1", files)

        # Solo il file senza righe viene inizializzato qui
        initialize.assert_awaited_once()
        assert initialize.await_args.args[:3] == ("up-empty", 0, True)

    @pytest.mark.asyncio
    async def test_no_files(self, orchestrator):
        result = await orchestrator.run_session("sess-1", [])

        assert not result.success
        assert result.message == "Nessun file da ingerire per la sessione"
        assert (await orchestrator.session_progress.read("sess-1")).status == ProgressStatus.FAILED

    @pytest.mark.asyncio
    async def test_previous_rows_are_cleared(self, orchestrator, s3_client, document_store, config):
        file = make_file("up-1")
        upload(s3_client, file, 3)

        await orchestrator.run_session("sess-1", [file])

        assert document_store.deleted == [
            (config.derived_collection, "sess-1", None),
            (config.raw_collection, "sess-1", "up-1"),
        ]

    @pytest.mark.asyncio
    async def test_clear_failure_fails_only_that_file(self, orchestrator, s3_client, document_store):
        files = [make_file("up-1"), make_file("up-2")]
        upload(s3_client, files[0], 3)
        upload(s3_client, files[1], 3)
        real_delete = document_store.delete_file_rows

        async def delete(collection, session_id, upload_id):
            if upload_id == "up-1":
                raise PyMongoError("not primary")
            return await real_delete(collection, session_id, upload_id)

        with patch.object(document_store, "delete_file_rows", delete):
            result = await orchestrator.run_session("sess-1", files)

        assert [f.success for f in result.files] == [False, True]
        assert "not primary" in result.files[0].error

    @pytest.mark.asyncio
    async def test_derived_clear_failure_is_not_fatal(self, orchestrator, s3_client, document_store):
        file = make_file("up-1")
        upload(s3_client, file, 3)

        with patch.object(document_store, "delete_session_rows", AsyncMock(side_effect=PyMongoError("timeout"))):
            result = await orchestrator.run_session("sess-1", [file])

        assert result.success

    @pytest.mark.asyncio
    async def test_partial_dispatch_marks_job_failed(self, orchestrator, s3_client):
        file = make_file("up-1")
        upload(s3_client, file, 25)
        calls = {"n": 0}

        async def flaky_publish(r, stream, descriptor):
            calls["n"] += 1
            if calls["n"] == 3:
                raise RedisConnectionError("connection reset")
            return await publish_chunk(r, stream, descriptor)

        with patch("messaging.dispatcher.publish_chunk", flaky_publish):
            result = await orchestrator.run_session("sess-1", [file])

        outcome = result.files[0]
        assert not outcome.success
        assert outcome.published_chunks == 2
        assert outcome.total_chunks == 3
        assert (await orchestrator.tracker.read("up-1")).status == ProgressStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, orchestrator, s3_client):
        files = [make_file("up-1"), make_file("up-2")]
        upload(s3_client, files[0], 3)
        upload(s3_client, files[1], 3)
        real_reset = orchestrator.tracker.reset

        async def reset(upload_id):
            if upload_id == "up-1":
                raise RedisConnectionError("redis down")
            await real_reset(upload_id)

        with patch.object(orchestrator.tracker, "reset", reset):
            result = await orchestrator.run_session("sess-1", files)

        assert [f.success for f in result.files] == [False, True]


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_session_ingested_by_workers(
        self, orchestrator, s3_client, fake_redis, config, storage, document_store, tracker
    ):
        files = [make_file("up-1"), make_file("up-2", "second.xlsx")]
        upload(s3_client, files[0], 25)
        upload(s3_client, files[1], 4)
        worker = ChunkWorker.from_config(config, storage, document_store, tracker)

        result = await orchestrator.run_session("sess-1", files)
        await drain(fake_redis, config, worker)
        states = await orchestrator.await_completion(["up-1", "up-2"], poll_interval=0.01, timeout=1.0)

        assert result.success
        assert {u: s.status for u, s in states.items()} == {
            "up-1": ProgressStatus.COMPLETED,
            "up-2": ProgressStatus.COMPLETED,
        }
        assert await document_store.count_rows("raw_data", "sess-1", "up-1") == 25
        assert await document_store.count_rows("raw_data", "sess-1") == 29

    @pytest.mark.asyncio
    async def test_reingest_restarts_progress(
        self, orchestrator, s3_client, fake_redis, config, storage, document_store, tracker
    ):
        file = make_file("up-1")
        upload(s3_client, file, 12)
        worker = ChunkWorker.from_config(config, storage, document_store, tracker)

        await orchestrator.run_session("sess-1", [file])
        await drain(fake_redis, config, worker)
        await orchestrator.run_session("sess-1", [file])
        assert (await tracker.read("up-1")).processed_rows == 0

        await drain(fake_redis, config, worker)

        state = await tracker.read("up-1")
        assert state.status == ProgressStatus.COMPLETED
        assert state.processed_rows == 12
        assert await document_store.count_rows("raw_data", "sess-1") == 12


class TestStatus:
    @pytest.mark.asyncio
    async def test_await_completion_timeout(self, orchestrator, tracker):
        await tracker.initialize("up-1", 100)

        states = await orchestrator.await_completion(["up-1"], poll_interval=0.01, timeout=0.05)

        assert states["up-1"].status == ProgressStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_await_completion_failed_is_terminal(self, orchestrator, tracker):
        await tracker.mark_failed("up-1", "boom")

        states = await orchestrator.await_completion(["up-1"], poll_interval=0.01)

        assert states["up-1"].status == ProgressStatus.FAILED

    @pytest.mark.asyncio
    async def test_session_status(self, orchestrator, s3_client, fake_redis, config, storage, document_store, tracker):
        file = make_file("up-1")
        upload(s3_client, file, 25)
        await orchestrator.run_session("sess-1", [file])
        # Solo il primo dei 3 chunk elaborato
        ((_, fields),) = await fake_redis.xrange(config.stream_name, count=1)
        worker = ChunkWorker.from_config(config, storage, document_store, tracker)
        await worker.process(ChunkJobDescriptor.model_validate_json(fields["payload"]))

        status = await orchestrator.session_status("sess-1", ["up-1", "up-unknown"])

        assert status["status"] == "COMPLETED"
        assert [j["status"] for j in status["jobs"]] == ["PROCESSING", "NOT_FOUND"]


class TestIngestObject:
    @pytest.mark.asyncio
    async def test_single_object_keeps_session_state(self, orchestrator, s3_client, document_store, fake_redis, config):
        await orchestrator.session_progress.start("sess-1")
        await orchestrator.session_progress.update("sess-1", 40, "2/5 files dispatched")
        file = make_file("up-1")
        upload(s3_client, file, 25)

        result = await orchestrator.ingest_object(file)

        assert result.success
        assert result.files[0].total_chunks == 3
        assert await fake_redis.xlen(config.stream_name) == 3
        # Solo le righe del file: niente clear dei dati derivati
        assert document_store.deleted == [(config.raw_collection, "sess-1", "up-1")]
        session = await orchestrator.session_progress.read("sess-1")
        assert session.progress == 40
        assert session.status == ProgressStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_single_object_failure(self, orchestrator):
        result = await orchestrator.ingest_object(make_file("up-missing", "gone.xlsx"))

        assert not result.success
        assert "gone.xlsx" in result.message
        assert (await orchestrator.tracker.read("up-missing")).status == ProgressStatus.FAILED
