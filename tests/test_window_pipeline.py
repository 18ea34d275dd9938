"""Window pipeline: hour windows, upload-before-checkpoint, retry semantics."""

import io
import zipfile
from datetime import timedelta

import pytest

from conftest import NOW, FakeQueryClient, RecordingUploader, make_events
from bizarchive.core.errors import CheckpointIOError, QueryTransportError, UploadError
from bizarchive.exporter.window_pipeline import PipelineState, WindowPipeline
from bizarchive.storage.uploader import ArchiveUploader

# NOW is 05:30, so the horizon is 04:00 and a 03:00 checkpoint leaves one window.
H3 = NOW.replace(hour=3, minute=0)
H4 = NOW.replace(hour=4, minute=0)


def make_pipeline(integration, client, checkpoint_store, uploader, staging_dir, **kwargs):
    return WindowPipeline(
        integration,
        client,
        checkpoint_store,
        uploader,
        page_size=kwargs.pop("page_size", 1000),
        staging_dir=str(staging_dir),
        max_part_bytes=kwargs.pop("max_part_bytes", 1 << 30),
        clock=lambda: NOW,
    )


def read_lines(blob: bytes):
    with zipfile.ZipFile(io.BytesIO(blob)) as zf:
        (name,) = zf.namelist()
        return name, zf.read(name).decode("utf-8").splitlines()


@pytest.fixture
def uploader(blob_store, journal):
    return RecordingUploader(ArchiveUploader(blob_store), journal)


@pytest.mark.asyncio
async def test_single_window_paged_archive(
    integration, blob_store, checkpoint_store, uploader, staging_dir
):
    checkpoint_store.seed(integration.id, H3)
    client = FakeQueryClient(make_events(H3, 2500))
    pipeline = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)

    stats = await pipeline.run()

    assert [n for _, n in client.fetch_calls] == [1000, 1000, 500]
    keys = blob_store.keys("bizevents/")
    assert len(keys) == 1
    assert keys[0].startswith(
        f"bizevents/integration={integration.id}/year=2024/month=05/day=01/hour=03/"
    )
    name, lines = read_lines(blob_store.objects[keys[0]])
    assert name == f"{integration.id}_events.jsonl"
    assert len(lines) == 2500

    assert [c.last_processed_timestamp for c in checkpoint_store.saves] == [H4]
    assert stats.windows_processed == 1
    assert stats.records == 2500
    assert stats.parts_uploaded == 1
    assert pipeline.state == PipelineState.DONE
    assert list(staging_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_windows_do_not_move_checkpoint(
    integration, blob_store, checkpoint_store, uploader, staging_dir
):
    checkpoint_store.seed(integration.id, H3 - timedelta(hours=2))
    client = FakeQueryClient([])
    pipeline = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)

    stats = await pipeline.run()

    assert len(client.count_calls) == 3
    assert client.fetch_calls == []
    assert checkpoint_store.saves == []
    assert blob_store.keys() == []
    assert stats.windows_empty == 3


@pytest.mark.asyncio
async def test_data_after_empty_windows_saves_once(
    integration, blob_store, checkpoint_store, uploader, staging_dir
):
    checkpoint_store.seed(integration.id, H3 - timedelta(hours=2))
    client = FakeQueryClient(make_events(H3 + timedelta(minutes=10), 5))
    pipeline = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)

    await pipeline.run()

    assert [c.last_processed_timestamp for c in checkpoint_store.saves] == [H4]
    assert len(blob_store.keys("bizevents/")) == 1


@pytest.mark.asyncio
async def test_rolled_parts_uploaded_before_checkpoint(
    integration, blob_store, checkpoint_store, uploader, staging_dir, journal
):
    checkpoint_store.seed(integration.id, H3)
    events = make_events(H3, 30)
    client = FakeQueryClient(events)
    # Roughly 10 lines per part.
    line_size = len(b'{"timestamp":"2024-05-01T03:00:00.100000Z","seq":10,"event.type":"sox"}\n')
    pipeline = make_pipeline(
        integration, client, checkpoint_store, uploader, staging_dir,
        page_size=7, max_part_bytes=line_size * 10,
    )

    stats = await pipeline.run()

    kinds = [kind for kind, _ in journal]
    assert kinds[-1] == "checkpoint"
    assert kinds.count("checkpoint") == 1
    assert kinds.count("upload") == stats.parts_uploaded >= 3

    total = 0
    for key in blob_store.keys("bizevents/"):
        _, lines = read_lines(blob_store.objects[key])
        total += len(lines)
    assert total == 30


@pytest.mark.asyncio
async def test_upload_failure_keeps_checkpoint(
    integration, blob_store, checkpoint_store, uploader, staging_dir
):
    checkpoint_store.seed(integration.id, H3)
    client = FakeQueryClient(make_events(H3, 10))
    uploader.fail_on_call = 1
    pipeline = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)

    with pytest.raises(UploadError):
        await pipeline.run()

    assert checkpoint_store.saves == []
    assert pipeline.state == PipelineState.FAILED
    assert list(staging_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_checkpoint_failure_reexports_window(
    integration, blob_store, checkpoint_store, uploader, staging_dir
):
    checkpoint_store.seed(integration.id, H3)
    checkpoint_store.fail_saves = 1
    client = FakeQueryClient(make_events(H3, 10))

    first = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)
    with pytest.raises(CheckpointIOError):
        await first.run()
    assert len(blob_store.keys("bizevents/")) == 1

    second = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)
    await second.run()

    # The window was archived twice and the checkpoint advanced once.
    assert len(blob_store.keys("bizevents/")) == 2
    assert [c.last_processed_timestamp for c in checkpoint_store.saves] == [H4]


@pytest.mark.asyncio
async def test_query_failure_marks_failed(
    integration, checkpoint_store, uploader, staging_dir
):
    class BrokenClient(FakeQueryClient):
        async def count(self, integration, window, cursor=None):
            raise QueryTransportError("boom", 503)

    checkpoint_store.seed(integration.id, H3)
    pipeline = make_pipeline(integration, BrokenClient([]), checkpoint_store, uploader, staging_dir)

    with pytest.raises(QueryTransportError):
        await pipeline.run()
    assert pipeline.state == PipelineState.FAILED


@pytest.mark.asyncio
async def test_up_to_date_checkpoint_does_nothing(
    integration, checkpoint_store, uploader, staging_dir
):
    checkpoint_store.seed(integration.id, H4)
    client = FakeQueryClient(make_events(H4, 10))
    pipeline = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)

    stats = await pipeline.run()

    assert client.count_calls == []
    assert stats.windows_processed == 0
    assert pipeline.state == PipelineState.DONE


@pytest.mark.asyncio
async def test_initial_checkpoint_uses_lookback(
    integration, checkpoint_store, uploader, staging_dir
):
    client = FakeQueryClient([])
    pipeline = make_pipeline(integration, client, checkpoint_store, uploader, staging_dir)

    stats = await pipeline.run()

    # Lookback of 24h from 05:30 starts at 05:00 the previous day; horizon is 04:00.
    assert stats.windows_empty == 23
    assert client.count_calls[0][0] == NOW.replace(minute=0) - timedelta(hours=24)


@pytest.mark.asyncio
async def test_count_fetch_disagreement_leaves_checkpoint(
    integration, checkpoint_store, uploader, staging_dir
):
    class Phantom(FakeQueryClient):
        async def count(self, integration, window, cursor=None):
            return 5

    checkpoint_store.seed(integration.id, H3)
    pipeline = make_pipeline(integration, Phantom([]), checkpoint_store, uploader, staging_dir)

    stats = await pipeline.run()

    assert checkpoint_store.saves == []
    assert stats.windows_processed == 0
