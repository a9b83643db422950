from pathlib import Path
from uuid import uuid4

import anyio
import pytest

from piclib.core import metrics
from piclib.core.errors import TranscodeError
from piclib.schemas.library import FolderAdd, LibraryAdd
from piclib.schemas.messages import ProcessPictureMessage, RecalculateFolderMessage, parse_message
from piclib.services.blob_store import THUMBNAIL_SIZES, converted_key, original_key, thumbnail_key
from piclib.services.job_processor import JobOutcome

from conftest import make_jpeg, write_file


def _pop_all(redis_stub) -> list[str]:
    raws = list(redis_stub.lists.get("test:jobs", []))
    redis_stub.lists["test:jobs"] = []
    return raws


async def _settle(processor, redis_stub) -> None:
    """Run queued jobs, including follow-ups, until the queue is empty."""
    for _ in range(50):
        raws = _pop_all(redis_stub)
        if not raws:
            return
        for raw in raws:
            assert await processor.handle(raw) is JobOutcome.ACK
    raise AssertionError("queue did not settle")


async def _setup(coordinator):
    library = await coordinator.add_library(LibraryAdd(name="Family"))
    (root,) = await coordinator.get_folders(library.id)
    child = await coordinator.add_folder(library.id, FolderAdd(name="2020", parent_id=root.id))
    return library, root, child


@pytest.mark.anyio("asyncio")
async def test_picture_scenario_settles_file_and_folder_stats(coordinator, processor, blobs, redis_stub, tmp_path: Path) -> None:
    library, root, child = await _setup(coordinator)
    source = write_file(tmp_path / "p.jpg", make_jpeg((100, 100)))
    file = await coordinator.import_file(library.id, child.id, source, "p.jpg")

    await _settle(processor, redis_stub)

    settled = await coordinator.get_file(library.id, file.id)
    assert settled.is_processing is False
    assert settled.outstanding_jobs == 0
    assert 0 < settled.thumbnail_sm_bytes < settled.thumbnail_md_bytes < settled.thumbnail_lg_bytes
    for size in THUMBNAIL_SIZES:
        assert await blobs.exists(thumbnail_key(library.id, child.path, file.id, size))

    child_stats = await coordinator.get_folder(library.id, child.id)
    root_stats = await coordinator.get_folder(library.id, root.id)
    assert child_stats.file_count == root_stats.file_count == 1
    assert child_stats.total_bytes == root_stats.total_bytes == source.stat().st_size
    assert root_stats.thumbnail_lg_bytes == settled.thumbnail_lg_bytes


@pytest.mark.anyio("asyncio")
async def test_video_scenario_converts_and_counts_converted_bytes(
    coordinator, processor, transcoder, blobs, redis_stub, tmp_path: Path
) -> None:
    library, root, _ = await _setup(coordinator)
    source = write_file(tmp_path / "clip.avi", b"\x01" * 1000)
    file = await coordinator.import_file(library.id, root.id, source, "clip.avi")

    await _settle(processor, redis_stub)

    settled = await coordinator.get_file(library.id, file.id)
    assert settled.is_processing is False
    assert settled.converted_bytes == transcoder.converted_size
    assert settled.thumbnail_sm_bytes > 0
    assert transcoder.frames == 1 and transcoder.transcodes == 1
    assert await blobs.exists(converted_key(library.id, root.path, file.id))

    folder = await coordinator.get_folder(library.id, root.id)
    assert folder.total_bytes == 1000
    assert folder.converted_bytes == transcoder.converted_size

    content = await coordinator.get_file_contents(library.id, file.id)
    assert content.media_type == "video/mp4"
    assert content.filename == "clip.mp4"


@pytest.mark.anyio("asyncio")
async def test_mp4_video_is_not_transcoded(coordinator, processor, transcoder, redis_stub, tmp_path: Path) -> None:
    library, root, _ = await _setup(coordinator)
    source = write_file(tmp_path / "clip.mp4", b"\x01" * 10)
    file = await coordinator.import_file(library.id, root.id, source, "clip.mp4")

    await _settle(processor, redis_stub)

    settled = await coordinator.get_file(library.id, file.id)
    assert settled.is_processing is False and settled.converted_bytes == 0
    assert transcoder.transcodes == 0


@pytest.mark.anyio("asyncio")
async def test_picture_redelivery_after_failure_does_not_double_count(
    coordinator, processor, metadata, redis_stub, tmp_path: Path, monkeypatch
) -> None:
    library, root, _ = await _setup(coordinator)
    source = write_file(tmp_path / "p.jpg", make_jpeg((100, 100)))
    file = await coordinator.import_file(library.id, root.id, source, "p.jpg")
    (raw,) = _pop_all(redis_stub)

    real_set = metadata.set_thumbnail_bytes

    async def _fail_large(library_id, file_id, size, byte_count):
        if size == "lg":
            raise RuntimeError("transient db failure")
        await real_set(library_id, file_id, size, byte_count)

    monkeypatch.setattr(metadata, "set_thumbnail_bytes", _fail_large)
    assert await processor.handle(raw) is JobOutcome.REJECT
    partial = await coordinator.get_file(library.id, file.id)
    assert partial.is_processing is True
    assert partial.outstanding_jobs == 1
    assert _pop_all(redis_stub) == []

    monkeypatch.setattr(metadata, "set_thumbnail_bytes", real_set)
    assert await processor.handle(raw) is JobOutcome.ACK
    # A duplicate delivery of an already settled message converges too.
    assert await processor.handle(raw) is JobOutcome.ACK
    await _settle(processor, redis_stub)

    settled = await coordinator.get_file(library.id, file.id)
    assert settled.is_processing is False
    folder = await coordinator.get_folder(library.id, root.id)
    assert folder.file_count == 1
    assert folder.total_bytes == source.stat().st_size
    assert folder.thumbnail_sm_bytes == settled.thumbnail_sm_bytes
    assert metrics.snapshot()["jobs_rejected:ProcessPicture"] == 1


@pytest.mark.anyio("asyncio")
async def test_delete_file_then_settle_decrements_folder_stats(coordinator, processor, redis_stub, blobs, tmp_path: Path) -> None:
    library, root, child = await _setup(coordinator)
    first = await coordinator.import_file(library.id, child.id, write_file(tmp_path / "a.jpg", make_jpeg((50, 50))), "a.jpg")
    second = await coordinator.import_file(library.id, child.id, write_file(tmp_path / "b.jpg", make_jpeg((60, 60))), "b.jpg")
    await _settle(processor, redis_stub)
    assert (await coordinator.get_folder(library.id, root.id)).file_count == 2

    await coordinator.delete_file(library.id, first.id)
    await _settle(processor, redis_stub)

    remaining = await coordinator.get_file(library.id, second.id)
    for folder_id in (child.id, root.id):
        folder = await coordinator.get_folder(library.id, folder_id)
        assert folder.file_count == 1
        assert folder.total_bytes == remaining.original_bytes
        assert folder.thumbnail_md_bytes == remaining.thumbnail_md_bytes
    for size in THUMBNAIL_SIZES:
        assert not await blobs.exists(thumbnail_key(library.id, child.path, first.id, size))


@pytest.mark.anyio("asyncio")
async def test_tree_additive_invariant_after_settle(coordinator, processor, redis_stub, tmp_path: Path) -> None:
    library, root, child = await _setup(coordinator)
    grandchild = await coordinator.add_folder(library.id, FolderAdd(name="June", parent_id=child.id))
    for index, folder in enumerate((root, child, grandchild, grandchild)):
        path = write_file(tmp_path / f"{index}.jpg", make_jpeg((30 + index * 10, 40)))
        await coordinator.import_file(library.id, folder.id, path, f"{index}.jpg")
    await _settle(processor, redis_stub)

    async def _check(folder_id) -> None:
        folder = await coordinator.get_folder(library.id, folder_id)
        files = await coordinator.get_files(library.id, folder_id)
        children = await coordinator.get_folders(library.id, folder_id)
        assert folder.file_count == len(files) + sum(c.file_count for c in children)
        for field in ("total_bytes", "thumbnail_sm_bytes", "thumbnail_md_bytes", "thumbnail_lg_bytes", "converted_bytes"):
            file_field = "original_bytes" if field == "total_bytes" else field
            expected = sum(getattr(f, file_field) for f in files) + sum(getattr(c, field) for c in children)
            assert getattr(folder, field) == expected
        for c in children:
            await _check(c.id)

    await _check(root.id)
    assert (await coordinator.get_folder(library.id, root.id)).file_count == 4


@pytest.mark.anyio("asyncio")
async def test_recalculate_folder_publishes_parent(coordinator, processor, redis_stub) -> None:
    library, root, child = await _setup(coordinator)

    raw = RecalculateFolderMessage(library_id=library.id, folder_id=child.id).to_json()
    assert await processor.handle(raw) is JobOutcome.ACK

    (follow_up,) = [parse_message(r) for r in _pop_all(redis_stub)]
    assert follow_up.folder_id == root.id

    assert await processor.handle(follow_up.to_json()) is JobOutcome.ACK
    assert _pop_all(redis_stub) == []


@pytest.mark.anyio("asyncio")
async def test_obsolete_and_poison_messages_are_acknowledged(processor, caplog) -> None:
    obsolete = ProcessPictureMessage(library_id=uuid4(), file_id=uuid4()).to_json()

    assert await processor.handle(obsolete) is JobOutcome.ACK
    assert await processor.handle("{not json") is JobOutcome.ACK
    assert metrics.snapshot()["jobs_acked:ProcessPicture"] == 1
    assert "job_poison_message" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_transcode_failure_rejects(coordinator, processor, transcoder, redis_stub, tmp_path: Path, monkeypatch) -> None:
    library, root, _ = await _setup(coordinator)
    file = await coordinator.import_file(library.id, root.id, write_file(tmp_path / "c.wmv", b"\x00" * 8), "c.wmv")
    (raw,) = _pop_all(redis_stub)

    async def _fail(*_args, **_kwargs):
        raise TranscodeError("ffmpeg transcode failed")

    monkeypatch.setattr(transcoder, "transcode", _fail)

    assert await processor.handle(raw) is JobOutcome.REJECT
    pending = await coordinator.get_file(library.id, file.id)
    assert pending.is_processing is True and pending.outstanding_jobs == 1


@pytest.mark.anyio("asyncio")
async def test_file_deleted_while_rendering_leaves_no_thumbnails(
    coordinator, processor, blobs, redis_stub, tmp_path: Path, monkeypatch
) -> None:
    library, root, _ = await _setup(coordinator)
    file = await coordinator.import_file(library.id, root.id, write_file(tmp_path / "p.jpg", make_jpeg((80, 80))), "p.jpg")
    (raw,) = _pop_all(redis_stub)

    real_put = blobs.put
    rendered = anyio.Event()
    calls = []

    async def _put_after_delete(key, source):
        calls.append(key)
        if len(calls) == len(THUMBNAIL_SIZES):
            await coordinator.delete_file(library.id, file.id)
            rendered.set()
        else:
            await rendered.wait()
        return await real_put(key, source)

    monkeypatch.setattr(blobs, "put", _put_after_delete)

    assert await processor.handle(raw) is JobOutcome.ACK
    for size in THUMBNAIL_SIZES:
        assert not await blobs.exists(thumbnail_key(library.id, root.path, file.id, size))
    assert metrics.snapshot()["compensations"] == len(THUMBNAIL_SIZES)


@pytest.mark.anyio("asyncio")
async def test_file_deleted_while_converting_leaves_no_converted_blob(
    coordinator, processor, blobs, redis_stub, tmp_path: Path, monkeypatch
) -> None:
    library, root, _ = await _setup(coordinator)
    file = await coordinator.import_file(library.id, root.id, write_file(tmp_path / "c.avi", b"\x01" * 64), "c.avi")
    (raw,) = _pop_all(redis_stub)
    target = converted_key(library.id, root.path, file.id)
    real_put = blobs.put

    async def _put_after_delete(key, source):
        if key == target:
            await coordinator.delete_file(library.id, file.id)
        return await real_put(key, source)

    monkeypatch.setattr(blobs, "put", _put_after_delete)

    assert await processor.handle(raw) is JobOutcome.ACK
    assert not await blobs.exists(target)


@pytest.mark.anyio("asyncio")
async def test_missing_original_blob_rejects_and_records_inconsistency(
    coordinator, processor, blobs, redis_stub, tmp_path: Path, caplog
) -> None:
    library, root, _ = await _setup(coordinator)
    file = await coordinator.import_file(library.id, root.id, write_file(tmp_path / "p.jpg", make_jpeg((40, 40))), "p.jpg")
    (raw,) = _pop_all(redis_stub)
    await blobs.delete(original_key(library.id, root.path, file.id))

    assert await processor.handle(raw) is JobOutcome.REJECT

    pending = await coordinator.get_file(library.id, file.id)
    assert pending.is_processing is True
    assert metrics.snapshot()["store_inconsistencies"] == 1
    assert metrics.snapshot()["jobs_rejected:ProcessPicture"] == 1
    assert "store_inconsistency" in caplog.text

    await coordinator.delete_file(library.id, file.id)
    assert await processor.handle(raw) is JobOutcome.ACK
