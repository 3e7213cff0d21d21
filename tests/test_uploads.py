import asyncio
import os

import pytest

from circuit_breaker import GOOGLE_DRIVE_API, CircuitBreaker, GuardedCaller
from drive_source import DriveAPIError, DriveFile
from reconcile import Reconciler
from upload_gateway import RemoteUploadError
from upload_sessions import SessionRegistry
from uploads import FAILED, SKIPPED, SUCCESS, IntakeFile, UploadPipeline, summarize


class FakeGateway:
    def __init__(self, fail_names=(), delay=0.01):
        self.image_calls = []
        self.video_calls = []
        self.thumb_calls = []
        self.fail_names = set(fail_names)
        self.delay = delay
        self.active = 0
        self.peak = 0

    async def _busy(self):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(self.delay)
        self.active -= 1

    async def upload_image(self, path, ad_account_id, token=None, *, filename=None):
        self.image_calls.append((path, ad_account_id))
        await self._busy()
        if filename in self.fail_names:
            raise RemoteUploadError(
                "Upload failed during image upload", http_status=400, error={"error_user_msg": "Image too small"}
            )
        return f"hash-{len(self.image_calls)}"

    async def upload_video(self, path, ad_account_id, token=None, *, name=None, progress=None, window=(30, 90)):
        self.video_calls.append((path, ad_account_id, name))
        if progress:
            await progress("uploading", 30)
            await progress("uploading", 90)
        return "vid-1"

    async def upload_thumbnail(self, path, ad_account_id, token=None):
        self.thumb_calls.append(path)
        return "thumb-hash"


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def pipeline(store, gateway):
    return UploadPipeline(Reconciler(store), gateway, thumbnail_fn=lambda path: None)


def _item(make_temp, name, data, mime="image/jpeg"):
    return IntakeFile(make_temp(name, data), name, mime)


def test_ledger_gates_second_upload(pipeline, gateway, make_temp, store):
    first = asyncio.run(pipeline.process_file(_item(make_temp, "a.jpg", b"alpha"), "act_111", "tok"))
    second = asyncio.run(pipeline.process_file(_item(make_temp, "a-again.jpg", b"alpha"), "111", "tok"))

    assert first["status"] == SUCCESS and first["is_new"] is True
    assert first["remote_ids"] == {"image_hash": "hash-1", "video_id": None}
    assert second["status"] == SUCCESS and second["is_duplicate"] is True
    assert second["remote_ids"] == first["remote_ids"]
    assert len(gateway.image_calls) == 1
    assert store.count_creatives() == 1


def test_other_account_uploads_library_copy(pipeline, gateway, make_temp, store):
    first = asyncio.run(pipeline.process_file(_item(make_temp, "a.jpg", b"alpha"), "111"))
    other = asyncio.run(pipeline.process_file(_item(make_temp, "a.jpg", b"alpha"), "222"))

    library_path = store.get(first["creative_id"]).file_path
    assert other["status"] == SUCCESS
    assert other["is_new"] is False and other["is_duplicate"] is False
    assert gateway.image_calls[1] == (library_path, "222")
    assert {a["ad_account_id"] for a in store.list_accounts(first["creative_id"])} == {"111", "222"}


def test_files_processed_in_groups_of_three(pipeline, gateway, make_temp):
    items = [_item(make_temp, f"f{i}.jpg", f"bytes-{i}".encode()) for i in range(7)]

    results = asyncio.run(pipeline.process_files(items, "111"))

    assert [r["file"] for r in results] == [f"f{i}.jpg" for i in range(7)]
    assert all(r["status"] == SUCCESS for r in results)
    assert gateway.peak <= 3
    assert summarize(results)["successful"] == 7


def test_one_failure_does_not_abort_batch(store, make_temp):
    gateway = FakeGateway(fail_names={"bad.jpg"})
    pipeline = UploadPipeline(Reconciler(store), gateway, thumbnail_fn=lambda path: None)
    bad = _item(make_temp, "bad.jpg", b"bad")
    items = [_item(make_temp, "ok1.jpg", b"1"), bad, _item(make_temp, "ok2.jpg", b"2")]

    results = asyncio.run(pipeline.process_files(items, "111"))

    assert [r["status"] for r in results] == [SUCCESS, FAILED, SUCCESS]
    failed = results[1]
    assert failed["error"] == "Image too small"
    assert not os.path.exists(bad.temp_path)
    creative = store.get(failed["creative_id"])
    assert os.path.exists(creative.file_path)
    assert store.get_record(creative.id, "111") is None


def test_non_media_is_skipped_and_temp_removed(pipeline, gateway, make_temp):
    item = _item(make_temp, "brief.pdf", b"%PDF", mime="application/pdf")

    result = asyncio.run(pipeline.process_file(item, "111"))

    assert result["status"] == SKIPPED
    assert not os.path.exists(item.temp_path)
    assert gateway.image_calls == []


def test_video_gets_thumbnail_and_both_ids(store, gateway, make_temp, tmp_path):
    def thumbnail_fn(path):
        thumb = tmp_path / "frame_thumb.jpg"
        thumb.write_bytes(b"jpeg frame")
        return str(thumb)

    pipeline = UploadPipeline(Reconciler(store), gateway, thumbnail_fn=thumbnail_fn)
    item = _item(make_temp, "promo.mp4", b"video bytes", mime="video/mp4")

    result = asyncio.run(pipeline.process_file(item, "111"))

    assert result["status"] == SUCCESS
    assert result["type"] == "video"
    assert result["remote_ids"] == {"image_hash": "thumb-hash", "video_id": "vid-1"}
    creative = store.get(result["creative_id"])
    assert creative.thumbnail_path and os.path.exists(creative.thumbnail_path)
    assert gateway.thumb_calls == [creative.thumbnail_path]
    assert not (tmp_path / "frame_thumb.jpg").exists()


def test_session_receives_progress_events(pipeline, make_temp):
    async def main():
        registry = SessionRegistry()
        session, sink = registry.subscribe("up1")
        items = [_item(make_temp, "a.jpg", b"a"), _item(make_temp, "b.mp4", b"b", mime="video/mp4")]
        await pipeline.process_files(items, "111", session=session)
        return sink.pending()

    events = asyncio.run(main())
    names = [e for e, _ in events]

    assert names[0] == "session-start"
    assert names[-1] == "session-complete"
    assert names.count("file-complete") == 2
    assert "file-progress" in names
    assert events[-1][1]["successful"] == 2


def test_push_library(pipeline, gateway, make_temp, store):
    creative, _ = store.insert_new(make_temp("lib.jpg", b"lib"), original_name="lib.jpg", mime_type="image/jpeg")
    store.record_upload(creative.id, "111", image_hash="old-hash")

    results = asyncio.run(pipeline.push_library([creative.id, 999], "111"))
    assert results[0]["is_duplicate"] is True
    assert results[0]["remote_ids"]["image_hash"] == "old-hash"
    assert results[1]["status"] == FAILED
    assert gateway.image_calls == []

    results = asyncio.run(pipeline.push_library([creative.id], "act_222"))
    assert results[0]["status"] == SUCCESS
    assert gateway.image_calls == [(creative.file_path, "act_222")]


class FakeDrive:
    def __init__(self, files, upload_dir):
        self.files = files
        self.upload_dir = upload_dir

    def get_metadata(self, file_id):
        if file_id not in self.files:
            raise DriveAPIError("Google Drive error (404) during metadata read: File not found", http_status=404)
        name, mime, _ = self.files[file_id]
        return DriveFile(id=file_id, name=name, mime_type=mime, size=None)

    def download(self, drive_file, dest_dir):
        path = os.path.join(dest_dir, f"drive-{drive_file.name}")
        with open(path, "wb") as f:
            f.write(self.files[drive_file.id][2])
        return path


def test_drive_intake(pipeline, gateway, upload_dir):
    drive = FakeDrive(
        {
            "f1": ("hero.jpg", "image/jpeg", b"hero"),
            "f2": ("deck.pdf", "application/pdf", b"%PDF"),
        },
        upload_dir,
    )
    google = GuardedCaller(CircuitBreaker(GOOGLE_DRIVE_API))

    results = asyncio.run(
        pipeline.process_drive_files(drive, google, ["f1", "f2", "missing"], "111", str(upload_dir))
    )

    assert [r["status"] for r in results] == [SUCCESS, SKIPPED, FAILED]
    assert results[0]["file"] == "hero.jpg"
    assert "File not found" in results[2]["error"]
    assert len(gateway.image_calls) == 1
    assert os.listdir(upload_dir) == []


def test_identical_files_in_one_request_upload_once(store, make_temp):
    gateway = FakeGateway(delay=0.2)
    pipeline = UploadPipeline(Reconciler(store), gateway, thumbnail_fn=lambda path: None)
    items = [_item(make_temp, "a.jpg", b"same bytes"), _item(make_temp, "a-copy.jpg", b"same bytes")]

    results = asyncio.run(pipeline.process_files(items, "111"))

    assert len(gateway.image_calls) == 1
    assert [r["status"] for r in results] == [SUCCESS, SUCCESS]
    assert sorted(r["is_duplicate"] for r in results) == [False, True]
    assert results[0]["remote_ids"] == results[1]["remote_ids"]


def test_concurrent_library_pushes_to_one_account_upload_once(store, make_temp):
    gateway = FakeGateway(delay=0.2)
    pipeline = UploadPipeline(Reconciler(store), gateway, thumbnail_fn=lambda path: None)
    creative, _ = store.insert_new(make_temp("lib.jpg", b"lib"), original_name="lib.jpg", mime_type="image/jpeg")

    results = asyncio.run(pipeline.push_library([creative.id, creative.id], "111"))

    assert len(gateway.image_calls) == 1
    assert [r["is_duplicate"] for r in results] == [False, True]
