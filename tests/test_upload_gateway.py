import asyncio

import pytest
from PIL import Image

from meta_client import MetaAPIError
from upload_gateway import RemoteUploadError, UploadGateway, parse_image_hash


def _progress_recorder():
    events = []

    async def progress(stage, pct):
        events.append((stage, pct))

    return events, progress


def test_upload_image_returns_hash(graph, guard, tmp_path):
    img = tmp_path / "hero.jpg"
    img.write_bytes(b"\xff\xd8\xff fake jpeg")
    gateway = UploadGateway(graph, guard)

    image_hash = asyncio.run(gateway.upload_image(str(img), "111", "tok"))

    assert image_hash == "img_hash_1"
    (_, args, _), = graph.called("post_adimage")
    assert args == ("act_111", "hero.jpg")


def test_small_video_uses_simple_upload(graph, guard, tmp_path):
    video = tmp_path / "clip.mp4"
    video.write_bytes(b"v" * 50)
    gateway = UploadGateway(graph, guard, simple_max_bytes=100, chunk_size=16)
    events, progress = _progress_recorder()

    video_id = asyncio.run(gateway.upload_video(str(video), "act_111", "tok", progress=progress))

    assert video_id == "vid_1"
    calls = graph.called("post_advideo")
    assert len(calls) == 1
    assert "upload_phase" not in calls[0][1][1]
    assert events == [("uploading", 30), ("uploading", 90)]


def test_large_video_uses_resumable_upload(graph, guard, tmp_path):
    video = tmp_path / "long.mp4"
    video.write_bytes(b"v" * 40)
    gateway = UploadGateway(graph, guard, simple_max_bytes=10, chunk_size=16)
    events, progress = _progress_recorder()

    video_id = asyncio.run(gateway.upload_video(str(video), "111", "tok", name="Long cut", progress=progress))

    assert video_id == "vid_1"
    phases = [c[1][1].get("upload_phase") for c in graph.called("post_advideo")]
    assert phases == ["start", "transfer", "transfer", "transfer", "finish"]
    offsets = [c[1][1]["start_offset"] for c in graph.called("post_advideo") if c[1][1].get("upload_phase") == "transfer"]
    assert offsets == ["0", "16", "32"]
    finish = graph.called("post_advideo")[-1][1][1]
    assert finish["title"] == "Long cut"

    pcts = [p for _, p in events]
    assert pcts == sorted(pcts)
    assert pcts[0] == 30 and pcts[-1] == 90


def test_transfer_without_progress_fails(graph, guard, tmp_path):
    video = tmp_path / "stuck.mp4"
    video.write_bytes(b"v" * 40)

    original = graph.post_advideo

    def stuck(ad_account_id, data, *, files=None, access_token=None):
        if data.get("upload_phase") == "transfer":
            return {"start_offset": data["start_offset"]}
        return original(ad_account_id, data, files=files, access_token=access_token)

    graph.post_advideo = stuck
    gateway = UploadGateway(graph, guard, simple_max_bytes=10, chunk_size=16)

    with pytest.raises(RemoteUploadError, match="no progress"):
        asyncio.run(gateway.upload_video(str(video), "111"))


def test_meta_rejection_becomes_remote_upload_error(graph, guard, tmp_path):
    video = tmp_path / "bad.mp4"
    video.write_bytes(b"v" * 40)
    payload = {"code": 6001, "message": "Problem uploading video", "error_user_msg": "The video file is corrupt."}
    graph.failures["post_advideo"] = MetaAPIError("Meta API error 400", http_status=400, error=payload)
    gateway = UploadGateway(graph, guard, simple_max_bytes=10, chunk_size=16)

    with pytest.raises(RemoteUploadError) as info:
        asyncio.run(gateway.upload_video(str(video), "111"))

    assert info.value.http_status == 400
    assert info.value.error["error_user_msg"] == "The video file is corrupt."
    assert "upload start" in str(info.value)


def test_finish_rejected(graph, guard, tmp_path):
    video = tmp_path / "v.mp4"
    video.write_bytes(b"v" * 20)
    original = graph.post_advideo

    def reject_finish(ad_account_id, data, *, files=None, access_token=None):
        if data.get("upload_phase") == "finish":
            return {"success": False}
        return original(ad_account_id, data, files=files, access_token=access_token)

    graph.post_advideo = reject_finish
    gateway = UploadGateway(graph, guard, simple_max_bytes=10, chunk_size=16)

    with pytest.raises(RemoteUploadError):
        asyncio.run(gateway.upload_video(str(video), "111"))


def test_thumbnail_is_reencoded_to_jpeg(graph, guard, tmp_path):
    png = tmp_path / "frame.png"
    Image.new("RGBA", (32, 32), (255, 0, 0, 128)).save(png)
    gateway = UploadGateway(graph, guard)

    asyncio.run(gateway.upload_thumbnail(str(png), "111"))

    (_, args, _), = graph.called("post_adimage")
    assert args[1] == "frame.jpg"


def test_parse_image_hash():
    assert parse_image_hash({"images": {"a.jpg": {"hash": "abc"}}}) == "abc"
    with pytest.raises(RemoteUploadError):
        parse_image_hash({"images": {}})
