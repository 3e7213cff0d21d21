import os

import pytest

from creative_store import BatchNameTaken, CreativeStore
from library_files import fingerprint


def test_insert_new_moves_file_into_library(store, make_temp, tmp_path):
    temp = make_temp("hero.jpg", b"hero")
    creative, created = store.insert_new(temp, original_name="hero.jpg", mime_type="image/jpeg")

    assert created is True
    assert not os.path.exists(temp)
    assert os.path.exists(creative.file_path)
    assert creative.file_path == str(tmp_path / "library" / "images" / f"{creative.fingerprint}.jpg")
    assert creative.mime_class == "image"
    assert creative.byte_size == 4
    assert store.find_by_fingerprint(creative.fingerprint) == creative


def test_insert_race_returns_existing_and_discards_temp(tmp_path, make_temp):
    # Two stores on one database behave like two processes.
    first = CreativeStore(tmp_path / "shared.db", tmp_path / "library")
    second = CreativeStore(tmp_path / "shared.db", tmp_path / "library")

    t1 = make_temp("a.jpg", b"same")
    t2 = make_temp("b.jpg", b"same")
    c1, created1 = first.insert_new(t1, original_name="a.jpg", mime_type="image/jpeg")
    c2, created2 = second.insert_new(t2, original_name="b.jpg", mime_type="image/jpeg", fp=fingerprint(t2))

    assert created1 is True
    assert created2 is False
    assert c2.id == c1.id
    assert not os.path.exists(t2)
    assert first.count_creatives() == 1


def test_failed_move_rolls_back_insert(store, make_temp, monkeypatch):
    temp = make_temp("a.jpg", b"data")

    def boom(src, dest):
        raise OSError("disk full")

    monkeypatch.setattr("creative_store.move_into_library", boom)
    with pytest.raises(OSError):
        store.insert_new(temp, original_name="a.jpg", mime_type="image/jpeg")

    assert store.count_creatives() == 0
    assert os.path.exists(temp)


def test_insert_rejects_non_media(store, make_temp):
    temp = make_temp("notes.txt", b"text")
    with pytest.raises(ValueError):
        store.insert_new(temp, original_name="notes.txt", mime_type="text/plain")


def test_ledger_upsert_replaces_row(store, make_temp):
    creative, _ = store.insert_new(make_temp("v.mp4", b"video"), original_name="v.mp4", mime_type="video/mp4")

    store.record_upload(creative.id, "act_111", image_hash="thumb1", video_id="vid1")
    store.record_upload(creative.id, "111", video_id="vid2")

    record = store.get_record(creative.id, "act_111")
    assert record.ad_account_id == "111"
    assert record.video_id == "vid2"
    assert record.image_hash is None
    assert store.is_uploaded(creative.id, "111")
    assert not store.is_uploaded(creative.id, "222")
    assert [a["ad_account_id"] for a in store.list_accounts(creative.id)] == ["111"]


def test_record_upload_needs_an_id(store, make_temp):
    creative, _ = store.insert_new(make_temp(), original_name="a.jpg", mime_type="image/jpeg")
    with pytest.raises(ValueError):
        store.record_upload(creative.id, "111")


def test_list_and_search_include_accounts(store, make_temp):
    a, _ = store.insert_new(make_temp("summer.jpg", b"1"), original_name="summer.jpg", mime_type="image/jpeg")
    store.insert_new(make_temp("winter.jpg", b"2"), original_name="winter.jpg", mime_type="image/jpeg")
    store.record_upload(a.id, "111", image_hash="h")

    rows = store.list_creatives(query="summ")
    assert [r["id"] for r in rows] == [a.id]
    assert rows[0]["accounts"][0]["ad_account_id"] == "111"
    assert len(store.list_creatives()) == 2


def test_delete_removes_files_then_row(store, make_temp):
    creative, _ = store.insert_new(make_temp(), original_name="a.jpg", mime_type="image/jpeg")
    store.record_upload(creative.id, "111", image_hash="h")

    assert store.delete(creative.id) is True
    assert not os.path.exists(creative.file_path)
    assert store.get(creative.id) is None
    assert store.get_record(creative.id, "111") is None
    assert store.delete(creative.id) is False


def test_delete_keeps_row_when_file_removal_fails(store, make_temp, monkeypatch):
    creative, _ = store.insert_new(make_temp(), original_name="a.jpg", mime_type="image/jpeg")

    def denied(path):
        raise PermissionError("read-only")

    monkeypatch.setattr("creative_store.remove_library_file", denied)
    with pytest.raises(PermissionError):
        store.delete(creative.id)
    assert store.get(creative.id) is not None


def test_attach_thumbnail_copies_into_library(store, make_temp, tmp_path):
    creative, _ = store.insert_new(make_temp("v.mp4", b"vid"), original_name="v.mp4", mime_type="video/mp4")
    thumb = tmp_path / "frame.jpg"
    thumb.write_bytes(b"jpeg")

    updated = store.attach_thumbnail(creative.id, thumb)
    assert updated.thumbnail_path.endswith(f"{creative.fingerprint}_thumb.jpg")
    assert os.path.exists(updated.thumbnail_path)


def test_batches(store, make_temp):
    batch = store.create_batch("Spring", "launch set")
    with pytest.raises(BatchNameTaken):
        store.create_batch("Spring")

    c, _ = store.insert_new(make_temp(), original_name="a.jpg", mime_type="image/jpeg")
    assert store.assign_batch([c.id], batch["id"]) == 1
    assert store.get_batch(batch["id"])["creative_count"] == 1
    assert [r["id"] for r in store.list_batch_creatives(batch["id"])] == [c.id]

    renamed = store.update_batch(batch["id"], name="Spring v2")
    assert renamed["name"] == "Spring v2"
    assert renamed["description"] == "launch set"

    with pytest.raises(KeyError):
        store.assign_batch([c.id], 9999)

    assert store.delete_batch(batch["id"]) is True
    assert store.get(c.id).batch_id is None
    assert store.list_batches() == []
