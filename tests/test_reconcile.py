import asyncio
import os

from reconcile import KeyedLocks, Reconciler


def test_new_file_is_inserted_and_needs_upload(store, make_temp):
    temp = make_temp("a.jpg", b"alpha")
    result = asyncio.run(Reconciler(store).reconcile(temp, "act_111", original_name="a.jpg", mime_type="image/jpeg"))

    assert result.is_new is True
    assert result.is_duplicate is False
    assert result.needs_upload is True
    assert result.library_path == result.creative.file_path
    assert not os.path.exists(temp)
    assert os.path.exists(result.library_path)


def test_same_account_reupload_is_duplicate(store, make_temp):
    rec = Reconciler(store)
    first = asyncio.run(rec.reconcile(make_temp("a.jpg", b"alpha"), "111", original_name="a.jpg", mime_type="image/jpeg"))
    store.record_upload(first.creative.id, "111", image_hash="h1")

    temp = make_temp("renamed.jpg", b"alpha")
    second = asyncio.run(rec.reconcile(temp, "act_111", original_name="renamed.jpg", mime_type="image/jpeg"))

    assert second.is_duplicate is True
    assert second.is_new is False
    assert second.facebook_ids == {"image_hash": "h1", "video_id": None}
    assert second.creative.id == first.creative.id
    assert not os.path.exists(temp)
    assert store.count_creatives() == 1


def test_other_account_uploads_from_library_path(store, make_temp):
    rec = Reconciler(store)
    first = asyncio.run(rec.reconcile(make_temp("a.jpg", b"alpha"), "111", original_name="a.jpg", mime_type="image/jpeg"))
    store.record_upload(first.creative.id, "111", image_hash="h1")

    temp = make_temp("a.jpg", b"alpha")
    other = asyncio.run(rec.reconcile(temp, "222", original_name="a.jpg", mime_type="image/jpeg"))

    assert other.is_new is False
    assert other.is_duplicate is False
    assert other.needs_upload is True
    assert other.library_path == first.creative.file_path
    assert not os.path.exists(temp)
    assert os.path.exists(first.creative.file_path)


def test_concurrent_reconciles_insert_once(store, make_temp):
    temps = [make_temp(f"copy{i}.jpg", b"identical bytes") for i in range(8)]
    rec = Reconciler(store)

    async def run_all():
        return await asyncio.gather(
            *(rec.reconcile(t, "111", original_name=os.path.basename(t), mime_type="image/jpeg") for t in temps)
        )

    results = asyncio.run(run_all())

    assert sum(1 for r in results if r.is_new) == 1
    assert len({r.creative.id for r in results}) == 1
    assert store.count_creatives() == 1
    assert not any(os.path.exists(t) for t in temps)
    assert len(rec.locks) == 0


def test_keyed_locks_serialise_same_key():
    locks = KeyedLocks()
    order = []

    async def worker(name, key):
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    async def main():
        await asyncio.gather(worker("a", "k"), worker("b", "k"))

    asyncio.run(main())
    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


def test_push_runs_once_per_account_under_lock(store, make_temp):
    rec = Reconciler(store)
    pushed = []

    async def push(creative):
        pushed.append(creative.id)
        await asyncio.sleep(0.05)
        record = await asyncio.to_thread(store.record_upload, creative.id, "111", image_hash="h1")
        return record.facebook_ids()

    async def main():
        return await asyncio.gather(
            *(
                rec.reconcile(make_temp(f"c{i}.jpg", b"same"), "111", original_name="c.jpg", mime_type="image/jpeg", push=push)
                for i in range(3)
            )
        )

    results = asyncio.run(main())

    assert len(pushed) == 1
    assert [r.is_duplicate for r in results].count(True) == 2
    assert all(r.facebook_ids == {"image_hash": "h1", "video_id": None} for r in results)
    assert len(rec.locks) == 0
