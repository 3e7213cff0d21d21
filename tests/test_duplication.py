import asyncio
import json
from urllib.parse import parse_qs

import pytest

from batch_job_store import COMPLETED, BatchJobStore
from duplication import (
    ASYNC_DOUBLE_BATCH,
    ASYNC_MANUAL,
    SYNC_COPY,
    DuplicationOptions,
    DuplicationStructureFetchError,
    Duplicator,
    created_ids_from_requests,
    decide_adset_strategy,
    decide_campaign_strategy,
)
from meta_client import MetaAPIError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_store(tmp_path):
    return BatchJobStore(str(tmp_path / "jobs.db"))


@pytest.fixture
def duplicator(graph, guard, job_store, clock):
    return Duplicator(
        graph,
        guard,
        job_store=job_store,
        chunk_delay_s=0.5,
        phase_a_wait_s=5,
        poll_interval_s=2,
        sleep=clock.sleep,
        clock=clock,
    )


def _ops(graph):
    return [c[1][2] for c in graph.called("submit_async_batch")]


def test_strategy_boundaries():
    assert decide_adset_strategy(0) == SYNC_COPY
    assert decide_adset_strategy(2) == SYNC_COPY
    assert decide_adset_strategy(3) == ASYNC_MANUAL
    assert decide_campaign_strategy(3) == SYNC_COPY
    assert decide_campaign_strategy(4) == ASYNC_DOUBLE_BATCH
    assert decide_campaign_strategy(0, cross_account=True) == ASYNC_DOUBLE_BATCH


def test_adset_with_two_ads_is_sync_deep_copy(graph, duplicator):
    graph.ads["as1"] = [{"id": "ad1"}, {"id": "ad2"}]
    graph.copies["as1"] = {"copied_adset_id": "new_as"}

    result = asyncio.run(duplicator.duplicate_ad_set("as1", "c9", DuplicationOptions(new_name="Clone")))

    assert result.mode == "sync"
    assert result.strategy == SYNC_COPY
    assert result.new_id == "new_as"
    (_, args, _), = graph.called("copy_object")
    assert args[1]["deep_copy"] is True
    assert args[1]["campaign_id"] == "c9"
    assert graph.called("update_object")[0][1] == ("new_as", {"name": "Clone"})
    assert graph.called("submit_async_batch") == []


def test_adset_with_three_ads_goes_async(graph, duplicator, job_store):
    graph.ads["as1"] = [{"id": "ad1"}, {"id": "ad2"}, {"id": "ad3"}]
    graph.copies["as1"] = {"copied_adset_id": "new_as"}
    graph.objects["c9"] = {"id": "c9", "account_id": "111"}

    result = asyncio.run(duplicator.duplicate_ad_set("as1", "c9"))

    assert result.mode == "async"
    assert result.strategy == ASYNC_MANUAL
    assert result.new_id == "new_as"
    assert result.batch_tracking_ids == ["batch1", "batch2", "batch3"]
    shell_body = graph.called("copy_object")[0][1][1]
    assert shell_body["deep_copy"] is False

    submitted = _ops(graph)
    assert [len(ops) for ops in submitted] == [1, 1, 1]
    assert [ops[0]["relative_url"] for ops in submitted] == ["ad1/copies", "ad2/copies", "ad3/copies"]
    assert parse_qs(submitted[0][0]["body"])["adset_id"] == ["new_as"]
    assert graph.called("submit_async_batch")[0][1][0] == "111"
    assert len(job_store.list_pending()) == 3


def test_failed_chunk_is_recorded_not_fatal(graph, duplicator):
    graph.ads["as1"] = [{"id": f"ad{i}"} for i in range(3)]
    graph.objects["c9"] = {"id": "c9", "account_id": "111"}
    graph.submit_responses = [
        {"id": "b1"},
        MetaAPIError("Meta API error 400", http_status=400, error={"message": "Invalid", "error_user_msg": "Ad is archived"}),
        {"id": "b3"},
    ]

    result = asyncio.run(duplicator.duplicate_ad_set("as1", "c9"))

    assert result.batch_tracking_ids == ["b1", "b3"]
    assert result.partial is True
    assert result.errors[0]["error"] == "Ad is archived"
    assert result.errors[0]["sources"] == ["ad1"]
    assert result.counts["chunks_failed"] == 1


def test_structure_read_failure_fails_deep_copy(graph, duplicator):
    graph.failures["list_ads_in_adset"] = MetaAPIError("boom", http_status=500)

    with pytest.raises(DuplicationStructureFetchError) as info:
        asyncio.run(duplicator.duplicate_ad_set("as1", "c9"))
    assert info.value.source_id == "as1"


def test_tracking_id_falls_back_to_account_listing(graph, duplicator):
    graph.ads["as1"] = [{"id": f"ad{i}"} for i in range(3)]
    graph.objects["c9"] = {"id": "c9", "account_id": "111"}
    graph.submit_responses = [{"success": True}, {"id": "b2"}, {"id": "b3"}]
    graph.async_requests = [
        {"id": "found1", "name": "Copy ads of as1 -> as1_copy [1/3]", "is_completed": False},
        {"id": "other", "name": "something else"},
    ]

    result = asyncio.run(duplicator.duplicate_ad_set("as1", "c9"))

    assert result.batch_tracking_ids == ["found1", "b2", "b3"]


def test_small_same_account_campaign_is_sync(graph, duplicator):
    graph.objects["c1"] = {"id": "c1", "account_id": "111", "name": "Spring"}
    graph.adsets["c1"] = [{"id": "as1"}]
    graph.ads["as1"] = [{"id": "ad1"}, {"id": "ad2"}]
    graph.copies["c1"] = {"copied_campaign_id": "new_c"}

    result = asyncio.run(duplicator.duplicate_campaign("c1", "act_111"))

    assert result.mode == "sync"
    assert result.new_id == "new_c"
    body = graph.called("copy_object")[0][1][1]
    assert body["deep_copy"] is True
    assert body["rename_options"]["rename_strategy"] == "ONLY_TOP_LEVEL_RENAME"


def test_cross_account_campaign_double_batch_skips_unmapped_parents(graph, duplicator, clock, job_store):
    graph.objects["c1"] = {"id": "c1", "account_id": "111", "name": "Spring", "objective": "OUTCOME_SALES"}
    graph.adsets["c1"] = [{"id": "as1"}, {"id": "as2"}]
    graph.ads["as1"] = [{"id": "ad1"}, {"id": "ad2"}]
    graph.ads["as2"] = [{"id": "ad3"}]
    graph.batches["batch1"] = {"id": "batch1", "is_completed": True, "total_count": 1, "success_count": 1}
    graph.batch_results["batch1"] = [
        {"status": "SUCCESS", "result": json.dumps({"copied_adset_id": "new_as1"}), "input": {"name": "adset:as1"}}
    ]

    result = asyncio.run(duplicator.duplicate_campaign("c1", "act_222"))

    assert result.mode == "async"
    assert result.strategy == ASYNC_DOUBLE_BATCH
    assert result.new_id == "new_campaign"
    (_, shell_args, _), = graph.called("create_campaign")
    assert shell_args[0] == "222"
    assert shell_args[1]["name"] == "Spring - Copy"
    assert shell_args[1]["status"] == "PAUSED"
    assert graph.called("copy_object") == []

    assert result.phase_a_batch_ids == ["batch1", "batch2"]
    assert result.phase_b_batch_ids == ["batch3"]
    assert result.id_mapping == {"as1": "new_as1"}
    assert result.skipped == [{"ad_id": "ad3", "adset_id": "as2", "reason": "parent ad set not mapped"}]

    phase_b_ops = _ops(graph)[-1]
    assert [op["relative_url"] for op in phase_b_ops] == ["ad1/copies", "ad2/copies"]
    assert all(parse_qs(op["body"])["adset_id"] == ["new_as1"] for op in phase_b_ops)

    # sweep gave up on batch2 once the wait budget ran out
    assert 5 <= clock.now <= 8
    kinds = sorted(j.kind for j in job_store.list_jobs())
    assert kinds == ["campaign_ads", "campaign_adsets", "campaign_adsets"]


def test_no_wait_budget_skips_sweep(graph, guard):
    graph.objects["c1"] = {"id": "c1", "account_id": "111", "name": "Spring"}
    graph.adsets["c1"] = [{"id": "as1"}]
    graph.ads["as1"] = [{"id": f"ad{i}"} for i in range(3)]

    dup = Duplicator(graph, guard, chunk_delay_s=0, phase_a_wait_s=0)
    result = asyncio.run(dup.duplicate_campaign("c1"))

    assert graph.called("get_async_batch") == []
    assert result.phase_b_batch_ids == []
    assert len(result.skipped) == 3
    assert result.errors == []


def test_get_batch_status_updates_job_store(graph, duplicator, job_store):
    job_store.record_submitted("b7", kind="adset_ads", total_count=2)
    graph.batches["b7"] = {"id": "b7", "is_completed": True, "total_count": 2, "success_count": 2, "error_count": 0}
    graph.batch_results["b7"] = [
        {"status": "SUCCESS", "result": {"copied_ad_id": "n1"}, "input": {"name": "ad:a1"}},
        {"status": "SUCCESS", "result": {"copied_ad_id": "n2"}, "input": {"name": "ad:a2"}},
    ]

    status = asyncio.run(duplicator.get_batch_status("b7", fetch_results=True))

    assert status["is_completed"] is True
    assert status["success_count"] == 2
    assert status["result_id"] == "n1"
    job = job_store.get("b7")
    assert job.status == COMPLETED
    assert job.result_id == "n1"


def test_created_ids_from_requests_ignores_failures():
    rows = [
        {"status": "SUCCESS", "result": '{"id": "x1"}', "input": {"relative_url": "a1/copies"}},
        {"status": "ERROR", "result": '{"id": "x2"}', "input": {"name": "ad:a2"}},
    ]
    assert created_ids_from_requests(rows) == {"a1": "x1"}


def test_bulk_copy_campaigns(graph, duplicator):
    out = asyncio.run(duplicator.bulk_copy_campaigns(["c1", "c2"], "act_111"))

    assert out["total"] == 2
    assert out["successful"] == 2
    assert [r["new_id"] for r in out["results"]] == ["c1_copy", "c2_copy"]
    with pytest.raises(ValueError):
        asyncio.run(duplicator.bulk_copy_campaigns([]))


def test_unresolvable_target_account_fails_before_shell_copy(graph, duplicator):
    graph.ads["as1"] = [{"id": "ad1"}, {"id": "ad2"}, {"id": "ad3"}]

    with pytest.raises(MetaAPIError):
        asyncio.run(duplicator.duplicate_ad_set("as1", "c9"))

    assert graph.called("copy_object") == []
    assert graph.called("submit_async_batch") == []


def test_same_account_campaign_with_four_children_is_double_batch(graph, duplicator):
    graph.objects["c1"] = {"id": "c1", "account_id": "111", "name": "Spring"}
    graph.adsets["c1"] = [{"id": "as1"}, {"id": "as2"}]
    graph.ads["as1"] = [{"id": "ad1"}]
    graph.ads["as2"] = [{"id": "ad2"}]
    graph.copies["c1"] = {"copied_campaign_id": "new_c"}

    result = asyncio.run(duplicator.duplicate_campaign("c1", "act_111"))

    assert result.mode == "async"
    assert result.strategy == ASYNC_DOUBLE_BATCH
    assert result.new_id == "new_c"
    assert graph.called("create_campaign") == []
    (_, shell_args, _), = graph.called("copy_object")
    assert shell_args[0] == "c1"
    assert shell_args[1]["deep_copy"] is False
    phase_a_ops = [op for ops in _ops(graph)[:2] for op in ops]
    assert [op["relative_url"] for op in phase_a_ops] == ["as1/copies", "as2/copies"]
    assert all(parse_qs(op["body"])["campaign_id"] == ["new_c"] for op in phase_a_ops)
