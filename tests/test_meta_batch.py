import json
from urllib.parse import parse_qs

import pytest

from meta_batch import (
    BATCH_SIZE_LIMIT,
    ad_copy_operation,
    build_operation,
    campaign_copy_operation,
    chunk,
    chunk_count,
    extract_tracking_id,
    parse_batch_response,
)


@pytest.mark.parametrize("n,size", [(0, 1), (1, 1), (7, 3), (50, 50), (51, 50), (120, 50), (3, 1)])
def test_chunk_sizes_and_order(n, size):
    ops = list(range(n))
    chunks = chunk(ops, size)

    assert len(chunks) == chunk_count(n, size)
    assert all(1 <= len(c) <= size for c in chunks)
    assert [x for c in chunks for x in c] == ops


@pytest.mark.parametrize("size", [0, -1, BATCH_SIZE_LIMIT + 1])
def test_chunk_rejects_out_of_range_size(size):
    with pytest.raises(ValueError):
        chunk([1, 2, 3], size)


def test_build_operation_encodes_body():
    op = build_operation("post", "/123/copies", {"deep_copy": True, "skip": None, "rename_options": {"a": 1}}, name="x")

    assert op.method == "POST"
    assert op.relative_url == "123/copies"
    body = parse_qs(op.body)
    assert body["deep_copy"] == ["true"]
    assert "skip" not in body
    assert json.loads(body["rename_options"][0]) == {"a": 1}
    assert op.to_dict()["name"] == "x"
    assert "method" not in op.to_async_dict()


def test_build_operation_rejects_bad_input():
    with pytest.raises(ValueError):
        build_operation("PATCH", "123")
    with pytest.raises(ValueError):
        build_operation("GET", "  ")


def test_copy_operations():
    ad = ad_copy_operation("ad1", adset_id="as9", name="ad:ad1")
    assert ad.relative_url == "ad1/copies"
    assert parse_qs(ad.body)["adset_id"] == ["as9"]

    camp = campaign_copy_operation("c1")
    rename = json.loads(parse_qs(camp.body)["rename_options"][0])
    assert rename == {"rename_strategy": "ONLY_TOP_LEVEL_RENAME", "rename_suffix": " - Copy"}


def test_parse_batch_response_mixed_outcomes():
    ops = [ad_copy_operation(f"ad{i}", adset_id="x", name=f"ad:ad{i}") for i in range(4)]
    raw = [
        {"code": 200, "body": json.dumps({"copied_ad_id": "new1"})},
        {"code": 400, "body": json.dumps({"error": {"message": "Invalid parameter", "error_user_msg": "Budget too low"}})},
        None,
        {"code": 200, "body": json.dumps({"id": "new4"})},
    ]

    results = parse_batch_response(raw, ops)

    assert [r.success for r in results] == [True, False, False, True]
    assert results[0].id == "new1"
    assert results[0].name == "ad:ad0"
    assert results[1].error_message() == "Budget too low"
    assert results[2].timed_out is True
    assert results[2].error_message() == "Operation timed out"
    assert results[3].id == "new4"


def test_extract_tracking_id_strategies_in_order():
    assert extract_tracking_id({"id": "1", "async_batch_request_id": "2"}) == "1"
    assert extract_tracking_id({"async_batch_request_id": "2"}) == "2"
    assert extract_tracking_id({"batch_id": "3"}) == "3"
    assert extract_tracking_id({"handle": "4"}) == "4"
    assert extract_tracking_id({"data": [{"id": "5"}]}) == "5"
    assert extract_tracking_id("6") == "6"
    assert extract_tracking_id({"success": True}) is None
    assert extract_tracking_id(None) is None
