import json
import os
import sys
import threading
from itertools import count

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from circuit_breaker import FACEBOOK_API, CircuitBreaker, GuardedCaller  # noqa: E402
from creative_store import CreativeStore  # noqa: E402
from meta_client import MetaAPIError, strip_act_prefix  # noqa: E402


class FakeGraph:
    """Stands in for MetaClient: same method names, canned replies, every call recorded."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()
        self._batch_ids = count(1)

        self.accounts = []
        self.campaigns = {}
        self.objects = {}
        self.adsets = {}
        self.ads = {}
        self.copies = {}
        self.created_campaign_id = "new_campaign"
        self.batches = {}
        self.batch_results = {}
        self.async_requests = []
        self.submit_responses = []
        self.image_hash = "img_hash_1"
        self.video_id = "vid_1"
        self.failures = {}

    def _record(self, name, *args, **kwargs):
        with self._lock:
            self.calls.append((name, args, kwargs))
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    # reads
    def whoami(self):
        self._record("whoami")
        return {"id": "1", "name": "Test User"}

    def list_adaccounts(self, limit=50):
        self._record("list_adaccounts", limit=limit)
        return list(self.accounts)

    def list_campaigns(self, ad_account_id, *, fields="", max_pages=20):
        self._record("list_campaigns", ad_account_id, fields=fields)
        return [dict(c) for c in self.campaigns.get(strip_act_prefix(ad_account_id), [])]

    def get_object(self, object_id, fields):
        self._record("get_object", object_id, fields)
        if object_id not in self.objects:
            raise MetaAPIError("Unsupported get request", http_status=400, error={"code": 100, "message": "Unsupported get request"})
        return dict(self.objects[object_id])

    def list_adsets_in_campaign(self, campaign_id, *, fields="id,name"):
        self._record("list_adsets_in_campaign", campaign_id, fields=fields)
        return list(self.adsets.get(campaign_id, []))

    def list_ads_in_adset(self, adset_id, *, fields="id,name"):
        self._record("list_ads_in_adset", adset_id, fields=fields)
        return list(self.ads.get(adset_id, []))

    # writes
    def update_object(self, object_id, data):
        self._record("update_object", object_id, data)
        return {"success": True}

    def copy_object(self, object_id, data, *, timeout_s=None):
        self._record("copy_object", object_id, data)
        return dict(self.copies.get(object_id) or {"id": f"{object_id}_copy"})

    def create_campaign(self, ad_account_id, fields):
        self._record("create_campaign", ad_account_id, fields)
        return self.created_campaign_id

    def execute_batch(self, operations, *, include_headers=False):
        self._record("execute_batch", operations)
        out = []
        for op in operations:
            source = op["relative_url"].split("/", 1)[0]
            out.append({"code": 200, "body": json.dumps({"copied_campaign_id": f"{source}_copy"})})
        return out

    def submit_async_batch(self, ad_account_id, name, operations):
        self._record("submit_async_batch", ad_account_id, name, operations)
        if self.submit_responses:
            reply = self.submit_responses.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return {"id": f"batch{next(self._batch_ids)}"}

    def list_async_batch_requests(self, ad_account_id, *, limit=25):
        self._record("list_async_batch_requests", ad_account_id)
        return list(self.async_requests)

    def get_async_batch(self, tracking_id):
        self._record("get_async_batch", tracking_id)
        return dict(self.batches.get(tracking_id) or {"id": tracking_id, "is_completed": False})

    def get_async_batch_results(self, tracking_id, *, limit=50):
        self._record("get_async_batch_results", tracking_id)
        return list(self.batch_results.get(tracking_id, []))

    # uploads
    def post_adimage(self, ad_account_id, files, *, access_token=None):
        filename = files["filename"][0]
        self._record("post_adimage", ad_account_id, filename)
        return {"images": {filename: {"hash": self.image_hash}}}

    def post_advideo(self, ad_account_id, data, *, files=None, access_token=None):
        self._record("post_advideo", ad_account_id, dict(data))
        phase = data.get("upload_phase")
        if phase is None:
            return {"id": self.video_id}
        if phase == "start":
            return {"upload_session_id": "sess_1", "video_id": self.video_id, "start_offset": "0", "end_offset": "0"}
        if phase == "transfer":
            chunk = files["video_file_chunk"][1]
            return {"start_offset": str(int(data["start_offset"]) + len(chunk))}
        if phase == "finish":
            return {"success": True}
        raise AssertionError(f"unexpected phase {phase}")


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def breaker():
    return CircuitBreaker(FACEBOOK_API)


@pytest.fixture
def guard(breaker):
    return GuardedCaller(breaker)


@pytest.fixture
def store(tmp_path):
    return CreativeStore(tmp_path / "creatives.db", tmp_path / "library")


@pytest.fixture
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    return d


@pytest.fixture
def make_temp(upload_dir):
    seq = count(1)

    def _make(name="photo.jpg", data=b"\xff\xd8\xff image bytes"):
        path = upload_dir / f"{next(seq)}-{name}"
        path.write_bytes(data)
        return str(path)

    return _make
