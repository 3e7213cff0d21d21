"""duplication.py

Campaign / ad set duplication.

Ad set  -> target campaign
  Inspect   deep copy: list the source ad set's ads
  Decide    <= 2 ads: SyncCopy, otherwise AsyncManual
  SyncCopy  one POST {adset}/copies (deep_copy), optional rename
  AsyncManual
            shallow copy into the target campaign (new ad set id right away),
            optional rename, then one async batch per chunk of
            POST {ad}/copies?adset_id=<new>. Returns without waiting.

Campaign -> target account
  Inspect   deep copy: list ad sets, and ads per ad set
  Decide    ad sets + ads <= 3 (same account): SyncCopy, otherwise AsyncDoubleBatch
  AsyncDoubleBatch
            shell: shallow copy (same account) or re-create from fields (cross account)
            phase A: POST {adset}/copies?campaign_id=<new> per ad set, async batches
            sweep: poll phase A batches for up to phase_a_wait_s, filling id_mapping
            phase B: POST {ad}/copies?adset_id=<mapped> for ads whose parent is mapped;
                     ads under unmapped ad sets are reported as skipped

Chunk submission failures are recorded and the remaining chunks still go out.
Only a failed shell (or a failed structure read under deep copy) fails the
whole request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from batch_job_store import COMPLETED, FAILED
from circuit_breaker import CircuitOpenError, GuardedCaller
from meta_batch import (
    ADSET_SYNC_COPY_MAX_CHILDREN,
    BATCH_SIZE_LIMIT,
    CAMPAIGN_SYNC_COPY_MAX_CHILDREN,
    BatchOperation,
    ad_copy_operation,
    adset_copy_operation,
    campaign_copy_operation,
    chunk,
    created_id,
    extract_tracking_id,
    parse_batch_response,
)
from meta_client import MetaAPIError, MetaClient, strip_act_prefix, user_message

logger = logging.getLogger(__name__)

SYNC_COPY = "SyncCopy"
ASYNC_MANUAL = "AsyncManual"
ASYNC_DOUBLE_BATCH = "AsyncDoubleBatch"

CAMPAIGN_COPY_FIELDS = (
    "name",
    "objective",
    "status",
    "special_ad_categories",
    "buying_type",
    "bid_strategy",
    "daily_budget",
    "lifetime_budget",
    "spend_cap",
)

# Errors a single chunk submission may end with; anything else is a bug and propagates.
CHUNK_ERRORS = (MetaAPIError, CircuitOpenError, asyncio.TimeoutError)


class DuplicationStructureFetchError(RuntimeError):
    def __init__(self, message: str, *, source_id: str):
        super().__init__(message)
        self.source_id = source_id


def decide_adset_strategy(child_count: int) -> str:
    return ASYNC_MANUAL if child_count > ADSET_SYNC_COPY_MAX_CHILDREN else SYNC_COPY


def decide_campaign_strategy(total_children: int, *, cross_account: bool = False) -> str:
    # Native copies can't cross ad accounts, so those always rebuild the shell.
    if cross_account or total_children > CAMPAIGN_SYNC_COPY_MAX_CHILDREN:
        return ASYNC_DOUBLE_BATCH
    return SYNC_COPY


@dataclass
class DuplicationOptions:
    deep_copy: bool = True
    status_option: str = "PAUSED"
    new_name: Optional[str] = None
    # Observed-safe size for ad set / ad-set-ads async submissions.
    chunk_size: int = 1
    phase_b_chunk_size: int = BATCH_SIZE_LIMIT


@dataclass
class DuplicationPlan:
    source_id: str
    target_id: Optional[str]
    deep_copy: bool
    child_count: int = 0
    id_mapping: Dict[str, str] = field(default_factory=dict)


@dataclass
class DuplicationResult:
    mode: str
    strategy: str
    source_id: str
    new_id: str
    phase_a_batch_ids: List[str] = field(default_factory=list)
    phase_b_batch_ids: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    id_mapping: Dict[str, str] = field(default_factory=dict)

    @property
    def batch_tracking_ids(self) -> List[str]:
        return self.phase_a_batch_ids + self.phase_b_batch_ids

    @property
    def partial(self) -> bool:
        return bool(self.errors or self.skipped)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["batch_tracking_ids"] = self.batch_tracking_ids
        d["partial"] = self.partial
        return d


@dataclass(frozen=True)
class SubmittedBatch:
    tracking_id: str
    chunk_index: int
    operations: Tuple[BatchOperation, ...]
    inline_ids: Tuple[Tuple[str, str], ...] = ()


def _source_of(op: BatchOperation) -> str:
    return op.relative_url.split("/", 1)[0]


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def created_ids_from_requests(requests_: Sequence[Dict[str, Any]]) -> Dict[str, str]:
    """source id -> created id, from an async batch's /requests edge."""
    out: Dict[str, str] = {}
    for req in requests_ or []:
        status = str(req.get("status") or "").upper()
        if status and status not in {"SUCCESS", "COMPLETED"}:
            continue
        result = _as_dict(req.get("result"))
        new_id = created_id(result)
        if not new_id:
            continue
        inp = _as_dict(req.get("input"))
        source = ""
        name = str(inp.get("name") or "")
        if ":" in name:
            source = name.split(":", 1)[1]
        if not source and inp.get("relative_url"):
            source = str(inp["relative_url"]).lstrip("/").split("/", 1)[0]
        if source:
            out[source] = new_id
    return out


class Duplicator:
    def __init__(
        self,
        client: MetaClient,
        guard: GuardedCaller,
        *,
        job_store: Any = None,
        meta_cache: Any = None,
        chunk_delay_s: float = 1.0,
        phase_a_wait_s: float = 20.0,
        poll_interval_s: float = 2.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.guard = guard
        self.job_store = job_store
        self.meta_cache = meta_cache
        self.chunk_delay_s = float(chunk_delay_s)
        self.phase_a_wait_s = float(phase_a_wait_s)
        self.poll_interval_s = float(poll_interval_s)
        self._sleep = sleep
        self._clock = clock

    # -----------------------------
    # Structure reads
    # -----------------------------

    async def _fetch_ads(self, adset_id: str) -> List[Dict[str, Any]]:
        try:
            return await self.guard(self.client.list_ads_in_adset, adset_id)
        except CircuitOpenError:
            raise
        except MetaAPIError as e:
            raise DuplicationStructureFetchError(
                f"Could not read ads of ad set {adset_id}: {user_message(e)}", source_id=adset_id
            ) from e

    async def _fetch_campaign_structure(self, campaign_id: str) -> List[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
        try:
            adsets = await self.guard(self.client.list_adsets_in_campaign, campaign_id, fields="id,name")
        except CircuitOpenError:
            raise
        except MetaAPIError as e:
            raise DuplicationStructureFetchError(
                f"Could not read ad sets of campaign {campaign_id}: {user_message(e)}", source_id=campaign_id
            ) from e
        structure = []
        for adset in adsets:
            structure.append((adset, await self._fetch_ads(str(adset["id"]))))
        return structure

    async def _account_of(self, object_id: str) -> Optional[str]:
        obj = await self.guard(self.client.get_object, object_id, "id,account_id")
        acct = obj.get("account_id")
        return strip_act_prefix(acct) if acct else None

    # -----------------------------
    # Writes
    # -----------------------------

    async def _copy(self, object_id: str, body: Dict[str, Any], ad_account_id: Optional[str] = None) -> str:
        payload = await self.guard(self.client.copy_object, object_id, body, ad_account_id=ad_account_id)
        new_id = created_id(payload if isinstance(payload, dict) else {})
        if not new_id and isinstance(payload, dict) and payload.get("campaign_id"):
            new_id = str(payload["campaign_id"])
        if not new_id:
            raise MetaAPIError(f"Copy of {object_id} returned no id. Response: {payload}")
        return new_id

    async def _rename(self, object_id: str, name: str, errors: List[Dict[str, Any]]) -> None:
        try:
            await self.guard(self.client.update_object, object_id, {"name": name})
        except CHUNK_ERRORS as e:
            logger.warning("Rename of %s failed: %s", object_id, e)
            errors.append({"phase": "rename", "object_id": object_id, "error": user_message(e)})

    async def _cache(self, fn: Callable[..., Any], *args: Any) -> None:
        if self.meta_cache is None:
            return
        try:
            await asyncio.to_thread(fn, *args)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.warning("Meta cache update failed: %s", e)

    async def _record_job(self, tracking_id: str, **kwargs: Any) -> None:
        if self.job_store is None:
            return
        try:
            await asyncio.to_thread(self.job_store.record_submitted, tracking_id, **kwargs)
        except (sqlite3.Error, OSError) as e:
            logger.warning("Could not record batch job %s: %s", tracking_id, e)

    # -----------------------------
    # Async batch submission
    # -----------------------------

    async def _find_pending_batch(self, ad_account_id: str, name: str) -> Optional[str]:
        """Last resort: newest async batch request on the account with our name."""
        rows = await self.guard(self.client.list_async_batch_requests, ad_account_id, ad_account_id=ad_account_id)
        matches = [r for r in rows if str(r.get("name") or "") == name and r.get("id")]
        if not matches:
            return None
        pending = [r for r in matches if not r.get("is_completed")]
        picked = (pending or matches)[0]
        return str(picked["id"])

    async def _submit_async_batch(self, ad_account_id: str, name: str, ops: Sequence[BatchOperation]) -> Tuple[str, Dict[str, Any]]:
        response = await self.guard(
            self.client.submit_async_batch,
            ad_account_id,
            name,
            [op.to_async_dict() for op in ops],
            ad_account_id=ad_account_id,
        )
        tracking_id = extract_tracking_id(response)
        if not tracking_id:
            tracking_id = await self._find_pending_batch(ad_account_id, name)
        if not tracking_id:
            raise MetaAPIError(f"Async batch '{name}' accepted but no tracking id could be found. Response: {response}")
        return tracking_id, response if isinstance(response, dict) else {}

    async def _submit_chunks(
        self,
        ad_account_id: str,
        ops: Sequence[BatchOperation],
        *,
        chunk_size: int,
        phase: str,
        kind: str,
        batch_name: str,
        source_id: str,
        target_id: str,
    ) -> Tuple[List[SubmittedBatch], List[Dict[str, Any]]]:
        submitted: List[SubmittedBatch] = []
        errors: List[Dict[str, Any]] = []
        chunks = chunk(ops, chunk_size)
        for i, ops_chunk in enumerate(chunks):
            if i > 0 and self.chunk_delay_s > 0:
                await self._sleep(self.chunk_delay_s)
            name = f"{batch_name} [{i + 1}/{len(chunks)}]"
            try:
                tracking_id, response = await self._submit_async_batch(ad_account_id, name, ops_chunk)
            except CHUNK_ERRORS as e:
                logger.warning("%s chunk %s/%s failed: %s", phase, i + 1, len(chunks), e)
                errors.append(
                    {
                        "phase": phase,
                        "chunk": i,
                        "sources": [_source_of(op) for op in ops_chunk],
                        "error": user_message(e),
                    }
                )
                continue

            inline: List[Tuple[str, str]] = []
            # Single-op chunks sometimes come back executed inline.
            if len(ops_chunk) == 1:
                new_id = created_id({k: v for k, v in response.items() if k != "id"})
                if new_id:
                    inline.append((_source_of(ops_chunk[0]), new_id))

            submitted.append(SubmittedBatch(tracking_id, i, tuple(ops_chunk), tuple(inline)))
            await self._record_job(
                tracking_id,
                kind=kind,
                name=name,
                source_id=source_id,
                target_id=target_id,
                ad_account_id=ad_account_id,
                total_count=len(ops_chunk),
            )
        return submitted, errors

    # -----------------------------
    # Batch status
    # -----------------------------

    async def _fetch_batch(self, tracking_id: str, *, fetch_results: bool) -> Tuple[Dict[str, Any], Dict[str, str]]:
        info = await self.guard(self.client.get_async_batch, tracking_id)
        status: Dict[str, Any] = {
            "tracking_id": str(tracking_id),
            "is_completed": bool(info.get("is_completed")),
            "total_count": int(info.get("total_count") or 0),
            "success_count": int(info.get("success_count") or 0),
            "error_count": int(info.get("error_count") or 0),
            "in_progress_count": int(info.get("in_progress_count") or 0),
            "result_id": None,
        }
        created: Dict[str, str] = {}
        if status["is_completed"] and fetch_results:
            requests_ = await self.guard(self.client.get_async_batch_results, tracking_id)
            created = created_ids_from_requests(requests_)
            if not created:
                for req in requests_:
                    new_id = created_id(_as_dict(req.get("result")))
                    if new_id:
                        created[f"#{len(created)}"] = new_id
            status["created"] = created
            status["result_id"] = next(iter(created.values()), None)
        return status, created

    async def get_batch_status(self, tracking_id: str, *, fetch_results: bool = False) -> Dict[str, Any]:
        status, _ = await self._fetch_batch(tracking_id, fetch_results=fetch_results)
        if status["is_completed"] and self.job_store is not None:
            final = FAILED if status["total_count"] and status["error_count"] >= status["total_count"] else COMPLETED
            try:
                await asyncio.to_thread(
                    self.job_store.update_status,
                    tracking_id,
                    status=final,
                    total_count=status["total_count"],
                    success_count=status["success_count"],
                    error_count=status["error_count"],
                    result_id=status["result_id"],
                )
            except (sqlite3.Error, OSError) as e:
                logger.warning("Could not update batch job %s: %s", tracking_id, e)
        return status

    async def _sweep(self, submitted: Sequence[SubmittedBatch], id_mapping: Dict[str, str]) -> None:
        """Poll phase A batches until resolved or phase_a_wait_s runs out."""
        pending = [sb for sb in submitted if not sb.inline_ids]
        if not pending or self.phase_a_wait_s <= 0:
            return
        deadline = self._clock() + self.phase_a_wait_s
        while pending:
            still: List[SubmittedBatch] = []
            for sb in pending:
                try:
                    status, created = await self._fetch_batch(sb.tracking_id, fetch_results=True)
                except CHUNK_ERRORS as e:
                    logger.info("Phase A batch %s not readable yet: %s", sb.tracking_id, e)
                    still.append(sb)
                    continue
                if not status["is_completed"]:
                    still.append(sb)
                    continue
                for src, new_id in created.items():
                    if src.startswith("#") and len(sb.operations) == 1:
                        src = _source_of(sb.operations[0])
                    id_mapping[src] = new_id
            pending = still
            remaining = deadline - self._clock()
            if not pending or remaining <= 0:
                break
            await self._sleep(min(self.poll_interval_s, remaining))
        if pending:
            logger.info("Phase A sweep ended with %s unresolved batch(es)", len(pending))

    # -----------------------------
    # Ad set duplication
    # -----------------------------

    async def duplicate_ad_set(
        self,
        source_adset_id: str,
        target_campaign_id: str,
        options: Optional[DuplicationOptions] = None,
    ) -> DuplicationResult:
        options = options or DuplicationOptions()
        ads: List[Dict[str, Any]] = []
        if options.deep_copy:
            ads = await self._fetch_ads(source_adset_id)
        plan = DuplicationPlan(
            source_id=source_adset_id,
            target_id=target_campaign_id,
            deep_copy=options.deep_copy,
            child_count=len(ads),
        )
        strategy = decide_adset_strategy(plan.child_count)
        logger.info("Duplicate ad set %s -> campaign %s: %s ads, %s", source_adset_id, target_campaign_id, plan.child_count, strategy)

        errors: List[Dict[str, Any]] = []

        if strategy == SYNC_COPY:
            new_id = await self._copy(
                source_adset_id,
                {"campaign_id": target_campaign_id, "deep_copy": options.deep_copy, "status_option": options.status_option},
            )
            if options.new_name:
                await self._rename(new_id, options.new_name, errors)
            await self._cache_adset(target_campaign_id, new_id, options)
            return DuplicationResult(
                mode="sync",
                strategy=strategy,
                source_id=source_adset_id,
                new_id=new_id,
                errors=errors,
                counts={"ads": plan.child_count},
            )

        # Before the shell copy; nothing after it may fail the request.
        account = await self._account_of(target_campaign_id)
        if not account:
            raise MetaAPIError(f"Could not resolve the ad account of campaign {target_campaign_id}")

        new_id = await self._copy(
            source_adset_id,
            {"campaign_id": target_campaign_id, "deep_copy": False, "status_option": options.status_option},
        )
        if options.new_name:
            await self._rename(new_id, options.new_name, errors)
        await self._cache_adset(target_campaign_id, new_id, options)

        ops = [
            ad_copy_operation(str(ad["id"]), adset_id=new_id, status_option=options.status_option, name=f"ad:{ad['id']}")
            for ad in ads
        ]
        submitted, chunk_errors = await self._submit_chunks(
            account,
            ops,
            chunk_size=options.chunk_size,
            phase="ads",
            kind="adset_ads",
            batch_name=f"Copy ads of {source_adset_id} -> {new_id}",
            source_id=source_adset_id,
            target_id=new_id,
        )
        errors.extend(chunk_errors)
        return DuplicationResult(
            mode="async",
            strategy=strategy,
            source_id=source_adset_id,
            new_id=new_id,
            phase_a_batch_ids=[sb.tracking_id for sb in submitted],
            errors=errors,
            counts={
                "ads": plan.child_count,
                "ads_submitted": sum(len(sb.operations) for sb in submitted),
                "chunks": len(submitted) + len(chunk_errors),
                "chunks_failed": len(chunk_errors),
            },
        )

    async def _cache_adset(self, campaign_id: str, adset_id: str, options: DuplicationOptions) -> None:
        if self.meta_cache is None:
            return
        adset = {"id": adset_id, "name": options.new_name, "status": options.status_option, "campaign_id": campaign_id}
        await self._cache(self.meta_cache.add_adset_to_campaign, campaign_id, adset)

    # -----------------------------
    # Campaign duplication
    # -----------------------------

    async def duplicate_campaign(
        self,
        source_campaign_id: str,
        target_account_id: Optional[str] = None,
        options: Optional[DuplicationOptions] = None,
    ) -> DuplicationResult:
        options = options or DuplicationOptions()
        fields = ",".join(("id", "account_id") + CAMPAIGN_COPY_FIELDS)
        try:
            source = await self.guard(self.client.get_object, source_campaign_id, fields)
        except MetaAPIError as e:
            if options.deep_copy:
                raise DuplicationStructureFetchError(
                    f"Could not read campaign {source_campaign_id}: {user_message(e)}", source_id=source_campaign_id
                ) from e
            raise

        source_account = strip_act_prefix(source.get("account_id") or "")
        target_account = strip_act_prefix(target_account_id or "") or source_account
        cross_account = bool(source_account and target_account and source_account != target_account)

        structure: List[Tuple[Dict[str, Any], List[Dict[str, Any]]]] = []
        if options.deep_copy:
            structure = await self._fetch_campaign_structure(source_campaign_id)
        adset_count = len(structure)
        ad_count = sum(len(ads) for _, ads in structure)
        plan = DuplicationPlan(
            source_id=source_campaign_id,
            target_id=target_account,
            deep_copy=options.deep_copy,
            child_count=adset_count + ad_count,
        )
        strategy = decide_campaign_strategy(plan.child_count, cross_account=cross_account)
        logger.info(
            "Duplicate campaign %s -> account %s: %s ad sets, %s ads, %s",
            source_campaign_id, target_account, adset_count, ad_count, strategy,
        )

        errors: List[Dict[str, Any]] = []
        counts = {"adsets": adset_count, "ads": ad_count}

        if strategy == SYNC_COPY:
            body: Dict[str, Any] = {"deep_copy": options.deep_copy, "status_option": options.status_option}
            if not options.new_name:
                body["rename_options"] = {"rename_strategy": "ONLY_TOP_LEVEL_RENAME", "rename_suffix": " - Copy"}
            new_id = await self._copy(source_campaign_id, body, ad_account_id=source_account or None)
            if options.new_name:
                await self._rename(new_id, options.new_name, errors)
            await self._cache_campaign(new_id, target_account, source, options)
            return DuplicationResult(
                mode="sync",
                strategy=strategy,
                source_id=source_campaign_id,
                new_id=new_id,
                errors=errors,
                counts=counts,
            )

        # Shell. Failure here fails the request.
        if cross_account:
            shell_fields = {k: source.get(k) for k in CAMPAIGN_COPY_FIELDS if source.get(k) not in (None, "", [])}
            shell_fields["name"] = options.new_name or f"{source.get('name') or source_campaign_id} - Copy"
            shell_fields["status"] = options.status_option
            shell_fields.setdefault("special_ad_categories", [])
            new_id = await self.guard(self.client.create_campaign, target_account, shell_fields, ad_account_id=target_account)
        else:
            new_id = await self._copy(
                source_campaign_id,
                {"deep_copy": False, "status_option": options.status_option},
                ad_account_id=source_account or None,
            )
            if options.new_name:
                await self._rename(new_id, options.new_name, errors)
        await self._cache_campaign(new_id, target_account, source, options)

        # Phase A: ad sets into the new campaign.
        id_mapping = plan.id_mapping
        phase_a_ops = [
            adset_copy_operation(
                str(adset["id"]),
                campaign_id=new_id,
                deep_copy=False,
                status_option=options.status_option,
                name=f"adset:{adset['id']}",
            )
            for adset, _ in structure
        ]
        phase_a, phase_a_errors = await self._submit_chunks(
            target_account,
            phase_a_ops,
            chunk_size=options.chunk_size,
            phase="adsets",
            kind="campaign_adsets",
            batch_name=f"Copy ad sets of {source_campaign_id} -> {new_id}",
            source_id=source_campaign_id,
            target_id=new_id,
        )
        errors.extend(phase_a_errors)
        for sb in phase_a:
            id_mapping.update(dict(sb.inline_ids))

        await self._sweep(phase_a, id_mapping)

        # Phase B: ads whose parent ad set has a new id.
        skipped: List[Dict[str, Any]] = []
        phase_b_ops: List[BatchOperation] = []
        for adset, ads in structure:
            parent = str(adset["id"])
            new_parent = id_mapping.get(parent)
            for ad in ads:
                if not new_parent:
                    skipped.append({"ad_id": str(ad["id"]), "adset_id": parent, "reason": "parent ad set not mapped"})
                    continue
                phase_b_ops.append(
                    ad_copy_operation(str(ad["id"]), adset_id=new_parent, status_option=options.status_option, name=f"ad:{ad['id']}")
                )

        phase_b: List[SubmittedBatch] = []
        if phase_b_ops:
            phase_b, phase_b_errors = await self._submit_chunks(
                target_account,
                phase_b_ops,
                chunk_size=options.phase_b_chunk_size,
                phase="ads",
                kind="campaign_ads",
                batch_name=f"Copy ads of {source_campaign_id} -> {new_id}",
                source_id=source_campaign_id,
                target_id=new_id,
            )
            errors.extend(phase_b_errors)

        counts.update(
            {
                "adsets_submitted": sum(len(sb.operations) for sb in phase_a),
                "adsets_mapped": len(id_mapping),
                "ads_submitted": sum(len(sb.operations) for sb in phase_b),
                "ads_skipped": len(skipped),
            }
        )
        return DuplicationResult(
            mode="async",
            strategy=strategy,
            source_id=source_campaign_id,
            new_id=new_id,
            phase_a_batch_ids=[sb.tracking_id for sb in phase_a],
            phase_b_batch_ids=[sb.tracking_id for sb in phase_b],
            errors=errors,
            skipped=skipped,
            counts=counts,
            id_mapping=dict(id_mapping),
        )

    async def _cache_campaign(self, new_id: str, account: str, source: Dict[str, Any], options: DuplicationOptions) -> None:
        if self.meta_cache is None:
            return
        campaign = {
            "id": new_id,
            "name": options.new_name or f"{source.get('name') or ''} - Copy",
            "status": options.status_option,
            "objective": source.get("objective"),
            "account_id": account,
            "adsets": {"data": []},
        }
        await self._cache(self.meta_cache.add_campaign, campaign)

    # -----------------------------
    # Bulk copy (synchronous batch)
    # -----------------------------

    async def bulk_copy_campaigns(
        self,
        campaign_ids: Sequence[str],
        target_account_id: Optional[str] = None,
        *,
        status_option: str = "PAUSED",
    ) -> Dict[str, Any]:
        ids = [str(c).strip() for c in campaign_ids if str(c).strip()]
        if not ids:
            raise ValueError("campaign_ids must not be empty")
        account = strip_act_prefix(target_account_id or "") or None

        ops = [campaign_copy_operation(cid, deep_copy=True, status_option=status_option, name=f"campaign:{cid}") for cid in ids]
        results: List[Dict[str, Any]] = []
        for i, ops_chunk in enumerate(chunk(ops, BATCH_SIZE_LIMIT)):
            if i > 0 and self.chunk_delay_s > 0:
                await self._sleep(self.chunk_delay_s)
            try:
                raw = await self.guard(self.client.execute_batch, [op.to_dict() for op in ops_chunk], ad_account_id=account)
            except CHUNK_ERRORS as e:
                msg = user_message(e)
                results.extend({"original_id": _source_of(op), "new_id": None, "success": False, "error": msg} for op in ops_chunk)
                continue
            parsed = parse_batch_response(raw, ops_chunk)
            for j, op in enumerate(ops_chunk):
                r = parsed[j] if j < len(parsed) else None
                if r is None:
                    results.append({"original_id": _source_of(op), "new_id": None, "success": False, "error": "Missing batch response"})
                    continue
                results.append(
                    {
                        "original_id": _source_of(op),
                        "new_id": r.id,
                        "success": r.success,
                        "error": r.error_message() if not r.success else None,
                    }
                )

        successful = sum(1 for r in results if r["success"])
        return {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }
