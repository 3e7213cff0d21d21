"""context.py

Process-wide wiring. One AppContext per process holds every long-lived
collaborator (stores, Graph client, breakers, rate tracker, upload sessions,
the cache-refresh single-flight) and is passed by reference.

Environment variables
---------------------
Meta (see meta_client.MetaConfig):
- META_ACCESS_TOKEN or META_TOKEN_SOURCE=db (+ DATABASE_URL, META_TOKEN_USER_ID)
- META_AD_ACCOUNT_ID, META_API_VERSION (default v24.0), META_APP_SECRET

Storage:
- DATA_DIR (default: ./data)
- UPLOAD_DIR (default: <DATA_DIR>/uploads)
- LIBRARY_DIR (default: <DATA_DIR>/creative-library)
- CREATIVE_DB_PATH (default: <DATA_DIR>/creatives.db; ignored if CREATIVE_STORE_SOURCE=db)
- CREATIVE_STORE_SOURCE ("db" to keep creatives in Postgres via DATABASE_URL)
- BATCH_JOB_DB_PATH (default: <DATA_DIR>/batch_jobs.db)
- META_CACHE_DB_PATH (default: <DATA_DIR>/meta_cache.db)

Tuning:
- UPLOAD_GROUP_SIZE (default 3), SESSION_GRACE_S (default 60)
- PHASE_A_WAIT_S (default 20), CHUNK_DELAY_S (default 1)

Integrations:
- GOOGLE_DRIVE_ACCESS_TOKEN
- TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID (circuit breaker alerts)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv

from batch_job_store import BatchJobStore
from circuit_breaker import CircuitBreakerRegistry, GuardedCaller, build_notifier
from creative_store import build_creative_store
from drive_source import DriveSource
from duplication import Duplicator
from meta_cache import MetaCache
from meta_client import MetaClient, MetaConfig
from rate_limit import RateLimitTracker
from reconcile import Reconciler
from upload_gateway import UploadGateway
from upload_sessions import SessionRegistry, SingleFlight
from uploads import UploadPipeline

logger = logging.getLogger(__name__)


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _get_int_env(name: str, default: int) -> int:
    v = _env(name)
    if not v:
        return int(default)
    try:
        return int(v)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, v)
        return int(default)


def _get_float_env(name: str, default: float) -> float:
    v = _env(name)
    if not v:
        return float(default)
    try:
        return float(v)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, v)
        return float(default)


@dataclass(frozen=True)
class ServiceSettings:
    data_dir: str = "data"
    upload_dir: str = "data/uploads"
    library_dir: str = "data/creative-library"
    creative_db_path: str = "data/creatives.db"
    batch_job_db_path: str = "data/batch_jobs.db"
    meta_cache_db_path: str = "data/meta_cache.db"
    upload_group_size: int = 3
    session_grace_s: float = 60.0
    phase_a_wait_s: float = 20.0
    chunk_delay_s: float = 1.0
    google_drive_access_token: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @staticmethod
    def from_env() -> "ServiceSettings":
        load_dotenv(override=False)
        data_dir = _env("DATA_DIR", "data") or "data"
        return ServiceSettings(
            data_dir=data_dir,
            upload_dir=_env("UPLOAD_DIR") or os.path.join(data_dir, "uploads"),
            library_dir=_env("LIBRARY_DIR") or os.path.join(data_dir, "creative-library"),
            creative_db_path=_env("CREATIVE_DB_PATH") or os.path.join(data_dir, "creatives.db"),
            batch_job_db_path=_env("BATCH_JOB_DB_PATH") or os.path.join(data_dir, "batch_jobs.db"),
            meta_cache_db_path=_env("META_CACHE_DB_PATH") or os.path.join(data_dir, "meta_cache.db"),
            upload_group_size=max(1, _get_int_env("UPLOAD_GROUP_SIZE", 3)),
            session_grace_s=_get_float_env("SESSION_GRACE_S", 60.0),
            phase_a_wait_s=_get_float_env("PHASE_A_WAIT_S", 20.0),
            chunk_delay_s=_get_float_env("CHUNK_DELAY_S", 1.0),
            google_drive_access_token=_env("GOOGLE_DRIVE_ACCESS_TOKEN") or None,
            telegram_bot_token=_env("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=_env("TELEGRAM_CHAT_ID") or None,
        )


class AppContext:
    def __init__(
        self,
        cfg: MetaConfig,
        settings: ServiceSettings,
        *,
        client: Any = None,
        store: Any = None,
        rate_tracker: Optional[RateLimitTracker] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        gateway: Any = None,
    ):
        self.cfg = cfg
        self.settings = settings
        os.makedirs(settings.upload_dir, exist_ok=True)

        self.rate_tracker = rate_tracker or RateLimitTracker()
        self.breakers = breakers or CircuitBreakerRegistry(
            build_notifier(settings.telegram_bot_token, settings.telegram_chat_id)
        )
        self.client = client or MetaClient(cfg, rate_tracker=self.rate_tracker)
        self.facebook = GuardedCaller(self.breakers.facebook, self.rate_tracker)
        self.google = GuardedCaller(self.breakers.google)

        self.store = store or build_creative_store(settings.creative_db_path, settings.library_dir)
        self.reconciler = Reconciler(self.store)
        self.gateway = gateway or UploadGateway(self.client, self.facebook)
        self.pipeline = UploadPipeline(self.reconciler, self.gateway, group_size=settings.upload_group_size)

        self.job_store = BatchJobStore(settings.batch_job_db_path)
        self.meta_cache = MetaCache(settings.meta_cache_db_path)
        self.duplicator = Duplicator(
            self.client,
            self.facebook,
            job_store=self.job_store,
            meta_cache=self.meta_cache,
            chunk_delay_s=settings.chunk_delay_s,
            phase_a_wait_s=settings.phase_a_wait_s,
        )

        self.sessions = SessionRegistry(grace_s=settings.session_grace_s)
        self.cache_refresh = SingleFlight()

    @classmethod
    def from_env(cls) -> "AppContext":
        return cls(MetaConfig.from_env(), ServiceSettings.from_env())

    def drive(self) -> DriveSource:
        return DriveSource(self.settings.google_drive_access_token or "")

    @property
    def access_token(self) -> str:
        return self.cfg.access_token
