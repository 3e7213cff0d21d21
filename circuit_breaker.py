"""circuit_breaker.py

Per-dependency circuit breakers.

CLOSED    -> calls pass; consecutive failures are counted
OPEN      -> calls fail fast with CircuitOpenError until the cooldown expires
HALF_OPEN -> exactly one trial call; success closes, failure re-opens

Two breakers exist per process ("Facebook API", "Google Drive API"). Opening
the Facebook one sends a Telegram alert when TELEGRAM_BOT_TOKEN is set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import requests

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_S = 60.0

FACEBOOK_API = "Facebook API"
GOOGLE_DRIVE_API = "Google Drive API"


class CircuitOpenError(RuntimeError):
    def __init__(self, message: str, *, service: str, retry_in_s: float | None = None):
        super().__init__(message)
        self.service = service
        self.retry_in_s = retry_in_s


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        call_timeout_s: Optional[float] = None,
        on_open: Optional[Callable[["CircuitBreaker", BaseException], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = int(failure_threshold)
        self.cooldown_s = float(cooldown_s)
        self.call_timeout_s = call_timeout_s
        self.on_open = on_open
        self._clock = clock

        self._state = CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.pending_alerts: Set[asyncio.Task] = set()

    @property
    def state(self) -> str:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.cooldown_s - self._clock())

    def _admit(self) -> None:
        # Runs without awaiting, so the check-and-set is atomic on the event loop.
        if self._state == OPEN:
            if self._retry_in() > 0:
                raise CircuitOpenError(
                    f"Circuit breaker for {self.name} is OPEN. Service temporarily unavailable.",
                    service=self.name,
                    retry_in_s=self._retry_in(),
                )
            logger.info("Circuit breaker %s: OPEN -> HALF_OPEN", self.name)
            self._state = HALF_OPEN
            self._trial_in_flight = False

        if self._state == HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker for {self.name} is HALF_OPEN and a trial call is in flight.",
                    service=self.name,
                )
            self._trial_in_flight = True

    async def call(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await fn(*args, **kwargs) through the breaker."""
        self._admit()
        try:
            if self.call_timeout_s:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.call_timeout_s)
            else:
                result = await fn(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._state != CLOSED:
            logger.info("Circuit breaker %s: %s -> CLOSED", self.name, self._state)
        self._state = CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _record_failure(self, exc: BaseException) -> None:
        self._failure_count += 1
        was_trial = self._state == HALF_OPEN
        self._trial_in_flight = False
        if was_trial or self._failure_count >= self.failure_threshold:
            self._state = OPEN
            self._opened_at = self._clock()
            logger.error(
                "Circuit breaker %s OPEN after %s failure(s); cooling down %.0fs. Last error: %s",
                self.name,
                self._failure_count,
                self.cooldown_s,
                exc,
            )
            if self.on_open is not None:
                self._send_alert(exc)

    def _send_alert(self, exc: BaseException) -> None:
        """Runs on_open off the event loop; the tripping caller does not wait for it."""
        task = asyncio.create_task(asyncio.to_thread(self.on_open, self, exc))
        self.pending_alerts.add(task)
        task.add_done_callback(self._alert_done)

    def _alert_done(self, task: asyncio.Task) -> None:
        self.pending_alerts.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Circuit breaker %s open alert failed: %s", self.name, exc)

    def reset(self) -> None:
        self._state = CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_in_s": round(self._retry_in(), 1) if self._state == OPEN else 0,
        }


# -----------------------------
# Alerts
# -----------------------------

class TelegramNotifier:
    def __init__(self, bot_token: str, chat_id: str, *, timeout_s: int = 10):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_s = timeout_s
        self.session = requests.Session()

    def send(self, text: str) -> bool:
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            resp = self.session.post(url, json={"chat_id": self.chat_id, "text": text}, timeout=self.timeout_s)
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning("Telegram alert failed: %s", e)
            return False

    def circuit_opened(self, breaker: CircuitBreaker, exc: BaseException) -> None:
        self.send(
            f"Circuit breaker OPEN: {breaker.name} failed {breaker.failure_count} times. "
            f"Cooling down {int(breaker.cooldown_s)}s. Last error: {exc}"
        )


# -----------------------------
# Registry
# -----------------------------

class CircuitBreakerRegistry:
    def __init__(self, notifier: Optional[TelegramNotifier] = None, *, cooldown_s: float = DEFAULT_COOLDOWN_S):
        self.facebook = CircuitBreaker(
            FACEBOOK_API,
            cooldown_s=cooldown_s,
            on_open=notifier.circuit_opened if notifier else None,
        )
        self.google = CircuitBreaker(GOOGLE_DRIVE_API, cooldown_s=cooldown_s)

    def all(self) -> Dict[str, CircuitBreaker]:
        return {"facebook": self.facebook, "google": self.google}

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        return {key: b.snapshot() for key, b in self.all().items()}

    def reset_all(self) -> None:
        for b in self.all().values():
            b.reset()
        logger.info("All circuit breakers reset")


def build_notifier(bot_token: Optional[str], chat_id: Optional[str]) -> Optional[TelegramNotifier]:
    if not bot_token or not chat_id:
        return None
    return TelegramNotifier(bot_token, chat_id)


# -----------------------------
# Guarded blocking calls
# -----------------------------

class GuardedCaller:
    """Runs blocking Graph client calls in a worker thread, behind a breaker.

    When a rate tracker is given and the call targets an ad account, the
    tracker's recommended delay is awaited first.
    """

    def __init__(self, breaker: CircuitBreaker, rate_tracker: Any = None):
        self.breaker = breaker
        self.rate_tracker = rate_tracker

    async def __call__(self, fn: Callable[..., Any], *args: Any, ad_account_id: Optional[str] = None, **kwargs: Any) -> Any:
        if self.rate_tracker is not None and ad_account_id:
            await self.rate_tracker.enforce(ad_account_id)
        return await self.breaker.call(asyncio.to_thread, fn, *args, **kwargs)
