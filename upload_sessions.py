"""upload_sessions.py

In-memory upload sessions and progress fan-out.

A session lives as long as someone listens to it or it is still reporting.
An unwatched session (the last subscriber left, or nobody ever subscribed)
is dropped once it has completed or gone quiet for the grace period
(SESSION_GRACE_S, default 60s), unless a subscriber comes back first. Sessions are per process;
a multi-instance deployment needs sticky routing or an external store.

Events: session-start, file-start, file-progress, file-complete, file-error,
session-complete.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

DEFAULT_GRACE_S = 60.0
KEEPALIVE_S = 30.0


class ProgressSink:
    """Receives (event, data) pairs. The SSE route drains it with events()."""

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def send(self, event: str, data: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((event, data))
        except asyncio.QueueFull:
            logger.warning("Progress sink full; dropping %s event", event)

    async def events(self, *, keepalive_s: float = KEEPALIVE_S) -> AsyncIterator[Optional[Tuple[str, Dict[str, Any]]]]:
        """Yields (event, data), or None when keepalive_s passes with nothing to send."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield None
                continue
            yield item

    def pending(self) -> List[Tuple[str, Dict[str, Any]]]:
        out = []
        while not self._queue.empty():
            out.append(self._queue.get_nowait())
        return out


@dataclass(eq=False)
class UploadSession:
    session_id: str
    total_files: int = 0
    processed_files: int = 0
    current_file: Optional[str] = None
    subscribers: Set[ProgressSink] = field(default_factory=set)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    completed: bool = False
    last_event_at: float = field(default_factory=time.monotonic)

    def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.last_event_at = time.monotonic()
        payload = {"session_id": self.session_id, **(data or {})}
        for sink in list(self.subscribers):
            sink.send(event, payload)

    def start(self, total_files: int) -> None:
        self.total_files = max(self.total_files, int(total_files))
        self.emit("session-start", {"total_files": self.total_files})

    def file_started(self, file_name: str) -> None:
        self.current_file = file_name
        self.emit("file-start", {"file": file_name, "processed_files": self.processed_files, "total_files": self.total_files})

    def file_progress(self, file_name: str, stage: str, progress: int) -> None:
        self.emit("file-progress", {"file": file_name, "stage": stage, "progress": int(progress)})

    def file_completed(self, file_name: str, result: Dict[str, Any]) -> None:
        self.processed_files += 1
        self.emit(
            "file-complete",
            {"file": file_name, "result": result, "processed_files": self.processed_files, "total_files": self.total_files},
        )

    def file_failed(self, file_name: str, error: str) -> None:
        self.processed_files += 1
        self.errors.append({"file": file_name, "error": error})
        self.emit(
            "file-error",
            {"file": file_name, "error": error, "processed_files": self.processed_files, "total_files": self.total_files},
        )

    def complete(self, summary: Optional[Dict[str, Any]] = None) -> None:
        self.current_file = None
        self.completed = True
        self.emit("session-complete", {"processed_files": self.processed_files, "errors": list(self.errors), **(summary or {})})

    def progress_fn(self, file_name: str) -> Callable[[str, int], Awaitable[None]]:
        async def report(stage: str, progress: int) -> None:
            self.file_progress(file_name, stage, progress)

        return report

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "current_file": self.current_file,
            "subscribers": len(self.subscribers),
            "errors": list(self.errors),
            "completed": self.completed,
            "created_at": self.created_at,
        }


class SessionRegistry:
    def __init__(self, *, grace_s: float = DEFAULT_GRACE_S):
        self.grace_s = float(grace_s)
        self._sessions: Dict[str, UploadSession] = {}
        self._gc: Dict[str, asyncio.TimerHandle] = {}

    def create(self, *, total_files: int = 0, session_id: Optional[str] = None) -> UploadSession:
        sid = session_id or uuid.uuid4().hex
        session = self._sessions.get(sid)
        if session is None:
            session = UploadSession(session_id=sid, total_files=int(total_files))
            self._sessions[sid] = session
            self._schedule_gc(sid)
        return session

    def get(self, session_id: Optional[str]) -> Optional[UploadSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def subscribe(self, session_id: str) -> Tuple[UploadSession, ProgressSink]:
        session = self.create(session_id=session_id)
        self._cancel_gc(session_id)
        sink = ProgressSink()
        session.subscribers.add(sink)
        return session, sink

    def unsubscribe(self, session_id: str, sink: ProgressSink) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.subscribers.discard(sink)
        if not session.subscribers:
            self._schedule_gc(session_id)

    def _schedule_gc(self, session_id: str, delay: Optional[float] = None) -> None:
        if session_id in self._gc:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop (CLI); the next unsubscribe schedules it.
            return
        self._gc[session_id] = loop.call_later(self.grace_s if delay is None else delay, self._collect, session_id)

    def _cancel_gc(self, session_id: str) -> None:
        handle = self._gc.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _collect(self, session_id: str) -> None:
        """Drops an unwatched session once it is complete or has been quiet for grace_s."""
        self._gc.pop(session_id, None)
        session = self._sessions.get(session_id)
        if session is None or session.subscribers:
            return
        idle = time.monotonic() - session.last_event_at
        if not session.completed and idle < self.grace_s:
            self._schedule_gc(session_id, delay=self.grace_s - idle)
            return
        del self._sessions[session_id]
        logger.info("Upload session %s collected", session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions


class SingleFlight:
    """At most one run of an operation at a time; callers during a run join it."""

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, fn: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Returns (result, started_here)."""
        if self.running:
            return await asyncio.shield(self._task), False  # type: ignore[arg-type]
        self._task = asyncio.create_task(fn())
        return await asyncio.shield(self._task), True

    def start(self, fn: Callable[[], Awaitable[Any]]) -> bool:
        """Fire-and-forget variant. False if a run is already in flight."""
        if self.running:
            return False
        self._task = asyncio.create_task(fn())
        self._task.add_done_callback(_log_task_error)
        return True


def _log_task_error(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background refresh failed: %s", exc)
