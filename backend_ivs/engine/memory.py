"""
In-memory engine and relayer for local simulation and tests.

InMemoryEngine keeps the contact graph and health flags in the clear, computes scores
with the same model the encrypted contract uses, and plays the relayer: each accepted
decryption request produces a DecryptionCompleted record on every open subscription
after a configurable latency. Relayer faults (dropped or duplicated deliveries) can be
switched on to exercise timeout and idempotency paths.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
from typing import Any, AsyncIterator, Callable, Iterable

from backend_ivs.analysis_engine.score_model import (
    DEFAULT_MAX_DEPTH,
    ContactGraph,
    compute_scores,
    to_scaled,
)
from backend_ivs.core.exceptions import SubmissionRejected
from backend_ivs.decryption.models import CompletionNotification, DataKind, NotificationRecord
from backend_ivs.engine.base import ZERO_HANDLE
from backend_ivs.logging import get_logger

logger = get_logger(__name__)

ADMIN = "admin"

_CLOSED = object()


class QueueSubscription:
    """Push-based subscription backed by an asyncio.Queue; iteration ends after close()."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, record: NotificationRecord) -> None:
        if not self._closed:
            self._queue.put_nowait(record)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[NotificationRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[NotificationRecord]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class ReplaySubscription:
    """Finite, ordered subscription over a fixed list of records (tests, replays)."""

    def __init__(self, records: Iterable[NotificationRecord], *, interval_sec: float = 0.0) -> None:
        self._records = list(records)
        self._interval = interval_sec
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    def __aiter__(self) -> AsyncIterator[NotificationRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[NotificationRecord]:
        for record in self._records:
            if self._closed:
                return
            if self._interval:
                await asyncio.sleep(self._interval)
            yield record


class InMemoryEngine:
    """
    Clear-text stand-in for the IVS contract plus relayer.

    Args:
        latency_sec: Relayer delay per request; a float or callable(request_id) -> float.
        caller: Identity used for admin-only calls (decryption requests).
        first_request_id: First request id issued.
    """

    def __init__(
        self,
        *,
        latency_sec: float | Callable[[int], float] = 0.0,
        caller: str = ADMIN,
        first_request_id: int = 1,
    ) -> None:
        self.graph = ContactGraph()
        self.health: dict[int, int] = {}
        self.scores: dict[int, int] = {}
        self.caller = caller
        self.latency_sec = latency_sec
        self.drop_deliveries = False
        self.duplicate_deliveries = False
        # undelivered requests: request_id -> (subject_user_id, kind)
        self.requests: dict[int, tuple[int, DataKind]] = {}
        self._ids = itertools.count(first_request_id)
        self._subscriptions: list[QueueSubscription] = []
        self._pending_timers: dict[int, asyncio.TimerHandle] = {}

    # -- graph administration (clear-text equivalents of the contract calls) --

    def register_user(self, user_id: int) -> None:
        if not self.graph.add_user(user_id):
            raise SubmissionRejected(f"UserAlreadyRegistered({user_id})", reason="duplicate")

    def add_contact(self, a: int, b: int) -> None:
        for u in (a, b):
            if u not in self.graph:
                raise SubmissionRejected(f"UserNotRegistered({u})", reason="unknown_subject")
        self.graph.add_contact(a, b)

    def set_health_status(self, user_id: int, status: int) -> None:
        if status not in (0, 1):
            raise ValueError("status must be 0 (healthy) or 1 (infected)")
        if user_id not in self.graph:
            raise SubmissionRejected(f"UserNotRegistered({user_id})", reason="unknown_subject")
        self.health[user_id] = status

    def compute_ivs(
        self, d_max: int = DEFAULT_MAX_DEPTH, *, infected_self_score: float | None = None
    ) -> dict[int, int]:
        """Recompute every score from scratch and store the scaled integers."""
        if self.caller != ADMIN:
            raise SubmissionRejected("OnlyAdmin()", reason="unauthorized")
        infected = [u for u, s in self.health.items() if s == 1]
        scores = compute_scores(
            self.graph, infected, d_max, infected_self_score=infected_self_score
        )
        self.scores = {u: to_scaled(s) for u, s in scores.items()}
        logger.info("memory_engine_computed", d_max=d_max, user_count=len(self.scores))
        return dict(self.scores)

    # -- DecryptionEngine --

    async def submit_decryption_request(self, subject_user_id: int, kind: DataKind) -> int:
        if self.caller != ADMIN:
            raise SubmissionRejected("OnlyAdmin()", reason="unauthorized")
        if subject_user_id not in self.graph:
            raise SubmissionRejected(
                f"UserNotRegistered({subject_user_id})", reason="unknown_subject"
            )
        rid = next(self._ids)
        self.requests[rid] = (subject_user_id, kind)
        await asyncio.sleep(0)  # transaction confirmation
        if not self.drop_deliveries:
            delay = self.latency_sec(rid) if callable(self.latency_sec) else self.latency_sec
            loop = asyncio.get_running_loop()
            self._pending_timers[rid] = loop.call_later(delay, self._deliver_request, rid)
        logger.debug(
            "memory_engine_request",
            request_id=rid,
            subject_user_id=subject_user_id,
            kind=kind.value,
        )
        return rid

    async def get_all_users(self) -> list[int]:
        return self.graph.users

    async def get_ciphertext_handle(self, subject_user_id: int, kind: DataKind) -> str:
        value = self._stored_value(subject_user_id, kind)
        if value is None:
            return ZERO_HANDLE
        digest = hashlib.sha256(f"{subject_user_id}:{kind.value}:{value}".encode()).hexdigest()
        return "0x" + digest

    # -- relayer --

    def subscribe(self) -> QueueSubscription:
        sub = QueueSubscription()
        self._subscriptions.append(sub)
        return sub

    def notification_for(self, request_id: int) -> CompletionNotification:
        subject, kind = self.requests[request_id]
        raw = self._stored_value(subject, kind) or 0
        return CompletionNotification(
            request_id=request_id,
            subject_user_id=subject,
            raw_value=raw,
            kind=kind,
            scaled_value=raw,
        )

    def publish(self, record: NotificationRecord) -> None:
        """Broadcast a record to all open subscriptions."""
        self._subscriptions = [s for s in self._subscriptions if not s.closed]
        for sub in self._subscriptions:
            sub.push(record)

    def shutdown(self) -> None:
        """Cancel relayer deliveries that have not fired yet."""
        for timer in self._pending_timers.values():
            timer.cancel()
        self._pending_timers.clear()

    @property
    def pending_deliveries(self) -> int:
        """Relayer deliveries scheduled but not fired yet."""
        return len(self._pending_timers)

    def _deliver_request(self, request_id: int) -> None:
        notification = self.notification_for(request_id)
        del self.requests[request_id]
        del self._pending_timers[request_id]
        self.publish(notification)
        if self.duplicate_deliveries:
            self.publish(notification)

    def _stored_value(self, subject_user_id: int, kind: DataKind) -> Any:
        if kind is DataKind.HEALTH_STATUS:
            return self.health.get(subject_user_id)
        return self.scores.get(subject_user_id)
