"""
Request registry: outstanding decryption requests keyed by engine-issued request id.

The registry is the single source of truth for "is this request still outstanding".
Each entry owns one asyncio future and one deadline timer. resolve / expire / cancel
all go through the same atomic take-under-lock, so for a given request id exactly one
of them succeeds and the losers get False and do nothing else.

Completion of the future is always performed on the loop that registered the entry,
so the correlator or a timer may call in from another thread.

Register hooks run right after an entry is added; the correlator uses one to hand over
a completion that was observed before its request id was known.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from backend_ivs.core.exceptions import DuplicateRequest
from backend_ivs.decryption.models import DataKind, DecryptionOutcome
from backend_ivs.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PendingRequest:
    """One outstanding request. deadline is in the owning loop's clock (loop.time())."""

    request_id: int
    subject_user_id: int
    kind: DataKind
    deadline: float
    future: asyncio.Future = field(repr=False)
    registered_at: float = field(default_factory=time.time)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def remaining(self) -> float:
        return max(0.0, self.deadline - self.future.get_loop().time())


class RequestRegistry:
    """
    Thread-safe map of request_id -> PendingRequest with first-writer-wins completion.

    Usage (inside a running loop):
        entry = registry.register(rid, subject_user_id=7, kind=DataKind.SCORE, timeout=180)
        outcome = await entry.future
    """

    def __init__(self) -> None:
        self._entries: dict[int, PendingRequest] = {}
        self._lock = threading.Lock()
        self._register_hooks: list[Callable[[PendingRequest], Any]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._entries

    def get(self, request_id: int) -> PendingRequest | None:
        """Return the pending entry, or None if unknown or already terminal."""
        with self._lock:
            return self._entries.get(request_id)

    def pending_ids(self) -> list[int]:
        with self._lock:
            return list(self._entries)

    def __iter__(self) -> Iterator[PendingRequest]:
        with self._lock:
            return iter(list(self._entries.values()))

    def register(
        self,
        request_id: int,
        subject_user_id: int,
        kind: DataKind,
        timeout: float,
    ) -> PendingRequest:
        """
        Register a request and arm its deadline on the running loop.

        Raises:
            DuplicateRequest: an entry for request_id is still pending.
            ValueError: timeout is not positive.
            RuntimeError: called outside a running event loop.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            request_id=request_id,
            subject_user_id=subject_user_id,
            kind=kind,
            deadline=loop.time() + timeout,
            future=loop.create_future(),
        )
        with self._lock:
            if request_id in self._entries:
                raise DuplicateRequest(f"request {request_id} is already pending")
            self._entries[request_id] = entry
            entry.timer = loop.call_later(timeout, self.expire, request_id)
        logger.debug(
            "registry_registered",
            request_id=request_id,
            subject_user_id=subject_user_id,
            kind=kind.value,
            timeout_sec=timeout,
        )
        for hook in list(self._register_hooks):
            try:
                hook(entry)
            except Exception as e:
                logger.exception(
                    "registry_register_hook_failed", request_id=request_id, error=str(e)
                )
        return entry

    def add_register_hook(self, hook: Callable[[PendingRequest], Any]) -> None:
        """Call hook(entry) on the registering loop right after each successful register()."""
        self._register_hooks.append(hook)

    def remove_register_hook(self, hook: Callable[[PendingRequest], Any]) -> None:
        if hook in self._register_hooks:
            self._register_hooks.remove(hook)

    def resolve(self, request_id: int, outcome: DecryptionOutcome) -> bool:
        """
        Complete a pending request with outcome.

        Returns False (and does nothing) if request_id is unknown, already resolved,
        expired or cancelled. Duplicate deliveries are expected and not an error.
        """
        entry = self._take(request_id)
        if entry is None:
            logger.debug("registry_resolve_ignored", request_id=request_id)
            return False
        self._complete(entry, outcome)
        logger.debug("registry_resolved", request_id=request_id, status=outcome.status.value)
        return True

    def expire(self, request_id: int) -> bool:
        """Remove a still-pending request and complete it with TIMEOUT."""
        entry = self._take(request_id)
        if entry is None:
            return False
        self._complete(
            entry,
            DecryptionOutcome.timeout(request_id, entry.subject_user_id, entry.kind),
        )
        logger.warning(
            "registry_expired",
            request_id=request_id,
            subject_user_id=entry.subject_user_id,
            kind=entry.kind.value,
        )
        return True

    def cancel(self, request_id: int) -> bool:
        """Remove a still-pending request and complete it with CANCELLED."""
        entry = self._take(request_id)
        if entry is None:
            return False
        self._complete(
            entry,
            DecryptionOutcome.cancelled(entry.subject_user_id, entry.kind, request_id),
        )
        logger.info("registry_cancelled", request_id=request_id)
        return True

    def cancel_all(self) -> int:
        """Cancel every pending request (shutdown). Returns how many were cancelled."""
        return sum(1 for rid in self.pending_ids() if self.cancel(rid))

    def _take(self, request_id: int) -> PendingRequest | None:
        with self._lock:
            return self._entries.pop(request_id, None)

    @staticmethod
    def _complete(entry: PendingRequest, outcome: DecryptionOutcome) -> None:
        loop = entry.future.get_loop()

        def _finish() -> None:
            if entry.timer is not None:
                entry.timer.cancel()
            # Awaiting task may have been cancelled, which cancels the future too.
            if not entry.future.done():
                entry.future.set_result(outcome)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _finish()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(_finish)
