"""
Decryption sessions: submit one request, register it, await correlation.

State machine:
    IDLE -> SUBMITTED -> AWAITING_NOTIFICATION -> RESOLVED | TIMED_OUT | CANCELLED
    IDLE -> SUBMISSION_FAILED

A session's only long-lived suspension is the registry future; the registry's timer
and the correlator complete it, so there is no per-session listener to tear down.

DecryptionService is the caller-facing facade: request_and_await() returns a
DecryptionOutcome, request() returns a cancellable DecryptionHandle.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Generator, Iterable

from backend_ivs.config.settings import DEFAULT_DECRYPT_TIMEOUT_SEC
from backend_ivs.core.exceptions import DuplicateRequest, EngineUnavailable, SubmissionRejected
from backend_ivs.decryption.models import DataKind, DecryptionOutcome, DecryptionStatus
from backend_ivs.decryption.registry import PendingRequest, RequestRegistry
from backend_ivs.engine.base import DecryptionEngine, is_zero_handle
from backend_ivs.logging import bind_request, get_logger

logger = get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    AWAITING_NOTIFICATION = "awaiting_notification"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SUBMISSION_FAILED = "submission_failed"


_TERMINAL_STATE: dict[DecryptionStatus, SessionState] = {
    DecryptionStatus.SUCCESS: SessionState.RESOLVED,
    DecryptionStatus.TIMEOUT: SessionState.TIMED_OUT,
    DecryptionStatus.CANCELLED: SessionState.CANCELLED,
    DecryptionStatus.ENGINE_ERROR: SessionState.SUBMISSION_FAILED,
}


class DecryptionSession:
    """
    One decryption request for (subject_user_id, kind).

    Args:
        engine: Issues the request and returns the request id.
        registry: Shared RequestRegistry the correlator resolves into.
        subject_user_id: User whose field is decrypted.
        kind: SCORE or HEALTH_STATUS.
        timeout: Seconds to wait for the DecryptionCompleted event after submission.
    """

    def __init__(
        self,
        engine: DecryptionEngine,
        registry: RequestRegistry,
        subject_user_id: int,
        kind: DataKind,
        *,
        timeout: float = DEFAULT_DECRYPT_TIMEOUT_SEC,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._engine = engine
        self._registry = registry
        self.subject_user_id = subject_user_id
        self.kind = kind
        self.timeout = timeout
        self.state = SessionState.IDLE
        self.request_id: int | None = None
        self.outcome: DecryptionOutcome | None = None
        self._entry: PendingRequest | None = None
        self._log = logger.bind(subject_user_id=subject_user_id, kind=kind.value)

    def __repr__(self) -> str:
        return (
            f"DecryptionSession(subject_user_id={self.subject_user_id}, kind={self.kind.value}, "
            f"state={self.state.value}, request_id={self.request_id})"
        )

    async def submit(self) -> int | None:
        """
        Submit the request and register it. Returns the request id, or None if the engine
        refused (the session is then terminal with an ENGINE_ERROR outcome; no retry).
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"submit() called in state {self.state.value}")
        try:
            rid = await self._engine.submit_decryption_request(self.subject_user_id, self.kind)
        except (SubmissionRejected, EngineUnavailable) as e:
            reason = getattr(e, "reason", "unavailable")
            self._log.error("session_submission_failed", reason=reason, error=str(e))
            self._finish(DecryptionOutcome.engine_error(self.subject_user_id, self.kind, str(e)))
            return None
        except asyncio.CancelledError:
            self._finish(DecryptionOutcome.cancelled(self.subject_user_id, self.kind))
            raise

        self.request_id = rid
        self.state = SessionState.SUBMITTED
        self._log = bind_request(rid, self.subject_user_id, __name__).bind(kind=self.kind.value)
        try:
            self._entry = self._registry.register(rid, self.subject_user_id, self.kind, self.timeout)
        except DuplicateRequest as e:
            self._log.error("session_duplicate_request_id", error=str(e))
            self._finish(
                DecryptionOutcome.engine_error(self.subject_user_id, self.kind, str(e), request_id=rid)
            )
            return None
        self.state = SessionState.AWAITING_NOTIFICATION
        self._log.info("session_awaiting_notification", timeout_sec=self.timeout)
        return rid

    async def wait(self) -> DecryptionOutcome:
        """
        Suspend until the request is resolved, expires or is cancelled.

        If the awaiting task itself is cancelled, the registry entry is released so a
        late notification cannot resurrect it, and CancelledError propagates.
        """
        if self.outcome is not None:
            return self.outcome
        if self._entry is None:
            raise RuntimeError("wait() called before a successful submit()")
        try:
            outcome = await self._entry.future
        except asyncio.CancelledError:
            self._registry.cancel(self._entry.request_id)
            self._finish(
                DecryptionOutcome.cancelled(self.subject_user_id, self.kind, self.request_id)
            )
            raise
        self._finish(outcome)
        return outcome

    async def run(self) -> DecryptionOutcome:
        """submit() then wait()."""
        await self.submit()
        return await self.wait()

    def cancel(self) -> bool:
        """
        Cancel while awaiting the notification. Returns True if the cancel won the race
        against an arriving notification or the deadline.
        """
        if self.state is not SessionState.AWAITING_NOTIFICATION or self.request_id is None:
            return False
        return self._registry.cancel(self.request_id)

    def _finish(self, outcome: DecryptionOutcome) -> None:
        if self.outcome is not None:
            return
        self.outcome = outcome
        self.state = _TERMINAL_STATE[outcome.status]
        log = self._log.info if outcome.ok else self._log.warning
        log(
            "session_finished",
            status=outcome.status.value,
            label=outcome.rendered.label if outcome.rendered else None,
        )


class DecryptionHandle:
    """
    Fire-and-forget handle: awaitable, cancellable, with completion callbacks.

        handle = service.request(7, DataKind.SCORE)
        handle.add_done_callback(lambda outcome: print(outcome.status))
        ...
        outcome = await handle
    """

    def __init__(self, session: DecryptionSession) -> None:
        self.session = session
        self._cancel_requested = False
        self._task = asyncio.create_task(
            session.run(),
            name=f"ivs-decrypt-{session.kind.value}-{session.subject_user_id}",
        )

    @property
    def request_id(self) -> int | None:
        return self.session.request_id

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        """Cancel the request. Returns False if it already reached a terminal outcome."""
        if self.session.cancel():
            return True
        if self._task.done():
            return False
        # Still submitting: the engine call is abandoned and nothing gets registered.
        self._cancel_requested = True
        return self._task.cancel()

    async def outcome(self) -> DecryptionOutcome:
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            return self.session.outcome or DecryptionOutcome.cancelled(
                self.session.subject_user_id, self.session.kind, self.session.request_id
            )

    def __await__(self) -> Generator[Any, None, DecryptionOutcome]:
        return self.outcome().__await__()

    def add_done_callback(self, fn: Callable[[DecryptionOutcome], Any]) -> None:
        """Call fn(outcome) once the session is terminal."""

        def _on_done(task: asyncio.Task) -> None:
            if task.cancelled():
                outcome = self.session.outcome or DecryptionOutcome.cancelled(
                    self.session.subject_user_id, self.session.kind, self.session.request_id
                )
            elif task.exception() is not None:
                logger.error("handle_task_failed", error=str(task.exception()))
                return
            else:
                outcome = task.result()
            try:
                fn(outcome)
            except Exception as e:
                logger.exception("handle_callback_failed", error=str(e))

        self._task.add_done_callback(_on_done)


class DecryptionService:
    """
    Caller-facing entry point. Sessions share one registry; a running EventCorrelator
    on the same registry is required for anything other than TIMEOUT to happen.
    """

    def __init__(
        self,
        engine: DecryptionEngine,
        registry: RequestRegistry | None = None,
        *,
        default_timeout: float = DEFAULT_DECRYPT_TIMEOUT_SEC,
    ) -> None:
        self.engine = engine
        self.registry = registry if registry is not None else RequestRegistry()
        self.default_timeout = default_timeout

    def open_session(
        self, subject_user_id: int, kind: DataKind, timeout: float | None = None
    ) -> DecryptionSession:
        return DecryptionSession(
            self.engine,
            self.registry,
            subject_user_id,
            kind,
            timeout=timeout if timeout is not None else self.default_timeout,
        )

    async def request_and_await(
        self, subject_user_id: int, kind: DataKind, timeout: float | None = None
    ) -> DecryptionOutcome:
        """Submit and wait; returns SUCCESS, TIMEOUT or ENGINE_ERROR (never raises for those)."""
        return await self.open_session(subject_user_id, kind, timeout).run()

    def request(
        self, subject_user_id: int, kind: DataKind, timeout: float | None = None
    ) -> DecryptionHandle:
        """Start a session in the background and return its handle. Needs a running loop."""
        return DecryptionHandle(self.open_session(subject_user_id, kind, timeout))

    async def has_ciphertext(self, subject_user_id: int, kind: DataKind) -> bool:
        """True if the subject's field holds a non-zero handle (something to decrypt)."""
        handle = await self.engine.get_ciphertext_handle(subject_user_id, kind)
        return not is_zero_handle(handle)

    async def decrypt_all(
        self,
        kinds: Iterable[DataKind] = (DataKind.HEALTH_STATUS, DataKind.SCORE),
        timeout: float | None = None,
    ) -> dict[int, dict[DataKind, DecryptionOutcome | None]]:
        """
        Decrypt every registered user's fields concurrently.

        Fields with a zero ciphertext handle are skipped and reported as None. Per-user
        query failures become ENGINE_ERROR outcomes; one failure never aborts the batch.
        """
        kinds = tuple(kinds)
        users = await self.engine.get_all_users()
        logger.info("decrypt_all_started", user_count=len(users), kinds=[k.value for k in kinds])
        results: dict[int, dict[DataKind, DecryptionOutcome | None]] = {u: {} for u in users}
        handles: list[tuple[int, DataKind, DecryptionHandle]] = []
        for user in users:
            for kind in kinds:
                try:
                    present = await self.has_ciphertext(user, kind)
                except EngineUnavailable as e:
                    results[user][kind] = DecryptionOutcome.engine_error(user, kind, str(e))
                    continue
                if not present:
                    results[user][kind] = None
                    continue
                handles.append((user, kind, self.request(user, kind, timeout)))
        outcomes = await asyncio.gather(*(h.outcome() for _, _, h in handles))
        for (user, kind, _), outcome in zip(handles, outcomes):
            results[user][kind] = outcome
        logger.info(
            "decrypt_all_finished",
            user_count=len(users),
            requested=len(handles),
            succeeded=sum(1 for o in outcomes if o.ok),
        )
        return results
