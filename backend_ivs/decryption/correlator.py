"""
Event correlator: match DecryptionCompleted notifications to pending requests.

One long-lived task consumes an injected NotificationSubscription and, for each
record, looks up the pending entry by request id, checks that the data kind and
subject agree, renders the raw value and resolves the registry entry.

A notification for an unknown request id is parked for a short while: on a live
chain the log poller can see a completion before the submitting session has its
receipt and registers the id. When that id is registered the parked notification is
correlated at once. Anything not claimed within early_ttl_sec is dropped quietly
(at-least-once delivery makes duplicates normal).

Malformed records are logged and dropped. If the subscription itself fails, the
task logs it, backs off and iterates the subscription again. No single record or
stream error stops the loop; only stop() does.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable

from backend_ivs.core.exceptions import MalformedNotification
from backend_ivs.decryption.models import (
    CompletionNotification,
    DecryptionOutcome,
    NotificationRecord,
)
from backend_ivs.decryption.registry import PendingRequest, RequestRegistry
from backend_ivs.decryption.renderer import render
from backend_ivs.engine.base import NotificationSubscription
from backend_ivs.logging import get_logger

logger = get_logger(__name__)

# Result of handle() for a single record
MATCHED = "matched"
UNMATCHED = "unmatched"
MALFORMED = "malformed"
MISMATCHED = "mismatched"

DEFAULT_EARLY_TTL_SEC = 120.0
DEFAULT_MAX_EARLY = 1024
DEFAULT_RESTART_DELAY_SEC = 1.0
MAX_RESTART_DELAY_SEC = 30.0


@dataclass
class CorrelatorStats:
    """Counters for monitoring; mutated only by the correlator task."""

    received: int = 0
    matched: int = 0
    unmatched: int = 0
    malformed: int = 0
    mismatched: int = 0
    early_claimed: int = 0
    stream_restarts: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def parse_notification(record: NotificationRecord) -> CompletionNotification:
    if isinstance(record, CompletionNotification):
        return record
    return CompletionNotification.from_event(record)


class EventCorrelator:
    """
    Subscriber task that dispatches notifications to whichever session registered them.

    Lifecycle is explicit: start() spawns the task, stop() closes the subscription and
    waits for the task. Also usable as an async context manager.

    Args:
        registry: Shared RequestRegistry.
        subscription: Source of notification records; owned by the caller, closed on stop().
        on_notification: Optional observer called with every well-formed notification,
            matched or not (used by the listen command). Exceptions from it are logged.
        early_ttl_sec: How long an unmatched notification waits for its request id
            to be registered.
        max_early: Cap on parked notifications; the oldest is dropped first.
        restart_delay_sec: First back-off delay after the subscription fails.
    """

    def __init__(
        self,
        registry: RequestRegistry,
        subscription: NotificationSubscription,
        *,
        on_notification: Callable[[CompletionNotification, str], Any] | None = None,
        early_ttl_sec: float = DEFAULT_EARLY_TTL_SEC,
        max_early: int = DEFAULT_MAX_EARLY,
        restart_delay_sec: float = DEFAULT_RESTART_DELAY_SEC,
    ) -> None:
        self._registry = registry
        self._subscription = subscription
        self._on_notification = on_notification
        self._early_ttl = early_ttl_sec
        self._max_early = max_early
        self._restart_delay = restart_delay_sec
        self._early: OrderedDict[int, tuple[float, CompletionNotification]] = OrderedDict()
        self._task: asyncio.Task | None = None
        self.stats = CorrelatorStats()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def parked_ids(self) -> list[int]:
        """Request ids of notifications waiting for their request to be registered."""
        self._evict_early(time.monotonic())
        return list(self._early)

    async def start(self) -> None:
        if self.running:
            return
        self._registry.add_register_hook(self._claim_early)
        self._task = asyncio.create_task(self._run(), name="ivs-event-correlator")
        logger.info("correlator_started")

    async def stop(self) -> None:
        """Close the subscription and wait for the task to finish."""
        self._registry.remove_register_hook(self._claim_early)
        try:
            await self._subscription.close()
        except Exception as e:
            logger.warning("correlator_subscription_close_failed", error=str(e))
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._early.clear()
        logger.info("correlator_stopped", **self.stats.to_dict())

    async def join(self) -> None:
        """Wait until the subscription is exhausted (finite streams, tests)."""
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> "EventCorrelator":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def _run(self) -> None:
        delay = self._restart_delay
        while True:
            try:
                async for record in self._subscription:
                    delay = self._restart_delay
                    try:
                        self.handle(record)
                    except Exception as e:
                        self.stats.errors += 1
                        logger.exception("correlator_record_failed", error=str(e))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.stream_restarts += 1
                logger.exception("correlator_stream_failed", error=str(e), restart_in_sec=delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_RESTART_DELAY_SEC)
                continue
            break
        logger.info("correlator_stream_ended", **self.stats.to_dict())

    def handle(self, record: NotificationRecord) -> str:
        """Correlate one record; returns MATCHED / UNMATCHED / MALFORMED / MISMATCHED."""
        self.stats.received += 1
        try:
            notification = parse_notification(record)
        except MalformedNotification as e:
            self.stats.malformed += 1
            logger.warning("correlator_malformed_notification", error=str(e))
            return MALFORMED

        result = self._correlate(notification)
        if self._on_notification is not None:
            try:
                self._on_notification(notification, result)
            except Exception as e:
                logger.exception("correlator_observer_failed", error=str(e))
        return result

    def _correlate(self, notification: CompletionNotification) -> str:
        rid = notification.request_id
        entry = self._registry.get(rid)
        if entry is None:
            self.stats.unmatched += 1
            self._park(notification)
            logger.debug(
                "correlator_unmatched",
                request_id=rid,
                subject_user_id=notification.subject_user_id,
            )
            return UNMATCHED

        if entry.kind is not notification.kind or entry.subject_user_id != notification.subject_user_id:
            self.stats.mismatched += 1
            logger.warning(
                "correlator_mismatch",
                request_id=rid,
                expected_kind=entry.kind.value,
                got_kind=notification.kind.value,
                expected_subject=entry.subject_user_id,
                got_subject=notification.subject_user_id,
            )
            return MISMATCHED

        try:
            rendered = render(notification.raw_value, notification.kind)
        except MalformedNotification as e:
            self.stats.malformed += 1
            logger.warning(
                "correlator_malformed_notification",
                request_id=rid,
                subject_user_id=notification.subject_user_id,
                error=str(e),
            )
            return MALFORMED

        outcome = DecryptionOutcome.success(rid, notification.subject_user_id, rendered)
        if not self._registry.resolve(rid, outcome):
            # Lost the race to expire/cancel between get() and resolve().
            self.stats.unmatched += 1
            return UNMATCHED
        self.stats.matched += 1
        logger.info(
            "correlator_matched",
            request_id=rid,
            subject_user_id=notification.subject_user_id,
            kind=notification.kind.value,
            label=rendered.label,
            latency_sec=round(time.time() - entry.registered_at, 3),
        )
        return MATCHED

    # -- notifications seen before their request was registered --

    def _park(self, notification: CompletionNotification) -> None:
        now = time.monotonic()
        self._evict_early(now)
        self._early[notification.request_id] = (now + self._early_ttl, notification)
        self._early.move_to_end(notification.request_id)
        while len(self._early) > self._max_early:
            self._early.popitem(last=False)

    def _evict_early(self, now: float) -> None:
        while self._early:
            rid, (expires_at, _) = next(iter(self._early.items()))
            if expires_at > now:
                break
            del self._early[rid]

    def _claim_early(self, entry: PendingRequest) -> None:
        """Register hook: correlate a parked notification for the new entry, if any."""
        self._evict_early(time.monotonic())
        parked = self._early.pop(entry.request_id, None)
        if parked is None:
            return
        result = self._correlate(parked[1])
        if result == MATCHED:
            self.stats.early_claimed += 1
        logger.info("correlator_early_notification_claimed", request_id=entry.request_id, result=result)
