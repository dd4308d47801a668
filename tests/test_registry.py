"""
Tests for the request registry: single resolution, expiry, cancel, thread-safety.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from backend_ivs.core.exceptions import DuplicateRequest
from backend_ivs.decryption.models import DataKind, DecryptionOutcome, DecryptionStatus
from backend_ivs.decryption.registry import RequestRegistry
from backend_ivs.decryption.renderer import render


def _success(rid: int, subject: int = 7, raw: int = 5000) -> DecryptionOutcome:
    return DecryptionOutcome.success(rid, subject, render(raw, DataKind.SCORE))


def test_resolve_twice_returns_false_second_time():
    """Idempotent single resolution: the first writer wins."""

    async def scenario():
        registry = RequestRegistry()
        entry = registry.register(1, 7, DataKind.SCORE, timeout=5)
        assert registry.resolve(1, _success(1)) is True
        assert registry.resolve(1, _success(1, raw=1250)) is False
        outcome = await entry.future
        assert outcome.rendered.raw_value == 5000
        assert 1 not in registry

    asyncio.run(scenario())


def test_resolve_unknown_request_is_ignored():
    async def scenario():
        registry = RequestRegistry()
        assert registry.resolve(99, _success(99)) is False
        assert len(registry) == 0

    asyncio.run(scenario())


def test_deadline_expires_with_timeout_outcome():
    async def scenario():
        registry = RequestRegistry()
        entry = registry.register(3, 3, DataKind.SCORE, timeout=0.05)
        outcome = await entry.future
        assert outcome.status is DecryptionStatus.TIMEOUT
        assert outcome.request_id == 3
        # Late notification after expiry changes nothing.
        assert registry.resolve(3, _success(3)) is False
        assert entry.future.result() is outcome

    asyncio.run(scenario())


def test_expire_and_resolve_exactly_one_wins():
    async def scenario():
        registry = RequestRegistry()
        entry = registry.register(5, 1, DataKind.SCORE, timeout=5)
        assert registry.expire(5) is True
        assert registry.resolve(5, _success(5)) is False
        assert registry.expire(5) is False
        assert (await entry.future).status is DecryptionStatus.TIMEOUT

    asyncio.run(scenario())


def test_cancel_completes_with_cancelled_and_disarms_timer():
    async def scenario():
        registry = RequestRegistry()
        entry = registry.register(6, 2, DataKind.HEALTH_STATUS, timeout=0.05)
        assert registry.cancel(6) is True
        assert (await entry.future).status is DecryptionStatus.CANCELLED
        assert entry.timer.cancelled()
        await asyncio.sleep(0.1)
        assert registry.cancel(6) is False

    asyncio.run(scenario())


def test_duplicate_registration_rejected_while_pending():
    async def scenario():
        registry = RequestRegistry()
        registry.register(8, 1, DataKind.SCORE, timeout=5)
        with pytest.raises(DuplicateRequest):
            registry.register(8, 1, DataKind.SCORE, timeout=5)
        registry.cancel(8)
        # Once terminal, the id may be registered again.
        registry.register(8, 1, DataKind.SCORE, timeout=5)
        registry.cancel_all()

    asyncio.run(scenario())


def test_register_rejects_non_positive_timeout():
    async def scenario():
        with pytest.raises(ValueError):
            RequestRegistry().register(1, 1, DataKind.SCORE, timeout=0)

    asyncio.run(scenario())


def test_resolve_from_another_thread():
    """Resolution off-loop is marshalled onto the owning loop."""

    async def scenario():
        registry = RequestRegistry()
        entry = registry.register(10, 4, DataKind.SCORE, timeout=5)
        results: list[bool] = []

        def worker():
            results.append(registry.resolve(10, _success(10, subject=4)))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        outcome = await asyncio.wait_for(entry.future, timeout=1)
        assert results.count(True) == 1
        assert outcome.ok

    asyncio.run(scenario())


def test_pending_views():
    async def scenario():
        registry = RequestRegistry()
        registry.register(1, 10, DataKind.SCORE, timeout=5)
        registry.register(2, 11, DataKind.HEALTH_STATUS, timeout=5)
        assert sorted(registry.pending_ids()) == [1, 2]
        assert registry.get(2).subject_user_id == 11
        assert 0 < registry.get(1).remaining() <= 5
        assert registry.cancel_all() == 2
        assert len(registry) == 0

    asyncio.run(scenario())
