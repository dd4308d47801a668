"""
DecryptionCompleted log stream: eth_getLogs polling exposed as a NotificationSubscription.

Polls the contract's DecryptionCompleted topic from a block cursor, decodes each log
with the contract ABI, deduplicates by (transactionHash, logIndex) and yields decoded
event mappings oldest first. A log that cannot be decoded is logged and skipped. RPC
failures are retried with exponential backoff; after max retries the cycle is skipped
and the cursor is kept, so no range is lost. Runs until close().
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, AsyncIterator

from backend_ivs.core.exceptions import EngineUnavailable, MalformedNotification
from backend_ivs.engine.evm import COMPLETED_EVENT, EvmEngineClient
from backend_ivs.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_BLOCK_RANGE = 2000
DEFAULT_MAX_SEEN_LOGS = 10_000


class LogPollingSubscription:
    """
    Polling subscription to DecryptionCompleted events.

    Args:
        client: EvmEngineClient used for eth_blockNumber, eth_getLogs and decoding.
        poll_interval_sec: Seconds between polls.
        lookback_blocks: On first poll, start this many blocks before head (catch
            completions that landed while the request transaction was confirming).
        from_block: Explicit start block; overrides lookback_blocks.
        min_retry_delay_sec: Initial backoff delay on RPC errors.
        max_retry_delay_sec: Backoff cap.
        max_retries_per_poll: Retries per poll before skipping the cycle.
        max_block_range: Max blocks per eth_getLogs call (providers cap ranges).
        max_seen_logs: Dedup memory size.
    """

    def __init__(
        self,
        client: EvmEngineClient,
        *,
        poll_interval_sec: float = 4.0,
        lookback_blocks: int = 0,
        from_block: int | None = None,
        min_retry_delay_sec: float = 1.0,
        max_retry_delay_sec: float = 60.0,
        max_retries_per_poll: int = 5,
        max_block_range: int = DEFAULT_MAX_BLOCK_RANGE,
        max_seen_logs: int = DEFAULT_MAX_SEEN_LOGS,
    ) -> None:
        if poll_interval_sec <= 0:
            raise ValueError("poll_interval_sec must be positive")
        if max_block_range < 1:
            raise ValueError("max_block_range must be at least 1")
        self._client = client
        self._poll_interval = poll_interval_sec
        self._lookback = max(0, lookback_blocks)
        self._cursor = from_block
        self._min_retry_delay = min_retry_delay_sec
        self._max_retry_delay = max_retry_delay_sec
        self._max_retries = max_retries_per_poll
        self._max_range = max_block_range
        self._max_seen = max_seen_logs
        self._seen: set[tuple[str | None, int | None]] = set()
        self._seen_order: deque[tuple[str | None, int | None]] = deque()
        self._stop_event = asyncio.Event()

    @property
    def cursor(self) -> int | None:
        """Next block to fetch."""
        return self._cursor

    async def close(self) -> None:
        """Request shutdown; iteration ends after the current poll."""
        self._stop_event.set()

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        logger.info(
            "log_stream_started",
            contract=self._client.contract_address,
            poll_interval_sec=self._poll_interval,
            from_block=self._cursor,
        )
        while not self._stop_event.is_set():
            events = await self._poll_with_retry()
            for event in events:
                if self._stop_event.is_set():
                    break
                yield event
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("log_stream_stopped", cursor=self._cursor)

    async def _poll_with_retry(self) -> list[dict[str, Any]]:
        delay = self._min_retry_delay
        for attempt in range(self._max_retries):
            try:
                return await self.poll_once()
            except EngineUnavailable as e:
                logger.warning(
                    "log_stream_rpc_retry",
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                    error=str(e),
                )
                if attempt + 1 >= self._max_retries:
                    logger.error("log_stream_rpc_give_up", cursor=self._cursor, error=str(e))
                    return []
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    return []
                except asyncio.TimeoutError:
                    pass
                delay = min(delay * 2, self._max_retry_delay)
        return []

    async def poll_once(self) -> list[dict[str, Any]]:
        """Fetch new DecryptionCompleted logs from cursor to head; advance the cursor."""
        head = await self._client.block_number()
        if self._cursor is None:
            self._cursor = max(0, head - self._lookback)
        if self._cursor > head:
            return []
        to_block = min(head, self._cursor + self._max_range - 1)
        logs = await self._client.get_logs(COMPLETED_EVENT, self._cursor, to_block)
        events: list[dict[str, Any]] = []
        for log in logs:
            try:
                event = self._client.decode_log(COMPLETED_EVENT, log)
            except MalformedNotification as e:
                raw = log if isinstance(log, dict) else {}
                logger.warning(
                    "log_stream_undecodable_log",
                    tx_hash=raw.get("transactionHash"),
                    log_index=raw.get("logIndex"),
                    error=str(e),
                )
                continue
            key = (event["transactionHash"], event["logIndex"])
            if key in self._seen:
                continue
            self._mark_seen(key)
            events.append(event)
        self._cursor = to_block + 1
        if events:
            logger.info("log_stream_new_events", event_count=len(events), cursor=self._cursor)
        events.sort(key=lambda ev: (ev["blockNumber"] or 0, ev["logIndex"] or 0))
        return events

    def _mark_seen(self, key: tuple[str | None, int | None]) -> None:
        if len(self._seen) >= self._max_seen:
            oldest = self._seen_order.popleft()
            self._seen.discard(oldest)
        self._seen.add(key)
        self._seen_order.append(key)
