"""
Data models for the decryption correlation protocol.

DataKind tags the meaning of a decrypted payload; CompletionNotification is the
normalized form of a DecryptionCompleted event; DecryptionOutcome is the immutable
terminal state of one session.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union

from backend_ivs.core.exceptions import MalformedNotification


class DataKind(str, Enum):
    """Closed tag for decrypted payloads. Values are the wire tags emitted by the contract."""

    SCORE = "ivs"
    HEALTH_STATUS = "health"

    @classmethod
    def from_tag(cls, tag: Any) -> "DataKind":
        """Parse a wire tag ("ivs" / "health"); raise MalformedNotification for anything else."""
        if isinstance(tag, DataKind):
            return tag
        s = str(tag or "").strip().lower()
        for kind in cls:
            if kind.value == s:
                return kind
        raise MalformedNotification(f"unknown data kind tag: {tag!r}")


class RiskTier(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    MINIMAL = "MINIMAL"


class HealthLabel(str, Enum):
    INFECTED = "INFECTED"
    NOT_INFECTED = "NOT_INFECTED"


@dataclass(frozen=True)
class RenderedResult:
    """
    Human-readable form of a decrypted value.

    For SCORE: decimal (e.g. "0.500") and tier are set, health is None.
    For HEALTH_STATUS: health is set, decimal and tier are None.
    """

    kind: DataKind
    raw_value: int
    decimal: str | None = None
    tier: RiskTier | None = None
    health: HealthLabel | None = None

    @property
    def label(self) -> str:
        if self.kind is DataKind.SCORE:
            return f"{self.decimal} ({self.tier.value})"
        return self.health.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "raw_value": self.raw_value,
            "decimal": self.decimal,
            "tier": self.tier.value if self.tier else None,
            "health": self.health.value if self.health else None,
        }


def _as_int(value: Any, field_name: str) -> int:
    """Coerce an event field to int; hex strings ("0x..") are accepted."""
    if isinstance(value, bool):
        raise MalformedNotification(f"{field_name} must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip()
        try:
            return int(s, 16) if s.lower().startswith("0x") else int(s)
        except ValueError as e:
            raise MalformedNotification(f"{field_name} is not an integer: {value!r}") from e
    raise MalformedNotification(f"{field_name} missing or not an integer: {value!r}")


@dataclass(frozen=True)
class CompletionNotification:
    """
    A DecryptionCompleted event: (requestId, userId, decryptedValue, dataType, scaledValue).

    Provenance fields (block_number, tx_hash, log_index) are set when the notification
    came from a chain log and are used for dedup and display only.
    """

    request_id: int
    subject_user_id: int
    raw_value: int
    kind: DataKind
    scaled_value: int
    block_number: int | None = None
    tx_hash: str | None = None
    log_index: int | None = None

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> "CompletionNotification":
        """
        Build from a decoded event mapping.

        Accepts the contract's argument names (requestId, userId, decryptedValue,
        dataType, scaledValue) or snake_case equivalents. Raises MalformedNotification
        when a field is missing, not an integer, or the data kind is unknown.
        """
        if not isinstance(event, Mapping):
            raise MalformedNotification(f"notification is not a mapping: {type(event).__name__}")

        def pick(*names: str) -> Any:
            for n in names:
                if n in event:
                    return event[n]
            return None

        raw_value = _as_int(pick("raw_value", "decryptedValue"), "raw_value")
        scaled = pick("scaled_value", "scaledValue")
        block_number = pick("block_number", "blockNumber")
        log_index = pick("log_index", "logIndex")
        return cls(
            request_id=_as_int(pick("request_id", "requestId"), "request_id"),
            subject_user_id=_as_int(pick("subject_user_id", "userId"), "subject_user_id"),
            raw_value=raw_value,
            kind=DataKind.from_tag(pick("kind", "dataType")),
            scaled_value=_as_int(scaled, "scaled_value") if scaled is not None else raw_value,
            block_number=_as_int(block_number, "block_number") if block_number is not None else None,
            tx_hash=pick("tx_hash", "transactionHash"),
            log_index=_as_int(log_index, "log_index") if log_index is not None else None,
        )


class DecryptionStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ENGINE_ERROR = "engine_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DecryptionOutcome:
    """
    Terminal state of a decryption session. Immutable once produced.

    Operators retry TIMEOUT and investigate ENGINE_ERROR, so the two are never merged.
    """

    status: DecryptionStatus
    subject_user_id: int
    kind: DataKind
    request_id: int | None = None
    rendered: RenderedResult | None = None
    message: str | None = None

    @classmethod
    def success(
        cls, request_id: int, subject_user_id: int, rendered: RenderedResult
    ) -> "DecryptionOutcome":
        return cls(
            status=DecryptionStatus.SUCCESS,
            subject_user_id=subject_user_id,
            kind=rendered.kind,
            request_id=request_id,
            rendered=rendered,
        )

    @classmethod
    def timeout(cls, request_id: int, subject_user_id: int, kind: DataKind) -> "DecryptionOutcome":
        return cls(
            status=DecryptionStatus.TIMEOUT,
            subject_user_id=subject_user_id,
            kind=kind,
            request_id=request_id,
            message="no DecryptionCompleted event before deadline",
        )

    @classmethod
    def engine_error(
        cls,
        subject_user_id: int,
        kind: DataKind,
        message: str,
        request_id: int | None = None,
    ) -> "DecryptionOutcome":
        return cls(
            status=DecryptionStatus.ENGINE_ERROR,
            subject_user_id=subject_user_id,
            kind=kind,
            request_id=request_id,
            message=message,
        )

    @classmethod
    def cancelled(
        cls, subject_user_id: int, kind: DataKind, request_id: int | None = None
    ) -> "DecryptionOutcome":
        return cls(
            status=DecryptionStatus.CANCELLED,
            subject_user_id=subject_user_id,
            kind=kind,
            request_id=request_id,
            message="cancelled by caller",
        )

    @property
    def ok(self) -> bool:
        return self.status is DecryptionStatus.SUCCESS

    @property
    def raw_value(self) -> int | None:
        return self.rendered.raw_value if self.rendered else None


NotificationRecord = Union[CompletionNotification, Mapping[str, Any]]
"""What a NotificationSubscription yields: a parsed notification or a decoded event mapping."""
