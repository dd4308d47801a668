"""
Decryption request correlation: registry, correlator, renderer, sessions.
"""

from backend_ivs.decryption.correlator import CorrelatorStats, EventCorrelator
from backend_ivs.decryption.models import (
    CompletionNotification,
    DataKind,
    DecryptionOutcome,
    DecryptionStatus,
    HealthLabel,
    RenderedResult,
    RiskTier,
)
from backend_ivs.decryption.registry import PendingRequest, RequestRegistry
from backend_ivs.decryption.renderer import render
from backend_ivs.decryption.session import (
    DecryptionHandle,
    DecryptionService,
    DecryptionSession,
    SessionState,
)

__all__ = [
    "CompletionNotification",
    "CorrelatorStats",
    "DataKind",
    "DecryptionHandle",
    "DecryptionOutcome",
    "DecryptionService",
    "DecryptionSession",
    "DecryptionStatus",
    "EventCorrelator",
    "HealthLabel",
    "PendingRequest",
    "RenderedResult",
    "RequestRegistry",
    "RiskTier",
    "SessionState",
    "render",
]
