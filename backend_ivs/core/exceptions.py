"""
Application-level exceptions.

Timeouts are not exceptions here: a deadline with no correlated notification is a
terminal DecryptionOutcome. A second notification for an already-resolved request is
not an error either; Registry.resolve() simply returns False.
"""

from __future__ import annotations

# SubmissionRejected.reason values
REASON_UNAUTHORIZED = "unauthorized"
REASON_UNKNOWN_SUBJECT = "unknown_subject"
REASON_DUPLICATE = "duplicate"
REASON_OTHER = "other"

# Contract custom-error names -> rejection reason
_REVERT_REASONS: dict[str, str] = {
    "OnlyAdmin": REASON_UNAUTHORIZED,
    "Unauthorized": REASON_UNAUTHORIZED,
    "UserNotRegistered": REASON_UNKNOWN_SUBJECT,
    "UserAlreadyRegistered": REASON_DUPLICATE,
    "DecryptionAlreadyPending": REASON_DUPLICATE,
}


class IVSError(Exception):
    """Base class for all backend_ivs errors."""


class ConfigError(IVSError):
    """Missing or invalid configuration value."""


class SubmissionRejected(IVSError):
    """The engine refused a decryption request (authorization, unknown subject, duplicate)."""

    def __init__(self, message: str, *, reason: str = REASON_OTHER) -> None:
        super().__init__(message)
        self.reason = reason

    @classmethod
    def from_revert(cls, message: str, error_name: str | None = None) -> "SubmissionRejected":
        """
        Classify a revert. error_name is the custom error decoded from the revert data;
        without it, fall back to an error name appearing in the message text.
        """
        if error_name is not None:
            return cls(
                f"{error_name}: {message}", reason=_REVERT_REASONS.get(error_name, REASON_OTHER)
            )
        for name, reason in _REVERT_REASONS.items():
            if name in message:
                return cls(message, reason=reason)
        return cls(message, reason=REASON_OTHER)


class EngineUnavailable(IVSError):
    """Transport or JSON-RPC failure talking to the engine; the request may not have been sent."""


class MalformedNotification(IVSError):
    """A notification with an unknown data kind or an out-of-range raw value."""


class DuplicateRequest(IVSError):
    """A request id was registered while an entry for it is still pending."""
