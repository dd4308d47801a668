"""
Engine boundary: what the decryption layer needs from the external FHE contract and relayer.

DecryptionEngine issues requests and answers read-only queries. A
NotificationSubscription yields DecryptionCompleted records (mappings or
CompletionNotification objects) until closed; delivery is at-least-once and
unordered across request ids.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, AsyncIterator, Protocol

if TYPE_CHECKING:
    from backend_ivs.decryption.models import DataKind, NotificationRecord

ZERO_HANDLE = "0x" + "00" * 32
"""Ciphertext handle of a field that was never written."""


def is_zero_handle(handle: str | None) -> bool:
    if not handle:
        return True
    s = handle.lower().removeprefix("0x")
    return not s or set(s) == {"0"}


class DecryptionEngine(Protocol):
    async def submit_decryption_request(self, subject_user_id: int, kind: DataKind) -> int:
        """
        Ask the contract to decrypt subject's field; return the request id.

        Raises SubmissionRejected (refused) or EngineUnavailable (transport).
        """
        ...

    async def get_all_users(self) -> list[int]:
        ...

    async def get_ciphertext_handle(self, subject_user_id: int, kind: DataKind) -> str:
        ...


class NotificationSubscription(Protocol):
    def __aiter__(self) -> AsyncIterator[NotificationRecord]:
        ...

    async def close(self) -> None:
        ...
