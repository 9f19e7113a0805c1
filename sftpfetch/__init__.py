"""sftpfetch — non-blocking SFTP downloads driven by an asyncio event loop."""

from __future__ import annotations

from sftpfetch.session import (
    Credentials,
    EofPolicy,
    SessionContext,
    Stage,
    TransferRequest,
    TransferSession,
)
from sftpfetch.steps import FaultKind, ProtocolViolation, TransferError
from sftpfetch.transfer import TransferSummary, begin_transfer, fetch_file

__all__ = [
    "Credentials",
    "EofPolicy",
    "FaultKind",
    "ProtocolViolation",
    "SessionContext",
    "Stage",
    "TransferError",
    "TransferRequest",
    "TransferSession",
    "TransferSummary",
    "begin_transfer",
    "fetch_file",
]
