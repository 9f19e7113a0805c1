"""Entry points for fetching a remote file.

- :func:`begin_transfer` starts a :class:`~sftpfetch.session.TransferSession`
  on the running event loop and returns at once; the result arrives via
  ``on_complete``.
- :func:`fetch_file` is the coroutine form: it awaits the session,
  applies an optional deadline, and raises
  :class:`~sftpfetch.steps.TransferError` on failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sftpfetch import credentials
from sftpfetch.backend import SSHBackend
from sftpfetch.session import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_TEARDOWN_TIMEOUT,
    CompletionCallback,
    Credentials,
    EofPolicy,
    ProgressCallback,
    TransferRequest,
    TransferSession,
)
from sftpfetch.steps import FaultKind, TransferError
from sftpfetch.utils.path_helpers import validate_remote_path

logger = logging.getLogger(__name__)


@dataclass
class TransferSummary:
    """Outcome of a successful :func:`fetch_file` call."""

    local_destination: str
    bytes_received: int
    reads_completed: int
    fingerprint: bytes | None
    elapsed: float

    @property
    def speed_mbps(self) -> float:
        """Average transfer speed in MB/s."""
        if self.elapsed <= 0:
            return 0.0
        return self.bytes_received / self.elapsed / (1024 * 1024)


def _default_backend() -> SSHBackend:
    from sftpfetch.libssh2 import Libssh2Backend

    return Libssh2Backend()


def _resolve_secret(username: str, host: str, secret: str | None) -> str:
    if secret is not None:
        return secret
    stored = credentials.get_password(username, host)
    if stored is None:
        raise ValueError(
            f"No password given and none stored in the keyring for "
            f"{credentials.account_key(username, host)}"
        )
    return stored


def begin_transfer(
    host: str,
    remote_path: str,
    local_destination: str,
    username: str,
    secret: str | None,
    on_complete: CompletionCallback,
    *,
    port: int = 22,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    eof_policy: EofPolicy | str = EofPolicy.SHORT_READ,
    teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
    on_progress: ProgressCallback | None = None,
    backend: SSHBackend | None = None,
    loop: asyncio.AbstractEventLoop | None = None,
) -> TransferSession:
    """Start downloading *remote_path* from *host* into *local_destination*.

    Must be called from the thread running *loop* (default: the running
    loop).  Returns the started session, which can be cancelled with
    :meth:`TransferSession.cancel`.  ``on_complete`` is called exactly once
    with ``None`` or a :class:`TransferError`.

    Args:
        secret: Password; ``None`` looks it up in the OS keyring.

    Raises:
        ValueError: *remote_path* is invalid or no password is available.
    """
    if not validate_remote_path(remote_path):
        raise ValueError(f"Invalid remote path: {remote_path!r}")
    password = _resolve_secret(username, host, secret)

    session = TransferSession(
        TransferRequest(
            host=host,
            remote_path=remote_path,
            local_destination=str(local_destination),
            port=port,
        ),
        Credentials(username=username, secret=password),
        on_complete,
        backend=backend or _default_backend(),
        loop=loop or asyncio.get_running_loop(),
        chunk_size=chunk_size,
        eof_policy=EofPolicy(eof_policy),
        teardown_timeout=teardown_timeout,
        on_progress=on_progress,
    )
    session.start()
    return session


async def fetch_file(
    host: str,
    remote_path: str,
    local_destination: str,
    username: str,
    secret: str | None = None,
    *,
    timeout: float | None = None,
    port: int = 22,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    eof_policy: EofPolicy | str = EofPolicy.SHORT_READ,
    teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
    on_progress: ProgressCallback | None = None,
    backend: SSHBackend | None = None,
) -> TransferSummary:
    """Download a file and wait for it.

    When *timeout* (seconds) elapses the session is cancelled with a
    ``TIMEOUT`` fault; teardown still completes before this raises.  If the
    awaiting task itself is cancelled, the session is cancelled too and
    torn down before the cancellation propagates.

    Raises:
        TransferError: The transfer failed, timed out, or was cancelled.
        ValueError: Invalid arguments (see :func:`begin_transfer`).
    """
    loop = asyncio.get_running_loop()
    finished: asyncio.Future = loop.create_future()

    def on_complete(error: TransferError | None) -> None:
        if not finished.done():
            finished.set_result(error)

    session = begin_transfer(
        host,
        remote_path,
        local_destination,
        username,
        secret,
        on_complete,
        port=port,
        chunk_size=chunk_size,
        eof_policy=eof_policy,
        teardown_timeout=teardown_timeout,
        on_progress=on_progress,
        backend=backend,
        loop=loop,
    )

    timer = None
    if timeout is not None:
        timer = loop.call_later(timeout, session.cancel, FaultKind.TIMEOUT)
    try:
        error = await asyncio.shield(finished)
    except asyncio.CancelledError:
        session.cancel()
        await finished
        raise
    finally:
        if timer is not None:
            timer.cancel()

    if error is not None:
        raise error

    ctx = session.context
    return TransferSummary(
        local_destination=ctx.request.local_destination,
        bytes_received=ctx.bytes_received,
        reads_completed=ctx.reads_completed,
        fingerprint=ctx.fingerprint,
        elapsed=(ctx.finished_at or 0.0) - (ctx.started_at or 0.0),
    )
