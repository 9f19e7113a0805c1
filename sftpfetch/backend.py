"""Collaborator boundary between the transfer driver and the SSH library.

The driver in :mod:`sftpfetch.session` never talks to a socket or to
libssh2 directly.  It asks an :class:`SSHBackend` to perform one step at a
time and reacts to the :class:`~sftpfetch.steps.StepResult` it gets back.

Name resolution and the TCP connect are implemented here on top of
``asyncio``; the SSH/SFTP primitives are left to concrete backends such
as :class:`sftpfetch.libssh2.Libssh2Backend`.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from abc import ABC, abstractmethod
from typing import Any

from sftpfetch.steps import FaultKind, StepResult, TransferError

logger = logging.getLogger(__name__)

# (family, type, proto, canonname, sockaddr) as returned by getaddrinfo
Endpoint = tuple[int, int, int, str, tuple]


class SSHBackend(ABC):
    """Non-blocking SSH/SFTP primitives used by :class:`TransferSession`.

    Step methods must never block: they either finish, report
    :class:`~sftpfetch.steps.WouldBlock`, or report a
    :class:`~sftpfetch.steps.Fault`.  Release methods (``close_file``,
    ``shutdown_sftp``, ``terminate``, ``close_transport``) are only called
    during teardown, after :meth:`set_blocking`, and may block up to the
    teardown timeout.
    """

    # ------------------------------------------------------------------
    # Transport layer
    # ------------------------------------------------------------------

    async def resolve(self, host: str, port: int) -> list[Endpoint]:
        """Resolve *host* to a list of TCP endpoints.

        Raises:
            TransferError: ``RESOLVE`` when the lookup fails or is empty.
        """
        loop = asyncio.get_running_loop()
        try:
            endpoints = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as exc:
            raise TransferError(FaultKind.RESOLVE, f"Could not resolve {host!r}: {exc}") from exc
        if not endpoints:
            raise TransferError(FaultKind.RESOLVE, f"No endpoints for {host!r}")
        logger.debug("Resolved %s:%d to %d endpoint(s)", host, port, len(endpoints))
        return list(endpoints)

    async def connect(self, endpoints: list[Endpoint]) -> socket.socket:
        """Connect to the first reachable endpoint, trying them in order.

        Returns a connected, non-blocking socket.

        Raises:
            TransferError: ``CONNECT`` when every endpoint fails.
        """
        loop = asyncio.get_running_loop()
        last_error: OSError | None = None
        for family, type_, proto, _canonname, sockaddr in endpoints:
            sock = socket.socket(family, type_, proto)
            try:
                sock.setblocking(False)
                await loop.sock_connect(sock, sockaddr)
            except OSError as exc:
                logger.debug("Connect to %s failed: %s", sockaddr, exc)
                sock.close()
                last_error = exc
                continue
            except BaseException:
                # Cancelled mid-connect; do not leak the socket.
                sock.close()
                raise
            logger.debug("Connected to %s", sockaddr)
            return sock
        raise TransferError(FaultKind.CONNECT, f"Could not connect to any endpoint: {last_error}")

    def close_transport(self, sock: socket.socket) -> None:
        """Close the TCP connection."""
        sock.close()

    # ------------------------------------------------------------------
    # SSH / SFTP primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def new_session(self, sock: socket.socket) -> Any:
        """Create a protocol session for *sock* and switch it to non-blocking mode."""

    @abstractmethod
    def handshake(self, session: Any, sock: socket.socket) -> StepResult[bytes]:
        """Run the transport handshake; completes with the host-key fingerprint."""

    @abstractmethod
    def authenticate(self, session: Any, username: str, secret: str) -> StepResult[None]:
        """Authenticate with a username/password pair."""

    @abstractmethod
    def open_sftp(self, session: Any) -> StepResult[Any]:
        """Start the SFTP subsystem; completes with the subsystem handle."""

    @abstractmethod
    def open_file(self, session: Any, sftp: Any, path: str) -> StepResult[Any]:
        """Open *path* for reading; completes with the remote file handle."""

    @abstractmethod
    def read(self, session: Any, handle: Any, capacity: int) -> StepResult[bytes]:
        """Read up to *capacity* bytes; completes with the data (``b""`` at EOF)."""

    @abstractmethod
    def set_blocking(self, session: Any, timeout: float) -> None:
        """Put *session* into blocking mode, bounding each call by *timeout* seconds."""

    @abstractmethod
    def close_file(self, handle: Any) -> None:
        """Close a remote file handle."""

    @abstractmethod
    def shutdown_sftp(self, sftp: Any) -> None:
        """Shut down the SFTP subsystem."""

    @abstractmethod
    def terminate(self, session: Any) -> None:
        """Disconnect and free the protocol session."""
