"""libssh2 backend built on the ``ssh2-python`` bindings.

libssh2 in non-blocking mode returns ``LIBSSH2_ERROR_EAGAIN`` instead of
waiting; ``session.block_directions()`` then says whether it is waiting to
read from or write to the socket.  Everything else is either success or
an :class:`ssh2.exceptions.SSH2Error`.  This module maps those outcomes
onto :mod:`sftpfetch.steps` results.
"""

from __future__ import annotations

import hashlib
import logging
import socket
from typing import Any

from ssh2.error_codes import LIBSSH2_ERROR_EAGAIN
from ssh2.exceptions import SSH2Error
from ssh2.session import (
    LIBSSH2_SESSION_BLOCK_INBOUND,
    LIBSSH2_SESSION_BLOCK_OUTBOUND,
    Session,
)
from ssh2.sftp import LIBSSH2_FXF_READ, LIBSSH2_SFTP_S_IRUSR

from sftpfetch.backend import SSHBackend
from sftpfetch.steps import (
    Complete,
    Direction,
    Fault,
    FaultKind,
    StepResult,
    WouldBlock,
)

logger = logging.getLogger(__name__)


def _error_text(exc: SSH2Error) -> str:
    """Return a readable message for an ssh2-python exception."""
    text = str(exc)
    return text or type(exc).__name__


class Libssh2Backend(SSHBackend):
    """Drives libssh2 through ``ssh2-python`` in non-blocking mode."""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _would_block(session: Session, default: Direction) -> WouldBlock:
        """Translate libssh2's block directions into a :class:`WouldBlock`."""
        flags = session.block_directions()
        direction = Direction(0)
        if flags & LIBSSH2_SESSION_BLOCK_INBOUND:
            direction |= Direction.READ
        if flags & LIBSSH2_SESSION_BLOCK_OUTBOUND:
            direction |= Direction.WRITE
        return WouldBlock(direction or default)

    def _classify(self, session: Session, rc: int, kind: FaultKind, what: str) -> StepResult[None]:
        """Classify an integer return code from a libssh2 call."""
        if rc == LIBSSH2_ERROR_EAGAIN:
            return self._would_block(session, Direction.WRITE)
        if rc != 0:
            return Fault(kind, f"{what} failed (libssh2 error {rc})")
        return Complete(None)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def new_session(self, sock: socket.socket) -> Session:
        """Create a libssh2 session in non-blocking mode."""
        session = Session()
        session.set_blocking(False)
        return session

    def handshake(self, session: Session, sock: socket.socket) -> StepResult[bytes]:
        """Run the SSH handshake; completes with the SHA1 host-key hash."""
        try:
            rc = session.handshake(sock)
        except SSH2Error as exc:
            return Fault(FaultKind.HANDSHAKE, f"SSH handshake failed: {_error_text(exc)}")
        result = self._classify(session, rc, FaultKind.HANDSHAKE, "SSH handshake")
        if not isinstance(result, Complete):
            return result
        return Complete(self._fingerprint(session))

    @staticmethod
    def _fingerprint(session: Session) -> bytes:
        """SHA1 of the server's host key blob.

        ``hostkey_hash`` returns the digest as a C string and so cuts it at
        the first NUL byte; hashing the raw key keeps all 20 bytes.
        """
        hostkey = session.hostkey()
        if not hostkey:
            return b""
        return hashlib.sha1(hostkey[0]).digest()

    def authenticate(self, session: Session, username: str, secret: str) -> StepResult[None]:
        """Password authentication."""
        try:
            rc = session.userauth_password(username, secret)
        except SSH2Error as exc:
            return Fault(
                FaultKind.AUTHENTICATION,
                f"Authentication failed for {username!r}: {_error_text(exc)}",
            )
        return self._classify(session, rc, FaultKind.AUTHENTICATION, f"Authentication for {username!r}")

    def open_sftp(self, session: Session) -> StepResult[Any]:
        """Start the SFTP subsystem."""
        try:
            sftp = session.sftp_init()
        except SSH2Error as exc:
            return Fault(FaultKind.SUBSYSTEM_INIT, f"SFTP init failed: {_error_text(exc)}")
        if sftp == LIBSSH2_ERROR_EAGAIN:
            return self._would_block(session, Direction.WRITE)
        if sftp is None or isinstance(sftp, int):
            return Fault(FaultKind.SUBSYSTEM_INIT, f"SFTP init failed (libssh2 error {sftp})")
        return Complete(sftp)

    def open_file(self, session: Session, sftp: Any, path: str) -> StepResult[Any]:
        """Open *path* read-only."""
        try:
            handle = sftp.open(path, LIBSSH2_FXF_READ, LIBSSH2_SFTP_S_IRUSR)
        except SSH2Error as exc:
            return Fault(FaultKind.FILE_OPEN, f"Could not open {path!r}: {_error_text(exc)}")
        if handle == LIBSSH2_ERROR_EAGAIN:
            return self._would_block(session, Direction.WRITE)
        if handle is None or isinstance(handle, int):
            return Fault(FaultKind.FILE_OPEN, f"Could not open {path!r} (libssh2 error {handle})")
        return Complete(handle)

    def read(self, session: Session, handle: Any, capacity: int) -> StepResult[bytes]:
        """Read up to *capacity* bytes from *handle*."""
        try:
            rc, data = handle.read(capacity)
        except SSH2Error as exc:
            return Fault(FaultKind.READ, f"SFTP read failed: {_error_text(exc)}")
        if rc == LIBSSH2_ERROR_EAGAIN:
            return self._would_block(session, Direction.READ)
        if rc < 0:
            return Fault(FaultKind.READ, f"SFTP read failed (libssh2 error {rc})")
        return Complete(bytes(data[:rc]) if rc else b"")

    # ------------------------------------------------------------------
    # Release (teardown only)
    # ------------------------------------------------------------------

    def set_blocking(self, session: Session, timeout: float) -> None:
        """Switch to blocking mode so the release calls run to completion."""
        session.set_timeout(int(timeout * 1000))
        session.set_blocking(True)

    def close_file(self, handle: Any) -> None:
        """Close the SFTP file handle."""
        handle.close()

    def shutdown_sftp(self, sftp: Any) -> None:
        """Shut down the SFTP subsystem.

        ssh2-python runs ``libssh2_sftp_shutdown`` when the SFTP object is
        deallocated, so there is no call to make here; the driver drops
        its last reference straight after this returns.
        """
        logger.debug("Releasing SFTP subsystem %r", sftp)

    def terminate(self, session: Session) -> None:
        """Send SSH_MSG_DISCONNECT; the session is freed once unreferenced."""
        session.disconnect()
