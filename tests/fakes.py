"""Scripted in-memory SSH backend running on a real socketpair."""

from __future__ import annotations

import asyncio
import socket
from pathlib import Path
from typing import Any

from sftpfetch.backend import SSHBackend
from sftpfetch.session import TransferSession
from sftpfetch.steps import Complete, StepResult, TransferError
from sftpfetch.transfer import begin_transfer

FINGERPRINT = bytes(range(20))


class FakeBackend(SSHBackend):
    """Backend that serves *data* and replays scripted step results.

    ``script`` maps a step name (``handshake``, ``authenticate``,
    ``open_sftp``, ``open_file``, ``read``) to a list of results returned
    one per call before the step falls back to its normal behaviour.

    The transport is one end of a ``socketpair``; it is always writable and
    becomes readable once :meth:`make_readable` is called (done at connect
    time unless ``readable=False``).
    """

    def __init__(
        self,
        data: bytes = b"",
        script: dict[str, list[Any]] | None = None,
        *,
        readable: bool = True,
        max_chunk: int | None = None,
        resolve_error: TransferError | None = None,
        connect_error: TransferError | None = None,
        hang_resolve: bool = False,
    ) -> None:
        self.data = data
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.readable = readable
        self.max_chunk = max_chunk
        self.resolve_error = resolve_error
        self.connect_error = connect_error
        self.hang_resolve = hang_resolve

        self.calls: list[str] = []
        self.releases: list[str] = []
        self.read_sizes: list[int] = []
        self.violations: list[str] = []
        self.session: TransferSession | None = None
        self.blocking_timeout: float | None = None
        self.credentials_seen: tuple[str, str] | None = None
        self.opened_path: str | None = None
        self._offset = 0
        self._sock: socket.socket | None = None
        self._peer: socket.socket | None = None

    # -- instrumentation ------------------------------------------------

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.session is not None and self.session.waiting:
            self.violations.append(name)

    def _scripted(self, name: str) -> StepResult[Any] | None:
        queue = self.script.get(name)
        if queue:
            result = queue.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return None

    def make_readable(self) -> None:
        assert self._peer is not None
        self._peer.send(b"!")

    def count(self, name: str) -> int:
        return self.calls.count(name)

    # -- transport ------------------------------------------------------

    async def resolve(self, host: str, port: int) -> list:
        self.calls.append("resolve")
        if self.hang_resolve:
            await asyncio.Event().wait()
        if self.resolve_error is not None:
            raise self.resolve_error
        return [(socket.AF_UNIX, socket.SOCK_STREAM, 0, "", (host, port))]

    async def connect(self, endpoints: list) -> socket.socket:
        self.calls.append("connect")
        if self.connect_error is not None:
            raise self.connect_error
        self._sock, self._peer = socket.socketpair()
        self._sock.setblocking(False)
        if self.readable:
            self.make_readable()
        return self._sock

    def close_transport(self, sock: socket.socket) -> None:
        self.releases.append("close_transport")
        sock.close()
        if self._peer is not None:
            self._peer.close()

    # -- steps ----------------------------------------------------------

    def new_session(self, sock: socket.socket) -> Any:
        self.calls.append("new_session")
        return "ssh-session"

    def handshake(self, session: Any, sock: socket.socket) -> StepResult[bytes]:
        self._enter("handshake")
        return self._scripted("handshake") or Complete(FINGERPRINT)

    def authenticate(self, session: Any, username: str, secret: str) -> StepResult[None]:
        self._enter("authenticate")
        self.credentials_seen = (username, secret)
        return self._scripted("authenticate") or Complete(None)

    def open_sftp(self, session: Any) -> StepResult[Any]:
        self._enter("open_sftp")
        return self._scripted("open_sftp") or Complete("sftp")

    def open_file(self, session: Any, sftp: Any, path: str) -> StepResult[Any]:
        self._enter("open_file")
        self.opened_path = path
        return self._scripted("open_file") or Complete("file-handle")

    def read(self, session: Any, handle: Any, capacity: int) -> StepResult[bytes]:
        self._enter("read")
        self.read_sizes.append(capacity)
        scripted = self._scripted("read")
        if scripted is not None:
            return scripted
        size = capacity if self.max_chunk is None else min(capacity, self.max_chunk)
        chunk = self.data[self._offset:self._offset + size]
        self._offset += len(chunk)
        return Complete(chunk)

    # -- release --------------------------------------------------------

    def set_blocking(self, session: Any, timeout: float) -> None:
        self.releases.append("set_blocking")
        self.blocking_timeout = timeout

    def close_file(self, handle: Any) -> None:
        self.releases.append("close_file")

    def shutdown_sftp(self, sftp: Any) -> None:
        self.releases.append("shutdown_sftp")

    def terminate(self, session: Any) -> None:
        self.releases.append("terminate")


FULL_RELEASE = ["set_blocking", "close_file", "shutdown_sftp", "terminate", "close_transport"]


def run_transfer(
    backend: FakeBackend,
    destination: Path,
    *,
    remote_path: str = "/remote/f",
    **kwargs: Any,
) -> tuple[list[TransferError | None], TransferSession]:
    """Run one transfer to completion; return every on_complete argument and the session."""

    async def _main() -> tuple[list[TransferError | None], TransferSession]:
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        results: list[TransferError | None] = []

        def on_complete(error: TransferError | None) -> None:
            results.append(error)
            if not done.done():
                done.set_result(error)

        session = begin_transfer(
            "h", remote_path, str(destination), "u", "p", on_complete,
            backend=backend, **kwargs,
        )
        backend.session = session
        await asyncio.wait_for(done, timeout=5)
        # Give any stray callbacks a chance to fire.
        for _ in range(5):
            await asyncio.sleep(0)
        return results, session

    return asyncio.run(_main())
