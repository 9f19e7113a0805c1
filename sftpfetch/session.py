"""Readiness-driven state machine that downloads one file over SFTP.

A :class:`TransferSession` walks a fixed pipeline of stages::

    CONNECT -> HANDSHAKE -> AUTHENTICATE -> SUBSYSTEM_INIT -> FILE_OPEN
            -> STREAMING -> TEARDOWN -> DONE

Every stage calls one non-blocking backend primitive.  When the primitive
reports :class:`~sftpfetch.steps.WouldBlock`, the session registers the
transport socket with ``loop.add_reader`` / ``loop.add_writer`` and returns
to the event loop; the readiness callback re-enters the *same* stage.
Any :class:`~sftpfetch.steps.Fault` jumps straight to TEARDOWN, which
releases whatever was created (newest first) and then calls
``on_complete`` exactly once.

Thread-safety: none.  A session must only be touched from the thread
running its event loop.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

from sftpfetch.backend import SSHBackend
from sftpfetch.steps import (
    Complete,
    Direction,
    Fault,
    FaultKind,
    ProtocolViolation,
    StepResult,
    TransferError,
    WouldBlock,
    describe,
)
from sftpfetch.utils.path_helpers import format_fingerprint, human_readable_size

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

CompletionCallback = Callable[[Optional[TransferError]], None]
ProgressCallback = Callable[[int], None]

DEFAULT_CHUNK_SIZE = 0x1000
DEFAULT_TEARDOWN_TIMEOUT = 5.0  # seconds per blocking release call
PARTIAL_SUFFIX = ".part"

# Stage handler return values
_CONTINUE = True
_SUSPEND = False


class Stage(Enum):
    """Pipeline position of a :class:`TransferSession`."""

    CONNECT = auto()
    HANDSHAKE = auto()
    AUTHENTICATE = auto()
    SUBSYSTEM_INIT = auto()
    FILE_OPEN = auto()
    STREAMING = auto()
    TEARDOWN = auto()
    DONE = auto()


class EofPolicy(Enum):
    """How the streaming loop decides that the remote file is exhausted."""

    SHORT_READ = "short_read"  # a read shorter than the chunk size ends the loop
    ZERO_READ = "zero_read"  # only an empty read ends the loop


# Fault reported when a stage raises instead of returning a result.
_STAGE_FAULTS = {
    Stage.CONNECT: FaultKind.CONNECT,
    Stage.HANDSHAKE: FaultKind.HANDSHAKE,
    Stage.AUTHENTICATE: FaultKind.AUTHENTICATION,
    Stage.SUBSYSTEM_INIT: FaultKind.SUBSYSTEM_INIT,
    Stage.FILE_OPEN: FaultKind.FILE_OPEN,
    Stage.STREAMING: FaultKind.READ,
}


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransferRequest:
    """What to fetch and where to put it."""

    host: str
    remote_path: str
    local_destination: str
    port: int = 22


@dataclass(frozen=True)
class Credentials:
    """Username/password pair; the secret is kept out of ``repr``."""

    username: str
    secret: str = field(repr=False)


@dataclass
class SessionContext:
    """All mutable per-transfer state and resource handles.

    Handles are filled in pipeline order (``transport``,
    ``protocol_session``, ``subsystem_session``, ``file_handle``) and
    released in the reverse order during teardown.
    """

    request: TransferRequest
    credentials: Credentials | None
    destination: BinaryIO | None = None
    transport: socket.socket | None = None
    protocol_session: Any = None
    subsystem_session: Any = None
    file_handle: Any = None
    fingerprint: bytes | None = None
    bytes_received: int = 0
    reads_completed: int = 0
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def partial_path(self) -> Path:
        """Where data is written until the transfer succeeds."""
        return Path(self.request.local_destination + PARTIAL_SUFFIX)


@dataclass
class _Pending:
    """The one operation a session is waiting on."""

    token: int
    fd: int | None = None
    direction: Direction | None = None
    task: asyncio.Task | None = None
    handle: asyncio.Handle | None = None


# ---------------------------------------------------------------------------
# TransferSession
# ---------------------------------------------------------------------------


class TransferSession:
    """Downloads ``request.remote_path`` without blocking the event loop.

    Usage::

        session = TransferSession(request, creds, on_complete,
                                  backend=Libssh2Backend(), loop=loop)
        session.start()
        # ...
        session.cancel()   # optional

    ``on_complete`` receives ``None`` on success or a
    :class:`~sftpfetch.steps.TransferError`.
    """

    def __init__(
        self,
        request: TransferRequest,
        credentials: Credentials,
        on_complete: CompletionCallback,
        *,
        backend: SSHBackend,
        loop: asyncio.AbstractEventLoop,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        eof_policy: EofPolicy = EofPolicy.SHORT_READ,
        teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Create the session; nothing touches the network until :meth:`start`."""
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self.context = SessionContext(request=request, credentials=credentials)
        self._on_complete: CompletionCallback | None = on_complete
        self._on_progress = on_progress
        self._backend = backend
        self._loop = loop
        self._chunk_size = chunk_size
        self._eof_policy = EofPolicy(eof_policy)
        self._teardown_timeout = teardown_timeout

        self._stage = Stage.CONNECT
        self._started = False
        self._pending: _Pending | None = None
        self._tokens = itertools.count(1)
        self._cancel_reason: FaultKind | None = None
        self._error: TransferError | None = None

        self._handlers: dict[Stage, Callable[[], bool]] = {
            Stage.CONNECT: self._do_connect,
            Stage.HANDSHAKE: self._do_handshake,
            Stage.AUTHENTICATE: self._do_authenticate,
            Stage.SUBSYSTEM_INIT: self._do_subsystem_init,
            Stage.FILE_OPEN: self._do_file_open,
            Stage.STREAMING: self._do_stream,
            Stage.TEARDOWN: self._do_teardown,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def stage(self) -> Stage:
        """Current pipeline stage."""
        return self._stage

    @property
    def done(self) -> bool:
        """True once teardown has finished and ``on_complete`` has run."""
        return self._stage is Stage.DONE

    @property
    def waiting(self) -> bool:
        """True while a readiness wait or the connect task is outstanding."""
        return self._pending is not None

    @property
    def error(self) -> TransferError | None:
        """The terminal error, if the transfer failed."""
        return self._error

    def start(self) -> None:
        """Begin the pipeline at CONNECT.  May only be called once."""
        if self._started:
            raise ProtocolViolation("TransferSession.start() called twice")
        self._started = True
        self.context.started_at = time.monotonic()
        request = self.context.request
        logger.info(
            "Fetching %s:%s -> %s",
            request.host,
            request.remote_path,
            request.local_destination,
        )
        self._run()

    def cancel(self, reason: FaultKind = FaultKind.CANCELLED) -> bool:
        """Abort the transfer; teardown runs and ``on_complete`` gets *reason*.

        Returns ``False`` if the session is already tearing down, finished,
        or cancelled.
        """
        if self._stage in (Stage.TEARDOWN, Stage.DONE) or self._cancel_reason is not None:
            return False
        self._cancel_reason = reason
        logger.info("Cancel requested for %s (%s)", self.context.request.remote_path, reason.name)

        pending = self._pending
        if pending is None:
            # Not started, or cancelled from inside a callback: the next
            # stage entry sees the reason.
            return True
        if pending.task is not None:
            pending.task.cancel()
        else:
            self._clear_pending()
            self._schedule()
        return True

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _run(self) -> None:
        """Dispatch stages until one suspends or the session is done."""
        if self._pending is not None:
            raise ProtocolViolation(
                f"Stage {self._stage.name} entered while a wait is outstanding"
            )
        while self._stage is not Stage.DONE:
            if self._cancel_reason is not None and self._stage is not Stage.TEARDOWN:
                self._fail(self._cancel_reason, self._cancel_message())
                continue
            stage = self._stage
            try:
                proceed = self._handlers[stage]()
            except ProtocolViolation:
                raise
            except Exception as exc:
                if stage is Stage.TEARDOWN:
                    raise
                logger.exception("Unexpected error in stage %s", stage.name)
                self._fail(_STAGE_FAULTS[stage], f"{type(exc).__name__}: {exc}")
                continue
            if not proceed:
                return

    def _advance(self, stage: Stage) -> bool:
        logger.debug("Stage %s -> %s", self._stage.name, stage.name)
        self._stage = stage
        return _CONTINUE

    def _fail(self, kind: FaultKind, message: str) -> bool:
        """Record the first fault and route to TEARDOWN."""
        if self._error is None:
            self._error = TransferError(kind, message, stage=self._stage.name.lower())
            if kind in (FaultKind.CANCELLED, FaultKind.TIMEOUT):
                logger.info("Transfer %s during %s", kind.name.lower(), self._stage.name)
            else:
                logger.error("Transfer failed during %s: %s", self._stage.name, message)
        return self._advance(Stage.TEARDOWN)

    def _cancel_message(self) -> str:
        if self._cancel_reason is FaultKind.TIMEOUT:
            return "Transfer timed out"
        return "Transfer cancelled"

    def _step(self, result: StepResult[Any], on_complete: Callable[[Any], bool]) -> bool:
        """Apply the uniform three-way handling to a step result."""
        if isinstance(result, Complete):
            return on_complete(result.value)
        if isinstance(result, WouldBlock):
            return self._wait(result.direction)
        if isinstance(result, Fault):
            return self._fail(result.kind, result.message)
        raise ProtocolViolation(f"Backend returned {describe(result)} from {self._stage.name}")

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def _wait(self, direction: Direction) -> bool:
        """Suspend until the transport is ready, then re-run the current stage."""
        if self._cancel_reason is not None:
            return _CONTINUE
        if self._pending is not None:
            raise ProtocolViolation(f"Second wait registered in stage {self._stage.name}")

        direction = direction or Direction.WRITE
        fd = self.context.transport.fileno()
        token = next(self._tokens)
        if direction & Direction.READ:
            self._loop.add_reader(fd, self._on_ready, token)
        if direction & Direction.WRITE:
            self._loop.add_writer(fd, self._on_ready, token)
        self._pending = _Pending(token, fd=fd, direction=direction)
        logger.debug("Stage %s waiting for %s", self._stage.name, direction)
        return _SUSPEND

    def _schedule(self) -> None:
        """Re-run the current stage on the next loop iteration."""
        token = next(self._tokens)
        handle = self._loop.call_soon(self._on_ready, token)
        self._pending = _Pending(token, handle=handle)

    def _on_ready(self, token: int) -> None:
        pending = self._pending
        if pending is None or pending.token != token:
            logger.debug("Ignoring stale readiness event (token %d)", token)
            return
        self._clear_pending()
        self._run()

    def _clear_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        if pending.fd is not None and pending.direction is not None:
            if pending.direction & Direction.READ:
                self._loop.remove_reader(pending.fd)
            if pending.direction & Direction.WRITE:
                self._loop.remove_writer(pending.fd)
        if pending.handle is not None:
            pending.handle.cancel()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _do_connect(self) -> bool:
        token = next(self._tokens)
        task = self._loop.create_task(self._open_transport())
        self._pending = _Pending(token, task=task)
        task.add_done_callback(functools.partial(self._on_connected, token))
        return _SUSPEND

    async def _open_transport(self) -> socket.socket:
        request = self.context.request
        endpoints = await self._backend.resolve(request.host, request.port)
        return await self._backend.connect(endpoints)

    def _on_connected(self, token: int, task: asyncio.Task) -> None:
        pending = self._pending
        if pending is None or pending.token != token:
            logger.debug("Ignoring stale connect completion (token %d)", token)
            return
        self._pending = None

        if task.cancelled():
            if self._cancel_reason is None:
                self._fail(FaultKind.CANCELLED, "Connect task was cancelled")
        else:
            exc = task.exception()
            if exc is None:
                self.context.transport = task.result()
                if self._cancel_reason is None:
                    self._create_protocol_session()
            elif isinstance(exc, TransferError):
                self._fail(exc.kind, exc.message)
            else:
                self._fail(FaultKind.CONNECT, f"{type(exc).__name__}: {exc}")
        self._run()

    def _create_protocol_session(self) -> None:
        ctx = self.context
        try:
            ctx.protocol_session = self._backend.new_session(ctx.transport)
        except Exception as exc:
            self._fail(FaultKind.HANDSHAKE, f"Could not initialise SSH session: {exc}")
            return
        self._advance(Stage.HANDSHAKE)

    def _do_handshake(self) -> bool:
        ctx = self.context
        return self._step(
            self._backend.handshake(ctx.protocol_session, ctx.transport),
            self._handshake_done,
        )

    def _handshake_done(self, fingerprint: bytes) -> bool:
        self.context.fingerprint = fingerprint
        # Inspected only; the host key is never checked against known_hosts.
        logger.info(
            "Host key fingerprint for %s (SHA1): %s [not verified]",
            self.context.request.host,
            format_fingerprint(fingerprint),
        )
        return self._advance(Stage.AUTHENTICATE)

    def _do_authenticate(self) -> bool:
        ctx = self.context
        creds = ctx.credentials
        if creds is None:
            return self._fail(FaultKind.AUTHENTICATION, "No credentials available")
        return self._step(
            self._backend.authenticate(ctx.protocol_session, creds.username, creds.secret),
            self._authenticate_done,
        )

    def _authenticate_done(self, _value: Any) -> bool:
        logger.debug("Authenticated as %s", self.context.credentials.username)
        self.context.credentials = None
        return self._advance(Stage.SUBSYSTEM_INIT)

    def _do_subsystem_init(self) -> bool:
        return self._step(
            self._backend.open_sftp(self.context.protocol_session),
            self._subsystem_done,
        )

    def _subsystem_done(self, sftp: Any) -> bool:
        self.context.subsystem_session = sftp
        return self._advance(Stage.FILE_OPEN)

    def _do_file_open(self) -> bool:
        ctx = self.context
        return self._step(
            self._backend.open_file(
                ctx.protocol_session, ctx.subsystem_session, ctx.request.remote_path
            ),
            self._file_open_done,
        )

    def _file_open_done(self, handle: Any) -> bool:
        ctx = self.context
        ctx.file_handle = handle
        partial = ctx.partial_path
        try:
            partial.parent.mkdir(parents=True, exist_ok=True)
            ctx.destination = open(partial, "wb")
        except OSError as exc:
            return self._fail(FaultKind.DESTINATION, f"Could not open {partial}: {exc}")
        return self._advance(Stage.STREAMING)

    def _do_stream(self) -> bool:
        ctx = self.context
        result = self._backend.read(ctx.protocol_session, ctx.file_handle, self._chunk_size)
        return self._step(result, self._chunk_received)

    def _chunk_received(self, data: bytes) -> bool:
        ctx = self.context
        ctx.reads_completed += 1
        if data:
            try:
                ctx.destination.write(data)
            except OSError as exc:
                return self._fail(FaultKind.DESTINATION, f"Could not write {ctx.partial_path}: {exc}")
            ctx.bytes_received += len(data)
            self._notify_progress()

        if self._eof_policy is EofPolicy.ZERO_READ:
            finished = not data
        else:
            finished = len(data) < self._chunk_size
        if not finished:
            # Full chunk: read again straight away without waiting.
            return _CONTINUE

        logger.info(
            "Received %s (%d bytes) from %s in %d read(s)",
            human_readable_size(ctx.bytes_received),
            ctx.bytes_received,
            ctx.request.remote_path,
            ctx.reads_completed,
        )
        return self._advance(Stage.TEARDOWN)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _do_teardown(self) -> bool:
        """Release everything that was created, newest first, then report."""
        ctx = self.context
        backend = self._backend
        self._finish_destination()

        if ctx.protocol_session is not None:
            # Release calls run in blocking mode, bounded by the teardown timeout.
            self._release("switch SSH session to blocking mode", backend.set_blocking,
                          ctx.protocol_session, self._teardown_timeout)
        if ctx.file_handle is not None:
            self._release("close remote file", backend.close_file, ctx.file_handle)
            ctx.file_handle = None
        if ctx.subsystem_session is not None:
            self._release("shut down SFTP subsystem", backend.shutdown_sftp, ctx.subsystem_session)
            ctx.subsystem_session = None
        if ctx.protocol_session is not None:
            self._release("terminate SSH session", backend.terminate, ctx.protocol_session)
            ctx.protocol_session = None
        if ctx.transport is not None:
            self._release("close transport", backend.close_transport, ctx.transport)
            ctx.transport = None

        ctx.credentials = None
        ctx.finished_at = time.monotonic()
        self._stage = Stage.DONE
        if self._error is None:
            logger.info("Transfer complete: %s", ctx.request.local_destination)
        else:
            logger.debug("Teardown finished after %s fault", self._error.kind.name)
        self._notify_complete()
        return _SUSPEND

    def _release(self, what: str, fn: Callable[..., None], *args: Any) -> None:
        """Run one release call; a failure is logged and teardown carries on."""
        try:
            fn(*args)
        except Exception:
            logger.warning("Failed to %s during teardown", what, exc_info=True)

    def _finish_destination(self) -> None:
        """Close the local sink; move it into place on success, delete it otherwise."""
        ctx = self.context
        sink, ctx.destination = ctx.destination, None
        if sink is None:
            return

        partial = ctx.partial_path
        committed = False
        try:
            sink.close()
            if self._error is None:
                os.replace(partial, ctx.request.local_destination)
                committed = True
        except OSError as exc:
            logger.error("Could not finalise %s: %s", ctx.request.local_destination, exc)
            if self._error is None:
                self._error = TransferError(
                    FaultKind.DESTINATION,
                    f"Could not finalise {ctx.request.local_destination}: {exc}",
                    stage="teardown",
                )

        if not committed:
            try:
                partial.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove partial file %s: %s", partial, exc)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _notify_progress(self) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(self.context.bytes_received)
        except Exception:
            logger.exception("Exception in on_progress callback")

    def _notify_complete(self) -> None:
        callback, self._on_complete = self._on_complete, None
        if callback is None:
            return
        try:
            callback(self._error)
        except Exception:
            logger.exception("Exception in on_complete callback")
