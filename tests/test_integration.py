"""End-to-end test: libssh2 backend against an in-process paramiko SFTP server."""

from __future__ import annotations

import asyncio
import hashlib
import os
import socket
import threading
from pathlib import Path

import pytest

paramiko = pytest.importorskip("paramiko")
pytest.importorskip("ssh2")

from sftpfetch.libssh2 import Libssh2Backend  # noqa: E402
from sftpfetch.steps import FaultKind, TransferError  # noqa: E402
from sftpfetch.transfer import fetch_file  # noqa: E402

USERNAME = "u"
PASSWORD = "p"


# ---------------------------------------------------------------------------
# Fixture server
# ---------------------------------------------------------------------------


class _Server(paramiko.ServerInterface):
    """Accepts one username/password pair and session channels."""

    def check_auth_password(self, username: str, password: str) -> int:
        if (username, password) == (USERNAME, PASSWORD):
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def get_allowed_auths(self, username: str) -> str:
        return "password"

    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED


class _Handle(paramiko.SFTPHandle):
    def stat(self):
        return paramiko.SFTPAttributes.from_stat(os.fstat(self.readfile.fileno()))


class _SFTPServer(paramiko.SFTPServerInterface):
    """Read-only SFTP view of a local directory."""

    def __init__(self, server, root: str, *args, **kwargs) -> None:
        super().__init__(server, *args, **kwargs)
        self._root = root

    def _local(self, path: str) -> str:
        return os.path.join(self._root, path.lstrip("/"))

    def open(self, path, flags, attr):
        try:
            fh = open(self._local(path), "rb")
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)
        handle = _Handle(flags)
        handle.filename = self._local(path)
        handle.readfile = fh
        return handle

    def stat(self, path):
        try:
            return paramiko.SFTPAttributes.from_stat(os.stat(self._local(path)))
        except OSError as exc:
            return paramiko.SFTPServer.convert_errno(exc.errno)

    lstat = stat


@pytest.fixture(scope="module")
def host_key() -> paramiko.RSAKey:
    return paramiko.RSAKey.generate(2048)


@pytest.fixture()
def sftp_server(tmp_path: Path, host_key: paramiko.RSAKey):
    """Serve ``tmp_path/srv`` over SFTP on a localhost port; yields (port, root)."""
    root = tmp_path / "srv"
    (root / "remote").mkdir(parents=True)

    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    listener.settimeout(0.2)
    port = listener.getsockname()[1]

    stop = threading.Event()
    transports: list[paramiko.Transport] = []

    def serve() -> None:
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(None)
            transport = paramiko.Transport(conn)
            transport.add_server_key(host_key)
            transport.set_subsystem_handler("sftp", paramiko.SFTPServer, _SFTPServer, str(root))
            transports.append(transport)
            try:
                transport.start_server(server=_Server())
            except (paramiko.SSHException, EOFError, OSError):
                continue

    thread = threading.Thread(target=serve, name="sftp-fixture", daemon=True)
    thread.start()
    yield port, root

    stop.set()
    listener.close()
    for transport in transports:
        transport.close()
    thread.join(timeout=2)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def _fetch(port: int, remote_path: str, dest: Path, password: str = PASSWORD, **kwargs):
    return asyncio.run(
        fetch_file(
            "127.0.0.1",
            remote_path,
            str(dest),
            USERNAME,
            password,
            port=port,
            timeout=30,
            backend=Libssh2Backend(),
            **kwargs,
        )
    )


class TestEndToEnd:
    @pytest.mark.parametrize("size", [0, 4095, 4096, 4097, 10000, 200_000])
    def test_byte_identical_download(
        self, sftp_server, host_key: paramiko.RSAKey, tmp_path: Path, size: int
    ) -> None:
        port, root = sftp_server
        data = os.urandom(size)
        (root / "remote" / "f").write_bytes(data)
        dest = tmp_path / "local" / "f2"

        summary = _fetch(port, "/remote/f", dest, eof_policy="zero_read")

        assert dest.read_bytes() == data
        assert summary.bytes_received == size
        assert summary.fingerprint == hashlib.sha1(host_key.asbytes()).digest()

    def test_wrong_password(self, sftp_server, tmp_path: Path) -> None:
        port, root = sftp_server
        (root / "remote" / "f").write_bytes(b"secret data")
        dest = tmp_path / "f2"

        with pytest.raises(TransferError) as info:
            _fetch(port, "/remote/f", dest, password="wrong")
        assert info.value.kind is FaultKind.AUTHENTICATION
        assert not dest.exists()

    def test_missing_remote_file(self, sftp_server, tmp_path: Path) -> None:
        port, _root = sftp_server
        dest = tmp_path / "f2"

        with pytest.raises(TransferError) as info:
            _fetch(port, "/remote/does-not-exist", dest)
        assert info.value.kind is FaultKind.FILE_OPEN
        assert not dest.exists()
