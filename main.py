"""sftpfetch — entry point.

Configures logging, resolves connection details from the command line and
saved profiles, and runs one download on an asyncio event loop.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys

import keyring.errors

from sftpfetch import credentials
from sftpfetch.config import ConfigManager
from sftpfetch.steps import TransferError
from sftpfetch.transfer import fetch_file
from sftpfetch.utils.path_helpers import human_readable_size, normalize_local_path

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("keyring").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sftpfetch", description="Download one file over SFTP.")
    p.add_argument("host", help="Host name, or a saved profile name with --profile")
    p.add_argument("remote_path", help="Absolute path of the file on the server")
    p.add_argument("local_path", help="Where to write the file locally")
    p.add_argument("-u", "--user", help="SSH username (default: profile or local user)")
    p.add_argument("-p", "--port", type=int, help="SSH port")
    p.add_argument("--profile", action="store_true", help="Treat HOST as a saved profile name")
    p.add_argument("--save-profile", metavar="NAME",
                   help="After a successful download, save host/user/port as profile NAME")
    p.add_argument("--timeout", type=float, help="Give up after this many seconds")
    p.add_argument("--chunk-size", type=int, help="Bytes requested per SFTP read")
    p.add_argument("--eof", choices=("short_read", "zero_read"), help="End-of-file policy")

    pw = p.add_mutually_exclusive_group()
    pw.add_argument("--ask-password", action="store_true",
                    help="Prompt for the password instead of using the keyring")
    pw.add_argument("--remember-password", action="store_true",
                    help="Prompt for the password and store it in the keyring on success")
    pw.add_argument("--forget-password", action="store_true",
                    help="Remove the stored keyring password, then prompt for one")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def _remember(username: str, host: str, secret: str, log: logging.Logger) -> None:
    try:
        credentials.store_password(username, host, secret)
    except keyring.errors.KeyringError as exc:
        log.warning("Could not store password in keyring: %s", exc)
    else:
        log.info("Password for %s stored in keyring", credentials.account_key(username, host))


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run one transfer; returns the process exit code."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    log = logging.getLogger(__name__)

    config = ConfigManager()
    options = config.transfer_options()

    host = args.host
    username = args.user
    if args.profile:
        profile = config.get_profile(args.host)
        if profile is None:
            log.error("No saved profile named %r", args.host)
            return 2
        host = profile["host"]
        username = username or profile.get("username")
        if profile.get("port"):
            options["port"] = int(profile["port"])

    username = username or getpass.getuser()
    if args.port is not None:
        options["port"] = args.port
    if args.timeout is not None:
        options["timeout"] = args.timeout
    if args.chunk_size is not None:
        options["chunk_size"] = args.chunk_size
    if args.eof is not None:
        options["eof_policy"] = args.eof

    if args.forget_password:
        credentials.delete_password(username, host)

    secret = None
    if args.ask_password or args.remember_password or args.forget_password:
        secret = getpass.getpass(f"Password for {username}@{host}: ")
    destination = str(normalize_local_path(args.local_path))

    try:
        summary = asyncio.run(
            fetch_file(host, args.remote_path, destination, username, secret, **options)
        )
    except ValueError as exc:
        log.error("%s", exc)
        return 2
    except TransferError as exc:
        log.error("Transfer failed (%s): %s", exc.kind.name, exc.message)
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130

    log.info(
        "Wrote %s to %s in %.2fs",
        human_readable_size(summary.bytes_received),
        summary.local_destination,
        summary.elapsed,
    )

    if args.remember_password and secret:
        _remember(username, host, secret, log)
    if args.save_profile:
        config.save_profile(
            {"name": args.save_profile, "host": host, "username": username, "port": options["port"]}
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
