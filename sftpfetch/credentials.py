"""Password storage in the OS keyring.

Passwords are never written to the config files; they live in the
platform keyring under the ``sftpfetch`` service, keyed by ``user@host``.
"""

from __future__ import annotations

import logging

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "sftpfetch"


def account_key(username: str, host: str) -> str:
    """Keyring account name for *username* on *host*."""
    return f"{username}@{host}"


def get_password(username: str, host: str) -> str | None:
    """Return the stored password for ``username@host``, or ``None``."""
    try:
        password = keyring.get_password(KEYRING_SERVICE, account_key(username, host))
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring lookup failed for %s: %s", account_key(username, host), exc)
        return None
    if password is None:
        logger.debug("No keyring entry for %s", account_key(username, host))
    return password


def store_password(username: str, host: str, password: str) -> None:
    """Store *password* in the OS keyring for ``username@host``."""
    keyring.set_password(KEYRING_SERVICE, account_key(username, host), password)
    logger.debug("Password stored in keyring for %s", account_key(username, host))


def delete_password(username: str, host: str) -> None:
    """Remove the stored password for ``username@host`` if there is one."""
    account = account_key(username, host)
    try:
        keyring.delete_password(KEYRING_SERVICE, account)
    except keyring.errors.PasswordDeleteError:
        logger.debug("No keyring entry to delete for %s", account)
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring delete failed for %s: %s", account, exc)
    else:
        logger.info("Password deleted from keyring for %s", account)
