"""
Secrets and keychain integration — retrieves credentials from the
system keychain and materializes the encrypted Telethon session.

Credentials (``api-id``, ``api-hash``, ``bot_token``,
``session_encryption_key``) live in the system keychain (``secret-tool``
/ ``libsecret``).  An environment variable fallback exists for
development machines.

The Telethon session file is Fernet-encrypted at rest.  It is decrypted
into a RAM-backed temporary file only for the lifetime of the gateway
connection and removed afterwards.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from cryptography.fernet import Fernet

logger = logging.getLogger("shared.secrets")

_KEYCHAIN_SERVICE = "tg-core-users"
_ENV_PREFIX = "TG_CORE_USERS_"


def get_secret(key_name: str, service: str = _KEYCHAIN_SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool lookup service <service> key <key_name>`` and falls
    back to ``TG_CORE_USERS_<KEY_NAME>`` when ``secret-tool`` is missing or
    returns nothing.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")

    env_key = f"{_ENV_PREFIX}{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def decrypt_session_file(path: Path, key: str) -> bytes:
    """Decrypt a Fernet-encrypted Telethon session file into memory.

    Raises:
        FileNotFoundError: If the session file does not exist.
        cryptography.fernet.InvalidToken: If the key is wrong or the
            file has been tampered with.
    """
    plaintext = Fernet(key.encode()).decrypt(path.read_bytes())
    logger.info("Session file decrypted in memory: %s", path)
    return plaintext


@contextmanager
def materialized_session(path: Path, key: str) -> Iterator[str]:
    """Write the decrypted session to tmpfs and yield a Telethon session base.

    Telethon appends ``.session`` to the name it is given, so the yielded
    value has that suffix stripped.  The plaintext file and any SQLite
    side files are removed on exit.
    """
    session_bytes = decrypt_session_file(path, key)
    shm_dir = "/dev/shm" if os.path.isdir("/dev/shm") else None
    tmp_fd, tmp_path = tempfile.mkstemp(suffix=".session", dir=shm_dir)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(session_bytes)
        session_bytes = b""
        os.chmod(tmp_path, 0o600)
        yield tmp_path.removesuffix(".session")
    finally:
        for leftover in (tmp_path, tmp_path + "-journal", tmp_path + "-wal", tmp_path + "-shm"):
            if os.path.exists(leftover):
                os.remove(leftover)
