"""Secret storage for profile API keys.

Secrets never touch the conversation database. The registry talks to a
``SecretStore``; the file-backed implementation keeps a JSON map of
``<namespace>_<profile_id>`` -> Fernet token next to a 0600 key file.
"""

import base64
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from chatdesk.core.exceptions import SecretStoreError

logger = structlog.get_logger()

SALT_SIZE = 16
KDF_ITERATIONS = 480_000


def derive_fernet_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a passphrase using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class SecretStore(ABC):
    """Key/value store for secret strings."""

    def __init__(self, namespace: str = "api_key"):
        self.namespace = namespace

    def key_for(self, profile_id: str) -> str:
        return f"{self.namespace}_{profile_id}"

    @abstractmethod
    def set(self, key: str, secret: str) -> None: ...

    @abstractmethod
    def get(self, key: str) -> str | None: ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a secret; a missing key is not an error."""


class InMemorySecretStore(SecretStore):
    def __init__(self, namespace: str = "api_key"):
        super().__init__(namespace)
        self._secrets: dict[str, str] = {}

    def set(self, key: str, secret: str) -> None:
        self._secrets[key] = secret

    def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    def delete(self, key: str) -> None:
        self._secrets.pop(key, None)


class EncryptedFileSecretStore(SecretStore):
    """Fernet-encrypted secrets in a JSON file.

    Without a passphrase the Fernet key is generated on first use and written
    to ``key_path`` with mode 0600. With a passphrase, ``key_path`` holds only
    the PBKDF2 salt.
    """

    def __init__(
        self,
        path: Path,
        key_path: Path,
        namespace: str = "api_key",
        passphrase: str | None = None,
    ):
        super().__init__(namespace)
        self.path = Path(path)
        self.key_path = Path(key_path)
        self._passphrase = passphrase
        self._fernet: Fernet | None = None
        self._lock = threading.Lock()

    def set(self, key: str, secret: str) -> None:
        with self._lock:
            tokens = self._read()
            tokens[key] = self._cipher().encrypt(secret.encode()).decode()
            self._write(tokens)

    def get(self, key: str) -> str | None:
        with self._lock:
            token = self._read().get(key)
            if token is None:
                return None
            try:
                return self._cipher().decrypt(token.encode()).decode()
            except InvalidToken as e:
                logger.error("secret_decrypt_failed", key=key)
                raise SecretStoreError(f"Secret {key} cannot be decrypted with the current key.") from e

    def delete(self, key: str) -> None:
        with self._lock:
            tokens = self._read()
            if tokens.pop(key, None) is not None:
                self._write(tokens)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_key())
        return self._fernet

    def _load_key(self) -> bytes:
        try:
            if self.key_path.exists():
                material = self.key_path.read_bytes()
            else:
                material = os.urandom(SALT_SIZE) if self._passphrase else Fernet.generate_key()
                self.key_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(material)
                logger.info("secret_key_created", path=str(self.key_path))
        except OSError as e:
            raise SecretStoreError(f"Cannot access secret key file {self.key_path}: {e}") from e

        if self._passphrase:
            return derive_fernet_key(self._passphrase, material[:SALT_SIZE])
        return material.strip()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SecretStoreError(f"Cannot read secret file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise SecretStoreError(f"Secret file {self.path} is corrupt.")
        return data

    def _write(self, tokens: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".secrets-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(tokens, f)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise SecretStoreError(f"Cannot write secret file {self.path}: {e}") from e
