from __future__ import annotations

import base64
import binascii
import hashlib
import os
import threading

import bcrypt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from locally.core.config import get_settings
from locally.core.errors import ConfigurationError, EncryptionError, InvalidCiphertextError


NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
BCRYPT_MAX_BYTES = 72
GLOBAL_SALT = b"global-salt"


def derive_key(secret: str, salt: bytes, *, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, iterations=iterations)
    return kdf.derive(secret.encode("utf-8"))


def _seal(key: bytes, plaintext: str) -> str:
    nonce = os.urandom(NONCE_SIZE)
    # AESGCM appends the 16-byte tag to the ciphertext.
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def _open(key: bytes, encoded: str) -> str:
    try:
        raw = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise InvalidCiphertextError("ciphertext is not valid base64") from exc
    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise InvalidCiphertextError("ciphertext too short")
    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise InvalidCiphertextError("ciphertext failed authentication") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidCiphertextError("plaintext is not valid utf-8") from exc


class EncryptionService:
    """Password hashing plus per-tenant and global symmetric encryption.

    Tenant keys are derived with PBKDF2-HMAC-SHA256 over the master secret using
    ``sha256(tenant_id)`` as salt, so no per-tenant keystore is needed. Output
    is ``base64(nonce || ciphertext || tag)``.
    """

    def __init__(
        self,
        *,
        master_secret: str,
        global_secret: str,
        iterations: int = 100_000,
        bcrypt_rounds: int = 12,
    ) -> None:
        if not master_secret:
            raise ConfigurationError("encryption master secret is required")
        if not global_secret:
            raise ConfigurationError("encryption global secret is required")
        self._master_secret = master_secret
        self._iterations = iterations
        self._bcrypt_rounds = bcrypt_rounds
        self._global_key = derive_key(global_secret, GLOBAL_SALT, iterations=iterations)
        self._tenant_keys: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def hash_password(self, password: str) -> str:
        if not password:
            raise EncryptionError("password is empty")
        encoded = password.encode("utf-8")
        # bcrypt only reads the first 72 bytes; longer input would verify against any suffix.
        if len(encoded) > BCRYPT_MAX_BYTES:
            raise EncryptionError(f"password exceeds {BCRYPT_MAX_BYTES} bytes")
        try:
            hashed = bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self._bcrypt_rounds))
        except ValueError as exc:
            raise EncryptionError("password could not be hashed") from exc
        return hashed.decode("utf-8")

    def verify_password(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    def _tenant_key(self, tenant_id: str) -> bytes:
        if not tenant_id:
            raise EncryptionError("tenant id is required for tenant encryption")
        with self._lock:
            key = self._tenant_keys.get(tenant_id)
            if key is None:
                salt = hashlib.sha256(tenant_id.encode("utf-8")).digest()
                key = derive_key(self._master_secret, salt, iterations=self._iterations)
                self._tenant_keys[tenant_id] = key
            return key

    def encrypt_for_tenant(self, tenant_id: str, plaintext: str) -> str:
        return _seal(self._tenant_key(tenant_id), plaintext)

    def decrypt_for_tenant(self, tenant_id: str, ciphertext: str) -> str:
        return _open(self._tenant_key(tenant_id), ciphertext)

    def encrypt_global(self, plaintext: str) -> str:
        return _seal(self._global_key, plaintext)

    def decrypt_global(self, ciphertext: str) -> str:
        return _open(self._global_key, ciphertext)

    def encrypt_int_for_tenant(self, tenant_id: str, value: int) -> str:
        return self.encrypt_for_tenant(tenant_id, str(int(value)))

    def decrypt_int_for_tenant(self, tenant_id: str, ciphertext: str) -> int:
        text = self.decrypt_for_tenant(tenant_id, ciphertext)
        try:
            return int(text)
        except ValueError as exc:
            raise EncryptionError("decrypted value is not an integer") from exc

    def encrypt_float_for_tenant(self, tenant_id: str, value: float) -> str:
        return self.encrypt_for_tenant(tenant_id, repr(float(value)))

    def decrypt_float_for_tenant(self, tenant_id: str, ciphertext: str) -> float:
        text = self.decrypt_for_tenant(tenant_id, ciphertext)
        try:
            return float(text)
        except ValueError as exc:
            raise EncryptionError("decrypted value is not a float") from exc


_service: EncryptionService | None = None
_service_lock = threading.Lock()


def get_encryption_service() -> EncryptionService:
    # First caller wins; later calls return the same instance.
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                settings = get_settings()
                _service = EncryptionService(
                    master_secret=settings.encryption_master_secret,
                    global_secret=settings.encryption_global_secret,
                    iterations=settings.encryption_pbkdf2_iterations,
                    bcrypt_rounds=settings.auth_bcrypt_rounds,
                )
    return _service


def reset_encryption_service() -> None:
    global _service
    with _service_lock:
        _service = None
