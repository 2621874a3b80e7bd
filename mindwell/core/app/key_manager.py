from __future__ import annotations

import base64
import binascii
import hmac
import logging
import math
import re
import secrets
import time
import uuid
from typing import Callable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.exc import SQLAlchemyError

from .database import Database, User, utcnow
from .errors import (
    AuthenticationError,
    DecryptionError,
    EncryptionError,
    KeyDerivationError,
    LockedOutError,
    SessionLockedError,
    StorageError,
    ValidationError,
)
from .settings import DEFAULT_LOCKOUT_SECONDS, DEFAULT_MAX_UNLOCK_ATTEMPTS, DEFAULT_PBKDF2_ITERATIONS

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
VERIFIER_CONSTANT = "mindwell-key-verifier-v1"
MIN_PASSWORD_LENGTH = 8


class SessionKey:
    """AES-256 key material held in a mutable buffer so it can be zeroed."""

    def __init__(self, material: bytes) -> None:
        if len(material) != KEY_LENGTH:
            raise KeyDerivationError(f"Expected a {KEY_LENGTH}-byte key, got {len(material)} bytes")
        self._buffer = bytearray(material)
        self._wiped = False

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def raw(self) -> bytes:
        if self._wiped:
            raise SessionLockedError("Session key has been wiped")
        return bytes(self._buffer)

    def zero(self) -> None:
        for index in range(len(self._buffer)):
            self._buffer[index] = 0
        self._wiped = True

    def __repr__(self) -> str:
        return "SessionKey(<redacted>)"


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_LENGTH)


def generate_nonce() -> bytes:
    return secrets.token_bytes(NONCE_LENGTH)


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_PBKDF2_ITERATIONS) -> SessionKey:
    if not password:
        raise KeyDerivationError("Password must not be empty")
    if not salt:
        raise KeyDerivationError("Salt must not be empty")
    if iterations < 1:
        raise KeyDerivationError("Iteration count must be positive")
    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        material = kdf.derive(password.encode("utf-8"))
    except (TypeError, ValueError, UnicodeEncodeError) as exc:
        raise KeyDerivationError(f"Key derivation failed: {exc}") from exc
    return SessionKey(material)


def encrypt_text(plaintext: str, key: SessionKey) -> str:
    """Encrypt to base64(nonce || ciphertext || tag) with a fresh random nonce."""
    try:
        nonce = generate_nonce()
        sealed = AESGCM(key.raw()).encrypt(nonce, plaintext.encode("utf-8"), None)
    except (TypeError, ValueError, UnicodeEncodeError) as exc:
        raise EncryptionError(f"Encryption failed: {exc}") from exc
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_text(blob: str, key: SessionKey) -> str:
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionError("Ciphertext is not valid base64") from exc
    if len(raw) < NONCE_LENGTH + TAG_LENGTH:
        raise DecryptionError("Ciphertext is too short")
    try:
        plaintext = AESGCM(key.raw()).decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None)
    except InvalidTag as exc:
        raise DecryptionError("Authentication tag mismatch") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Plaintext is not valid UTF-8") from exc


def password_policy_errors(password: str) -> List[str]:
    errors: List[str] = []
    if not password:
        return ["Password must not be empty"]
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain a lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain a number")
    return errors


def validate_password(password: str) -> None:
    errors = password_policy_errors(password)
    if errors:
        raise ValidationError("Password does not meet the policy", errors)


def calculate_retry_after(locked_until: float, now: float) -> int:
    return max(1, int(math.ceil(locked_until - now)))


class KeyManager:
    """Session object for the password-derived key.

    The key lives only in memory between ``unlock``/``create_new_key`` and
    ``lock``. The salt, the verifier blob and the iteration count are the only
    things persisted, in the ``users`` table.
    """

    def __init__(
        self,
        database: Database,
        iterations: int = DEFAULT_PBKDF2_ITERATIONS,
        max_attempts: int = DEFAULT_MAX_UNLOCK_ATTEMPTS,
        lockout_seconds: int = DEFAULT_LOCKOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.database = database
        self.iterations = iterations
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._key: Optional[SessionKey] = None
        self._user_id: Optional[str] = None
        self._failed_attempts = 0
        self._locked_until: Optional[float] = None

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    def stored_user(self) -> Optional[User]:
        session = self.database.session()
        try:
            return session.query(User).order_by(User.id.asc()).first()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read user record: {exc}") from exc
        finally:
            session.close()

    def has_stored_key(self) -> bool:
        return self.stored_user() is not None

    def create_new_key(self, password: str) -> SessionKey:
        validate_password(password)
        if self.has_stored_key():
            raise ValidationError("An account already exists on this device")
        salt = generate_salt()
        key = derive_key(password, salt, self.iterations)
        verifier = encrypt_text(VERIFIER_CONSTANT, key)
        user_id = uuid.uuid4().hex

        session = self.database.session()
        try:
            session.add(User(
                user_id=user_id,
                salt=base64.b64encode(salt).decode("ascii"),
                key_verifier=verifier,
                kdf_iterations=self.iterations,
                created_at=utcnow(),
            ))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            key.zero()
            raise StorageError(f"Failed to persist user record: {exc}") from exc
        finally:
            session.close()

        self._set_key(key, user_id)
        logger.info("Created new encryption key for user %s", user_id)
        return key

    def unlock(self, password: str) -> SessionKey:
        self._check_lockout()
        user = self.stored_user()
        if user is None:
            raise AuthenticationError("No account found on this device")

        try:
            salt = base64.b64decode(user.salt, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise StorageError("Stored salt is corrupt") from exc
        candidate = derive_key(password, salt, user.kdf_iterations)

        if not self._verify(candidate, user.key_verifier):
            candidate.zero()
            self._register_failure()
            raise AuthenticationError("Invalid password")

        self._failed_attempts = 0
        self._locked_until = None
        self._set_key(candidate, user.user_id)
        logger.info("Unlocked session for user %s", user.user_id)
        return candidate

    def lock(self) -> None:
        if self._key is not None:
            self._key.zero()
        self._key = None
        self._user_id = None
        logger.info("Session locked")

    def require_key(self) -> SessionKey:
        if self._key is None:
            raise SessionLockedError("Session is locked; unlock with your password first")
        return self._key

    def export_key(self) -> str:
        key = self.require_key()
        logger.warning("Raw session key exported by user request")
        return base64.b64encode(key.raw()).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        return encrypt_text(plaintext, self.require_key())

    def decrypt(self, blob: str) -> str:
        return decrypt_text(blob, self.require_key())

    def _set_key(self, key: SessionKey, user_id: str) -> None:
        if self._key is not None and self._key is not key:
            self._key.zero()
        self._key = key
        self._user_id = user_id

    def _verify(self, candidate: SessionKey, verifier: str) -> bool:
        try:
            recovered = decrypt_text(verifier, candidate)
        except DecryptionError:
            return False
        return hmac.compare_digest(recovered.encode("utf-8"), VERIFIER_CONSTANT.encode("utf-8"))

    def _check_lockout(self) -> None:
        if self._locked_until is None:
            return
        now = self._clock()
        if now < self._locked_until:
            raise LockedOutError(calculate_retry_after(self._locked_until, now))
        self._locked_until = None
        self._failed_attempts = 0

    def _register_failure(self) -> None:
        self._failed_attempts += 1
        logger.warning("Failed unlock attempt %d of %d", self._failed_attempts, self.max_attempts)
        if self._failed_attempts >= self.max_attempts:
            self._locked_until = self._clock() + self.lockout_seconds
            logger.warning("Unlock locked out for %d seconds", self.lockout_seconds)
