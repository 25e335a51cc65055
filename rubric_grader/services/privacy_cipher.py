"""
Privacy Cipher
==============
Client-side symmetric encryption for student names and grading payloads.

The privacy key is a passphrase that only ever lives on the client. Each call
to encrypt() derives a Fernet key from the passphrase with a fresh random
salt, so encrypting the same text twice never yields the same ciphertext.

Token layout: <pbkdf2 iterations>$<urlsafe b64 salt>$<fernet token>
"""
import base64
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from rubric_grader.config import config
from rubric_grader.exceptions import PrivacyKeyMissingError

logger = logging.getLogger(__name__)

PRIVACY_KEY_STORAGE_KEY = "RUBRIC_PRIVACY_KEY"
SALT_BYTES = 16
SEPARATOR = "$"
MAX_ITERATIONS = 5_000_000


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def encrypt(plaintext: str, key: str) -> str:
    """Encrypt text with the privacy key. Raises PrivacyKeyMissingError without a key."""
    if not key:
        raise PrivacyKeyMissingError("No privacy key provided")

    iterations = int(config.kdf_iterations)
    salt = os.urandom(SALT_BYTES)
    token = Fernet(_derive_key(key, salt, iterations)).encrypt(plaintext.encode("utf-8"))
    salt_text = base64.urlsafe_b64encode(salt).decode("ascii")
    return SEPARATOR.join([str(iterations), salt_text, token.decode("ascii")])


def decrypt(ciphertext: str, key: str) -> Optional[str]:
    """
    Decrypt a value produced by encrypt().

    Returns None for a wrong key, a missing key or malformed ciphertext, so
    callers can tell "undecryptable" apart from "no data" without handling
    exceptions.
    """
    if not key or not ciphertext or not isinstance(ciphertext, str):
        return None

    parts = ciphertext.split(SEPARATOR)
    if len(parts) != 3:
        return None

    try:
        iterations = int(parts[0])
        salt = base64.urlsafe_b64decode(parts[1].encode("ascii"))
        if not 0 < iterations <= MAX_ITERATIONS or not salt:
            return None
        fernet = Fernet(_derive_key(key, salt, iterations))
        return fernet.decrypt(parts[2].encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError, TypeError) as e:
        logger.debug("Decryption failed: %s", type(e).__name__)
        return None


def privacy_key_storage_key(owner: Optional[str] = None) -> str:
    return f"{PRIVACY_KEY_STORAGE_KEY}_{owner}" if owner else PRIVACY_KEY_STORAGE_KEY


class PrivacyKeyring:
    """
    Holds each client's privacy key in local device storage, one per owner.

    The keyring never invents a key: until set() is called for an owner,
    key_for() returns None and encrypted persistence stays disabled for them.
    """

    def __init__(self, storage):
        self.storage = storage

    def key_for(self, owner: Optional[str] = None) -> Optional[str]:
        return self.storage.get(privacy_key_storage_key(owner)) or None

    def set(self, key: str, owner: Optional[str] = None):
        if not key or not key.strip():
            raise PrivacyKeyMissingError("Privacy key cannot be empty")
        self.storage.set(privacy_key_storage_key(owner), key)

    def clear(self, owner: Optional[str] = None):
        self.storage.remove(privacy_key_storage_key(owner))
