"""
Symmetric Cipher

AES-256-GCM authenticated encryption of message bodies, the HKDF step that
turns a KEM shared secret into a cipher key, and the secure random source
every other primitive draws from.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationError, InvalidKeyError, UnavailableEnvironmentError

KEY_SIZE = 32    # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16

MESSAGE_KEY_INFO = b"e2ee-message-key-v1"


def secure_random(length: int) -> bytes:
    """
    Read `length` bytes from the operating system CSPRNG.

    Raises:
        UnavailableEnvironmentError: If the platform has no secure random source
    """
    try:
        return os.urandom(length)
    except NotImplementedError as e:
        raise UnavailableEnvironmentError("No secure random source available") from e


def ensure_secure_random() -> None:
    """Fail early when the CSPRNG is missing, before any key material is made"""
    secure_random(1)


def derive_message_key(shared_secret: bytes, info: bytes = MESSAGE_KEY_INFO) -> bytes:
    """
    Derive the 32-byte AES key from a KEM shared secret.

    KEM secrets are not required to match the cipher key length, so the
    mapping always goes through HKDF-SHA256 instead of slicing.

    Args:
        shared_secret: Output of KEM encapsulate/decapsulate
        info: Context string for domain separation

    Returns:
        32-byte symmetric key
    """
    if not shared_secret:
        raise InvalidKeyError("Shared secret is empty")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=info
    )
    return hkdf.derive(shared_secret)


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        size = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise InvalidKeyError(f"AES-256 key must be {KEY_SIZE} bytes, got {size}")


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    _check_key(key)
    nonce = secure_random(NONCE_SIZE)
    aesgcm = AESGCM(bytes(key))
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def decrypt_message(key: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: nonce + encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationError: If the tag does not verify or the input is truncated
    """
    _check_key(key)
    if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise AuthenticationError("Ciphertext too short")

    nonce = ciphertext[:NONCE_SIZE]
    actual_ciphertext = ciphertext[NONCE_SIZE:]

    aesgcm = AESGCM(bytes(key))
    try:
        return aesgcm.decrypt(nonce, actual_ciphertext, associated_data)
    except InvalidTag as e:
        raise AuthenticationError("Authentication tag verification failed") from e
