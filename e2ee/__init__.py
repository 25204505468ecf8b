"""
End-to-end encryption core for the messenger.

Implements hybrid public-key encryption of chat messages:
- KEM (X25519 or ML-KEM-768) to agree a fresh secret per message
- AES-256-GCM for the message body
- Dual bundles so sender and recipient can each decrypt their own copy
"""

from .codec import bytes_to_text, text_to_bytes
from .config import EncryptionConfig
from .directory import DirectoryError, InMemoryDirectory, PublicKeyDirectory
from .envelope import EncryptedMessage, OutgoingMessage
from .errors import (
    AuthenticationError,
    CryptoError,
    DecodeError,
    DecryptionError,
    InvalidKeyError,
    KeyPublicationError,
    KeysNotFoundError,
    RecipientKeyNotFoundError,
    UnavailableEnvironmentError,
)
from .kem import KEM, KeyPair, MLKEM768, X25519KEM, get_kem
from .keystore import KeyStore, MemoryStore
from .manager import EncryptionManager

__all__ = [
    'bytes_to_text',
    'text_to_bytes',
    'EncryptionConfig',
    'DirectoryError',
    'InMemoryDirectory',
    'PublicKeyDirectory',
    'EncryptedMessage',
    'OutgoingMessage',
    'AuthenticationError',
    'CryptoError',
    'DecodeError',
    'DecryptionError',
    'InvalidKeyError',
    'KeyPublicationError',
    'KeysNotFoundError',
    'RecipientKeyNotFoundError',
    'UnavailableEnvironmentError',
    'KEM',
    'KeyPair',
    'MLKEM768',
    'X25519KEM',
    'get_kem',
    'KeyStore',
    'MemoryStore',
    'EncryptionManager',
]
