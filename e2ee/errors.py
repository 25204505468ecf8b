"""
Error taxonomy for the end-to-end encryption core.

Every failure is a distinct, catchable subclass of CryptoError so callers can
decide what to show the user. Nothing here is retried automatically.
"""


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecodeError(CryptoError):
    """Text input is not valid base64"""
    pass


class InvalidKeyError(CryptoError):
    """Key material or KEM ciphertext is malformed or has the wrong length"""
    pass


class AuthenticationError(CryptoError):
    """AEAD tag did not verify (wrong key, corrupted or truncated ciphertext)"""
    pass


class DecryptionError(CryptoError):
    """A message bundle could not be decrypted; wraps the underlying cause"""
    pass


class RecipientKeyNotFoundError(CryptoError):
    """The recipient has not published a public key, or the lookup failed"""
    pass


class KeysNotFoundError(CryptoError):
    """The local identity has no keypair yet; run initialize() first"""
    pass


class KeyPublicationError(CryptoError):
    """The public key could not be published to the directory"""
    pass


class UnavailableEnvironmentError(CryptoError):
    """No secure random source or no durable store in this execution context"""
    pass
