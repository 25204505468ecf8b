"""
Key Encapsulation Mechanisms

A KEM turns a recipient public key into (ciphertext, shared_secret); the
holder of the matching private key recovers the same shared secret from the
ciphertext. Two schemes share one contract:

- x25519:     ephemeral-static Curve25519 Diffie-Hellman. The ephemeral public
              key is the ciphertext. The shared secret is HKDF over the DH
              output bound to both public keys.
- ml-kem-768: NIST FIPS 203 lattice KEM (CRYSTALS-Kyber) via kyber-py.

Rejection behaviour: neither scheme raises on a well-formed ciphertext that
was made for a different key. ML-KEM returns a pseudo-random secret (implicit
rejection) and X25519 simply computes a different DH value, so the mismatch
shows up as an AEAD tag failure downstream. Malformed or mis-sized inputs
raise InvalidKeyError immediately.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Type

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from kyber_py.ml_kem import ML_KEM_768

from .cipher import ensure_secure_random
from .errors import InvalidKeyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyPair:
    """
    A user's long-term KEM keypair.

    Attributes:
        public_key: Raw public key bytes (safe to publish)
        private_key: Raw private key bytes (never leaves the device)
        scheme: Name of the KEM the keys belong to
    """
    public_key: bytes
    private_key: bytes = field(repr=False)
    scheme: str = "x25519"


@dataclass(frozen=True)
class Encapsulation:
    """
    Result of KEM encapsulation.

    Attributes:
        ciphertext: Public KEM ciphertext to send along with the message
        shared_secret: Secret shared with the private key holder
    """
    ciphertext: bytes
    shared_secret: bytes = field(repr=False)


class KEM(ABC):
    """Common contract for key encapsulation schemes."""

    name: str = ""
    public_key_size: int = 0
    private_key_size: int = 0
    ciphertext_size: int = 0
    shared_secret_size: int = 32

    @abstractmethod
    def generate_keypair(self) -> KeyPair:
        """Generate a fresh keypair from the OS CSPRNG"""

    @abstractmethod
    def encapsulate(self, public_key: bytes) -> Encapsulation:
        """Create a fresh shared secret and its ciphertext for `public_key`"""

    @abstractmethod
    def decapsulate(self, ciphertext: bytes, private_key: bytes) -> bytes:
        """Recover the shared secret from `ciphertext` with `private_key`"""

    def _check_size(self, what: str, value: bytes, expected: int) -> bytes:
        if not isinstance(value, (bytes, bytearray)):
            raise InvalidKeyError(f"{self.name} {what} must be bytes, got {type(value).__name__}")
        if len(value) != expected:
            raise InvalidKeyError(
                f"{self.name} {what} must be {expected} bytes, got {len(value)}"
            )
        return bytes(value)

    def __repr__(self):
        return f"{type(self).__name__}({self.name})"


class X25519KEM(KEM):
    """
    Ephemeral-static X25519 used as a KEM.

    encapsulate() generates a one-off ephemeral keypair per call, so two calls
    against the same public key never share a ciphertext or a secret.
    """

    name = "x25519"
    public_key_size = 32
    private_key_size = 32
    ciphertext_size = 32
    shared_secret_size = 32

    INFO = b"e2ee-x25519-kem-v1"

    def generate_keypair(self) -> KeyPair:
        ensure_secure_random()
        private_key = X25519PrivateKey.generate()
        return KeyPair(
            public_key=_raw_public(private_key.public_key()),
            private_key=private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption()
            ),
            scheme=self.name
        )

    def encapsulate(self, public_key: bytes) -> Encapsulation:
        public_key = self._check_size("public key", public_key, self.public_key_size)
        ensure_secure_random()

        recipient = X25519PublicKey.from_public_bytes(public_key)
        ephemeral = X25519PrivateKey.generate()
        ephemeral_public = _raw_public(ephemeral.public_key())

        dh_output = self._exchange(ephemeral, recipient)
        shared_secret = self._derive(dh_output, ephemeral_public, public_key)
        return Encapsulation(ciphertext=ephemeral_public, shared_secret=shared_secret)

    def decapsulate(self, ciphertext: bytes, private_key: bytes) -> bytes:
        ciphertext = self._check_size("ciphertext", ciphertext, self.ciphertext_size)
        private_key = self._check_size("private key", private_key, self.private_key_size)

        own = X25519PrivateKey.from_private_bytes(private_key)
        ephemeral = X25519PublicKey.from_public_bytes(ciphertext)

        dh_output = self._exchange(own, ephemeral)
        return self._derive(dh_output, ciphertext, _raw_public(own.public_key()))

    @staticmethod
    def _exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
        try:
            return private_key.exchange(public_key)
        except ValueError as e:
            # cryptography rejects low-order points (all-zero output)
            raise InvalidKeyError("X25519 exchange rejected the public key") from e

    def _derive(self, dh_output: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
        # Binding both public keys makes every bit of the ciphertext matter
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=self.shared_secret_size,
            salt=None,
            info=self.INFO + ephemeral_public + recipient_public
        )
        return hkdf.derive(dh_output)


class MLKEM768(KEM):
    """
    ML-KEM-768 (FIPS 203) backed by kyber-py.

    Decapsulation of a ciphertext made for another key does not raise; it
    returns a pseudo-random secret per the standard's implicit rejection.
    """

    name = "ml-kem-768"
    public_key_size = 1184
    private_key_size = 2400
    ciphertext_size = 1088
    shared_secret_size = 32

    def __init__(self):
        self._kem = ML_KEM_768

    def generate_keypair(self) -> KeyPair:
        ensure_secure_random()
        ek, dk = self._kem.keygen()
        logger.debug("ML-KEM-768 keys: ek=%dB dk=%dB", len(ek), len(dk))
        return KeyPair(public_key=ek, private_key=dk, scheme=self.name)

    def encapsulate(self, public_key: bytes) -> Encapsulation:
        public_key = self._check_size("public key", public_key, self.public_key_size)
        ensure_secure_random()
        try:
            shared_secret, ciphertext = self._kem.encaps(public_key)
        except ValueError as e:
            # Raised by the FIPS 203 encapsulation key modulus check
            raise InvalidKeyError(f"ML-KEM-768 public key rejected: {e}") from e
        return Encapsulation(ciphertext=ciphertext, shared_secret=shared_secret)

    def decapsulate(self, ciphertext: bytes, private_key: bytes) -> bytes:
        ciphertext = self._check_size("ciphertext", ciphertext, self.ciphertext_size)
        private_key = self._check_size("private key", private_key, self.private_key_size)
        try:
            return self._kem.decaps(private_key, ciphertext)
        except ValueError as e:
            raise InvalidKeyError(f"ML-KEM-768 decapsulation rejected input: {e}") from e


def _raw_public(public_key: X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


KEM_SCHEMES: Dict[str, Type[KEM]] = {
    X25519KEM.name: X25519KEM,
    MLKEM768.name: MLKEM768,
}


def get_kem(name: str) -> KEM:
    """
    Look up a KEM implementation by scheme name.

    Raises:
        ValueError: If the scheme is unknown
    """
    try:
        return KEM_SCHEMES[name]()
    except KeyError:
        known = ", ".join(sorted(KEM_SCHEMES))
        raise ValueError(f"Unknown KEM scheme {name!r} (expected one of: {known})") from None
