"""
Hybrid envelope encryption: KEM + AES-256-GCM.

seal() runs one fresh KEM encapsulation against the recipient key, derives a
message key from the shared secret and encrypts the body with it. unseal()
reverses that with the matching private key. Bundles are immutable.
"""

from dataclasses import dataclass, field
from typing import Dict

from .cipher import decrypt_message, derive_message_key, encrypt_message
from .codec import bytes_to_text, text_to_bytes
from .errors import DecodeError, InvalidKeyError
from .kem import KEM

WIRE_FIELDS = ("ciphertext", "encapsulated_key")


@dataclass(frozen=True)
class EncryptedMessage:
    """
    One encrypted payload addressed to exactly one public key.

    Attributes:
        ciphertext: base64 of nonce + AES-GCM ciphertext + tag
        shared_secret: base64 KEM shared secret. Client-local only, it is
            left out of repr() and of the wire format.
        encapsulated_key: base64 KEM ciphertext
    """
    ciphertext: str
    shared_secret: str = field(repr=False)
    encapsulated_key: str

    def to_wire(self) -> Dict[str, str]:
        """Fields that may be sent to and stored by the server"""
        return {
            'ciphertext': self.ciphertext,
            'encapsulated_key': self.encapsulated_key
        }

    @classmethod
    def from_wire(cls, data: Dict) -> 'EncryptedMessage':
        """Rebuild a bundle received from the server"""
        try:
            return cls(
                ciphertext=data['ciphertext'],
                shared_secret="",
                encapsulated_key=data['encapsulated_key']
            )
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Malformed message bundle: {e}") from e


@dataclass(frozen=True)
class OutgoingMessage:
    """
    The two bundles of one chat message.

    Attributes:
        recipient_copy: Encapsulated to the recipient's public key
        sender_copy: Encapsulated to the sender's own key (self-copy)
    """
    recipient_copy: EncryptedMessage
    sender_copy: EncryptedMessage

    def to_wire(self) -> Dict[str, Dict[str, str]]:
        return {
            'recipient_copy': self.recipient_copy.to_wire(),
            'sender_copy': self.sender_copy.to_wire()
        }


def seal(kem: KEM, plaintext: bytes, public_key: bytes) -> EncryptedMessage:
    """
    Encrypt `plaintext` so only the holder of the matching private key can read it.

    Args:
        kem: KEM scheme the public key belongs to
        plaintext: Message bytes
        public_key: Recipient's raw public key

    Returns:
        EncryptedMessage with base64 fields

    Raises:
        InvalidKeyError: If the public key is malformed for the scheme
    """
    encapsulation = kem.encapsulate(public_key)
    key = derive_message_key(encapsulation.shared_secret)
    combined = encrypt_message(key, plaintext)
    return EncryptedMessage(
        ciphertext=bytes_to_text(combined),
        shared_secret=bytes_to_text(encapsulation.shared_secret),
        encapsulated_key=bytes_to_text(encapsulation.ciphertext)
    )


def unseal(kem: KEM, message: EncryptedMessage, private_key: bytes) -> bytes:
    """
    Decrypt a bundle with the private key it was encapsulated to.

    Only `encapsulated_key` and `ciphertext` are used; the shared secret is
    always recomputed from the private key.

    Raises:
        DecodeError: If a field is not valid base64
        InvalidKeyError: If the KEM rejects the key or ciphertext
        AuthenticationError: If the tag does not verify
    """
    encapsulated_key = text_to_bytes(message.encapsulated_key)
    combined = text_to_bytes(message.ciphertext)
    if not private_key:
        raise InvalidKeyError("Private key is empty")
    shared_secret = kem.decapsulate(encapsulated_key, private_key)
    key = derive_message_key(shared_secret)
    return decrypt_message(key, combined)
