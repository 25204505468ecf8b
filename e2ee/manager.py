"""
Encryption Manager

Orchestrates the per-user key lifecycle and message encryption:

    Uninitialized --initialize()--> Ready

initialize() generates a keypair, stores it locally and publishes the public
key. Publication is all-or-nothing: if the directory does not accept the key,
the local keypair is removed again so a user is never left holding keys that
nobody can encrypt to.

Each chat message is encrypted twice with independent KEM operations, once to
the recipient and once to the sender (self-copy), so both sides can read it
back later.
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Optional

from .cipher import ensure_secure_random
from .codec import bytes_to_text, text_to_bytes
from .config import EncryptionConfig
from .directory import DirectoryError, PublicKeyDirectory
from .envelope import EncryptedMessage, OutgoingMessage, seal, unseal
from .errors import (
    AuthenticationError,
    DecodeError,
    DecryptionError,
    InvalidKeyError,
    KeyPublicationError,
    KeysNotFoundError,
    RecipientKeyNotFoundError,
)
from .kem import KEM, KeyPair, get_kem
from .keystore import KeyStore

logger = logging.getLogger(__name__)


class _UserLock:
    """An initialize lock plus the number of tasks holding or waiting on it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


class EncryptionManager:
    """
    End-to-end encryption for one device.

    Args:
        key_store: Local keypair storage
        directory: Public key directory collaborator
        kem: KEM implementation (defaults to the scheme named in config)
        config: Timeouts and scheme selection
    """

    def __init__(
        self,
        key_store: KeyStore,
        directory: PublicKeyDirectory,
        kem: Optional[KEM] = None,
        config: Optional[EncryptionConfig] = None,
    ):
        self.config = config or EncryptionConfig()
        self.kem = kem or get_kem(self.config.kem)
        self._key_store = key_store
        self._directory = directory
        # event loop -> user id -> _UserLock; asyncio locks cannot cross loops
        self._init_locks = weakref.WeakKeyDictionary()

    @asynccontextmanager
    async def _initializing(self, user_id: str):
        """Hold the per-user initialize lock for the running event loop."""
        locks = self._init_locks.setdefault(asyncio.get_running_loop(), {})
        entry = locks.get(user_id)
        if entry is None:
            entry = locks[user_id] = _UserLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del locks[user_id]

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def has_keys(self, user_id: str) -> bool:
        return self._key_store.has(user_id)

    async def initialize(self, user_id: str) -> str:
        """
        Make sure `user_id` has a local keypair and a published public key.

        Calling this again for a Ready user is a no-op. Concurrent calls for
        the same user are serialised, so only one keypair is ever generated.

        Returns:
            The user's base64 public key

        Raises:
            KeyPublicationError: If the directory rejected the key (nothing
                is left in the local store)
            InvalidKeyError: If the stored keypair is corrupt or belongs to
                another KEM scheme
            UnavailableEnvironmentError: If there is no CSPRNG or key store
        """
        async with self._initializing(user_id):
            existing = self._key_store.get(user_id)
            if existing is not None:
                self._check_scheme(user_id, existing)
                logger.debug("Keys already present for %s", user_id)
                return bytes_to_text(existing.public_key)

            ensure_secure_random()
            key_pair = self.kem.generate_keypair()
            self._key_store.store(user_id, key_pair)
            public_key = bytes_to_text(key_pair.public_key)

            try:
                await self._publish(user_id, public_key)
            except BaseException:
                self._key_store.remove(user_id)
                logger.warning("Publishing public key for %s failed, local keys removed", user_id)
                raise

            logger.info("Initialized %s encryption keys for %s", self.kem.name, user_id)
            return public_key

    async def _publish(self, user_id: str, public_key: str):
        try:
            await asyncio.wait_for(
                self._directory.set_public_key(user_id, public_key),
                timeout=self.config.publish_timeout
            )
        except asyncio.TimeoutError as e:
            raise KeyPublicationError(f"Directory did not accept the key for {user_id} in time") from e
        except DirectoryError as e:
            raise KeyPublicationError(f"Directory error while publishing key for {user_id}: {e}") from e

    def _own_keys(self, user_id: str) -> KeyPair:
        key_pair = self._key_store.get(user_id)
        if key_pair is None:
            raise KeysNotFoundError(f"Encryption keys not found for {user_id}")
        self._check_scheme(user_id, key_pair)
        return key_pair

    def _check_scheme(self, user_id: str, key_pair: KeyPair):
        if key_pair.scheme != self.kem.name:
            raise InvalidKeyError(
                f"Stored keys for {user_id} are {key_pair.scheme}, manager uses {self.kem.name}"
            )

    async def _lookup_public_key(self, user_id: str) -> bytes:
        try:
            encoded = await asyncio.wait_for(
                self._directory.get_public_key(user_id),
                timeout=self.config.lookup_timeout
            )
        except asyncio.TimeoutError as e:
            raise RecipientKeyNotFoundError(f"Public key lookup for {user_id} timed out") from e
        except DirectoryError as e:
            raise RecipientKeyNotFoundError(f"Public key lookup for {user_id} failed: {e}") from e

        if not encoded:
            raise RecipientKeyNotFoundError(f"Recipient public key not found for {user_id}")

        try:
            return text_to_bytes(encoded)
        except DecodeError as e:
            raise InvalidKeyError(f"Published key for {user_id} is not valid base64") from e

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt_to_key(self, plaintext: str, public_key: bytes) -> EncryptedMessage:
        """Encrypt text to a raw public key with a fresh KEM operation"""
        return seal(self.kem, plaintext.encode("utf-8"), public_key)

    async def encrypt_for(self, plaintext: str, recipient_id: str) -> EncryptedMessage:
        """
        Encrypt a message to a recipient's published public key.

        Raises:
            RecipientKeyNotFoundError: If the recipient has no published key
                or the lookup failed or timed out
            InvalidKeyError: If the published key is malformed
        """
        public_key = await self._lookup_public_key(recipient_id)
        return self.encrypt_to_key(plaintext, public_key)

    def encrypt_for_self(self, plaintext: str, user_id: str) -> EncryptedMessage:
        """
        Encrypt the self-copy of a message to our own public key.

        Raises:
            KeysNotFoundError: If the user has not been initialized
        """
        key_pair = self._own_keys(user_id)
        return self.encrypt_to_key(plaintext, key_pair.public_key)

    async def encrypt_message(self, plaintext: str, sender_id: str, recipient_id: str) -> OutgoingMessage:
        """
        Produce both bundles for one chat message.

        The two bundles come from separate KEM operations and share nothing
        but the plaintext.
        """
        sender_copy = self.encrypt_for_self(plaintext, sender_id)
        recipient_copy = await self.encrypt_for(plaintext, recipient_id)
        return OutgoingMessage(recipient_copy=recipient_copy, sender_copy=sender_copy)

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------

    def decrypt_with_key(self, message: EncryptedMessage, private_key: bytes) -> str:
        """
        Decrypt a bundle with a raw private key.

        Raises:
            DecryptionError: On any decoding, KEM, authentication or UTF-8 failure
        """
        try:
            plaintext = unseal(self.kem, message, private_key)
            return plaintext.decode("utf-8")
        except (AuthenticationError, DecodeError, InvalidKeyError, UnicodeDecodeError) as e:
            raise DecryptionError(f"Message could not be decrypted: {e}") from e

    def decrypt_own(self, message: EncryptedMessage, user_id: str) -> str:
        """
        Decrypt a bundle that was encapsulated to this user's public key.

        Raises:
            KeysNotFoundError: If the user has not been initialized
            DecryptionError: If the bundle does not decrypt with our key
        """
        key_pair = self._own_keys(user_id)
        return self.decrypt_with_key(message, key_pair.private_key)
