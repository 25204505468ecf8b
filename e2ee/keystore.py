"""
Local key store.

Persists each user's keypair on this device, keyed by a namespaced string
(prefix + user id) in any durable key/value backend that offers
put/get/delete. Entries are plain JSON with base64 keys; the store itself is
not encrypted.
"""

import json
import logging
from typing import Dict, Optional

from .codec import bytes_to_text, text_to_bytes
from .errors import DecodeError, InvalidKeyError, UnavailableEnvironmentError
from .kem import KeyPair

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "encryption_keys_"


class MemoryStore:
    """Process-local backend. Keys vanish when the process exits."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def put(self, key: str, value: str):
        self._data[key] = value

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def delete(self, key: str):
        self._data.pop(key, None)

    def __len__(self):
        return len(self._data)


class KeyStore:
    """
    Keypair persistence for one device.

    Args:
        backend: Durable key/value store, or None when this execution context
            has no local storage (reads then find nothing, writes fail)
        namespace: Prefix prepended to every user id
    """

    def __init__(self, backend=None, namespace: str = DEFAULT_NAMESPACE):
        self._backend = backend
        self.namespace = namespace

    @property
    def available(self) -> bool:
        return self._backend is not None

    def _key(self, user_id: str) -> str:
        return f"{self.namespace}{user_id}"

    def store(self, user_id: str, key_pair: KeyPair):
        """
        Persist a keypair, replacing any previous entry for the user.

        Raises:
            UnavailableEnvironmentError: If there is no durable backend
        """
        if self._backend is None:
            raise UnavailableEnvironmentError("No durable key store in this environment")

        value = json.dumps({
            "scheme": key_pair.scheme,
            "publicKey": bytes_to_text(key_pair.public_key),
            "privateKey": bytes_to_text(key_pair.private_key),
        })
        self._backend.put(self._key(user_id), value)
        logger.debug("Stored %s keypair for %s", key_pair.scheme, user_id)

    def get(self, user_id: str) -> Optional[KeyPair]:
        """
        Load the keypair for a user.

        Returns:
            KeyPair, or None if never stored or no backend is available

        Raises:
            InvalidKeyError: If the stored entry is corrupt
        """
        if self._backend is None:
            return None

        stored = self._backend.get(self._key(user_id))
        if not stored:
            return None

        try:
            parsed = json.loads(stored)
            return KeyPair(
                public_key=text_to_bytes(parsed["publicKey"]),
                private_key=text_to_bytes(parsed["privateKey"]),
                scheme=parsed.get("scheme", "x25519")
            )
        except (ValueError, KeyError, TypeError, DecodeError) as e:
            raise InvalidKeyError(f"Stored keypair for {user_id} is corrupt") from e

    def has(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def remove(self, user_id: str):
        """Delete a user's keypair (used to roll back a failed initialization)"""
        if self._backend is None:
            return
        self._backend.delete(self._key(user_id))
