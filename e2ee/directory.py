"""
Public key directory contract.

The directory maps a user id to that user's current base64 public key. It is
an external, honest-but-curious collaborator: it only ever sees public keys.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from .errors import KeyPublicationError


class DirectoryError(Exception):
    """The directory could not be reached or returned an unexpected response"""
    pass


class PublicKeyDirectory(ABC):
    """Read/write access to published public keys."""

    @abstractmethod
    async def get_public_key(self, user_id: str) -> Optional[str]:
        """
        Fetch a user's published public key.

        Returns:
            base64 public key, or None if the user has not published one

        Raises:
            DirectoryError: On transport or server failure
        """

    @abstractmethod
    async def set_public_key(self, user_id: str, public_key: str) -> None:
        """
        Publish (or overwrite) a user's public key.

        Raises:
            KeyPublicationError: If the key was not stored
        """


class InMemoryDirectory(PublicKeyDirectory):
    """Directory held in a dict, for local use and tests."""

    def __init__(self, keys: Optional[Dict[str, str]] = None):
        self.keys: Dict[str, str] = dict(keys or {})

    async def get_public_key(self, user_id: str) -> Optional[str]:
        return self.keys.get(user_id)

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        if not public_key:
            raise KeyPublicationError("Refusing to publish an empty public key")
        self.keys[user_id] = public_key
