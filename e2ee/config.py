"""
Encryption settings.

Built once at process start and handed to EncryptionManager explicitly.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .keystore import DEFAULT_NAMESPACE


@dataclass(frozen=True)
class EncryptionConfig:
    """
    Attributes:
        kem: KEM scheme name ("x25519" or "ml-kem-768")
        lookup_timeout: Seconds to wait for a recipient key lookup
        publish_timeout: Seconds to wait for the directory to accept our key
        key_namespace: Prefix for key store entries
    """
    kem: str = "x25519"
    lookup_timeout: float = 10.0
    publish_timeout: float = 10.0
    key_namespace: str = DEFAULT_NAMESPACE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'EncryptionConfig':
        """Read E2EE_KEM, E2EE_LOOKUP_TIMEOUT, E2EE_PUBLISH_TIMEOUT, E2EE_KEY_NAMESPACE"""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            kem=env.get("E2EE_KEM", defaults.kem),
            lookup_timeout=float(env.get("E2EE_LOOKUP_TIMEOUT", defaults.lookup_timeout)),
            publish_timeout=float(env.get("E2EE_PUBLISH_TIMEOUT", defaults.publish_timeout)),
            key_namespace=env.get("E2EE_KEY_NAMESPACE", defaults.key_namespace)
        )
