"""Client settings."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class ClientConfig:
    """
    Attributes:
        server_url: Base URL of the messenger server
        data_dir: Directory for the local key store
        request_timeout: Seconds before an HTTP request is abandoned
        history_limit: Messages loaded when opening a chat
    """
    server_url: str = "http://localhost:8000"
    data_dir: str = "client_data"
    request_timeout: float = 10.0
    history_limit: int = 20

    @property
    def ws_url(self) -> str:
        return self.server_url.replace("http", "ws", 1) + "/ws"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """Read CHAT_SERVER_URL, CHAT_DATA_DIR, CHAT_REQUEST_TIMEOUT"""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            server_url=env.get("CHAT_SERVER_URL", defaults.server_url).rstrip("/"),
            data_dir=env.get("CHAT_DATA_DIR", defaults.data_dir),
            request_timeout=float(env.get("CHAT_REQUEST_TIMEOUT", defaults.request_timeout)),
            history_limit=defaults.history_limit
        )
