"""Server settings, read once at startup."""

import os
import secrets
from typing import Mapping, Optional

from pydantic import BaseModel


class ServerSettings(BaseModel):
    """Configuration for the directory and message server"""
    database_url: str = "sqlite+aiosqlite:///./chat.db"
    secret_key: str
    token_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours
    max_public_key_length: int = 4096

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerSettings":
        """
        Build settings from CHAT_* environment variables.

        Without CHAT_SECRET_KEY a random signing key is generated, so tokens
        do not survive a restart.
        """
        env = os.environ if environ is None else environ
        values = {"secret_key": env.get("CHAT_SECRET_KEY") or secrets.token_urlsafe(32)}
        if "CHAT_DATABASE_URL" in env:
            values["database_url"] = env["CHAT_DATABASE_URL"]
        if "CHAT_TOKEN_EXPIRE_MINUTES" in env:
            values["access_token_expire_minutes"] = int(env["CHAT_TOKEN_EXPIRE_MINUTES"])
        return cls(**values)
