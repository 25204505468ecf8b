"""
HTTP client for the messenger server.

ChatServerClient doubles as the public key directory used by the
EncryptionManager. Only the wire fields of a bundle (ciphertext and
encapsulated key) are ever sent.
"""

import logging
from typing import Dict, List, Optional

import httpx

from e2ee.directory import DirectoryError, PublicKeyDirectory
from e2ee.envelope import OutgoingMessage
from e2ee.errors import KeyPublicationError

logger = logging.getLogger(__name__)

# status_code of an ApiError raised when no HTTP response arrived
SERVER_UNREACHABLE = 0


class ApiError(Exception):
    """The server rejected a request"""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", "Unknown error"))
    except (ValueError, AttributeError):
        return response.text or "Unknown error"


def _json(response: httpx.Response):
    try:
        return response.json()
    except ValueError as e:
        raise ApiError(response.status_code, "Server returned a malformed response") from e


class ChatServerClient(PublicKeyDirectory):
    """
    Async client for the messenger REST API.

    Args:
        server_url: Base URL of the server
        http_client: Pre-built httpx.AsyncClient (e.g. with an ASGI transport)
        timeout: Request timeout in seconds when building our own client
    """

    def __init__(self, server_url: str = "http://localhost:8000",
                 http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.token: Optional[str] = None
        self.username: Optional[str] = None

    def _auth_headers(self) -> Dict[str, str]:
        if not self.token:
            raise ApiError(401, "Not logged in")
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request; transport failures and non-200 answers become ApiError"""
        try:
            response = await self.http_client.request(method, f"{self.server_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(SERVER_UNREACHABLE, f"Server unreachable: {e}") from e
        if response.status_code != 200:
            raise ApiError(response.status_code, _detail(response))
        return response

    async def _authenticate(self, path: str, username: str, password: str) -> str:
        response = await self._request("POST", path, json={"username": username, "password": password})
        data = _json(response)
        try:
            self.token = data["access_token"]
            self.username = data["username"]
        except (KeyError, TypeError) as e:
            raise ApiError(response.status_code, "Malformed authentication response") from e
        return self.token

    async def register(self, username: str, password: str) -> str:
        """Create an account and keep its access token"""
        return await self._authenticate("/api/register", username, password)

    async def login(self, username: str, password: str) -> str:
        """Log in and keep the access token"""
        return await self._authenticate("/api/login", username, password)

    # Directory ---------------------------------------------------------

    async def get_public_key(self, user_id: str) -> Optional[str]:
        try:
            response = await self.http_client.get(
                f"{self.server_url}/api/users/{user_id}/public_key"
            )
        except httpx.HTTPError as e:
            raise DirectoryError(f"Directory lookup failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise DirectoryError(f"Directory lookup failed: {response.status_code} {_detail(response)}")

        try:
            public_key = response.json().get("public_key")
        except (ValueError, AttributeError) as e:
            raise DirectoryError("Directory returned a malformed response") from e
        if public_key is not None and not isinstance(public_key, str):
            raise DirectoryError("Directory returned a malformed public key")
        return public_key

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        try:
            response = await self.http_client.put(
                f"{self.server_url}/api/users/{user_id}/public_key",
                json={"public_key": public_key},
                headers=self._auth_headers()
            )
        except (httpx.HTTPError, ApiError) as e:
            raise KeyPublicationError(f"Could not publish public key: {e}") from e

        if response.status_code != 200:
            raise KeyPublicationError(
                f"Server refused public key: {response.status_code} {_detail(response)}"
            )
        logger.debug("Published public key for %s", user_id)

    # Messages ----------------------------------------------------------

    async def send_message(self, to_user: str, outgoing: OutgoingMessage) -> Dict:
        """Store a dual-bundle message on the server"""
        payload = {"to_user": to_user, **outgoing.to_wire()}
        response = await self._request("POST", "/api/messages", json=payload, headers=self._auth_headers())
        return _json(response)

    async def get_messages(self, peer: str, limit: int = 50) -> List[Dict]:
        """Conversation history with `peer`, oldest first"""
        response = await self._request(
            "GET", f"/api/messages/{peer}",
            params={"limit": limit},
            headers=self._auth_headers()
        )
        messages = _json(response)
        if not isinstance(messages, list):
            raise ApiError(response.status_code, "Malformed message history")
        return messages

    async def list_users(self) -> List[str]:
        response = await self._request("GET", "/api/users")
        try:
            return list(_json(response)["users"])
        except (KeyError, TypeError) as e:
            raise ApiError(response.status_code, "Malformed user list") from e

    async def aclose(self):
        await self.http_client.aclose()
