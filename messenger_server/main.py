"""
FastAPI server for the end-to-end encrypted messenger.

This server:
- Handles user registration and authentication
- Acts as the public key directory (one current key per user)
- Stores message records that carry only ciphertext bundles
- Pushes new messages to connected clients over WebSocket

It never sees plaintext, private keys or KEM shared secrets.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from .auth import Token, create_access_token, current_username, verify_token
from .database import Database
from .settings import ServerSettings

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserCredentials(BaseModel):
    username: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=1, max_length=72)


class PublicKeyUpload(BaseModel):
    public_key: str = Field(min_length=1)


class PublicKeyEntry(BaseModel):
    username: str
    public_key: str


class EncryptedBundle(BaseModel):
    """Wire form of one bundle. Anything beyond these two fields is refused."""
    model_config = ConfigDict(extra="forbid")

    ciphertext: str = Field(min_length=1)
    encapsulated_key: str = Field(min_length=1)


class MessageCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    to_user: str
    recipient_copy: EncryptedBundle
    sender_copy: EncryptedBundle


class MessageRecord(BaseModel):
    id: int
    sender: str
    recipient: str
    recipient_copy: EncryptedBundle
    sender_copy: EncryptedBundle
    created_at: Optional[str] = None


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def register(self, username: str, websocket: WebSocket):
        """Store an authenticated WebSocket connection"""
        self.active_connections[username] = websocket

    def disconnect(self, username: str, websocket: Optional[WebSocket] = None):
        """Remove a WebSocket connection"""
        if websocket is not None and self.active_connections.get(username) is not websocket:
            return
        self.active_connections.pop(username, None)

    async def send_message(self, username: str, message: dict):
        """Send a message to a specific user if connected"""
        websocket = self.active_connections.get(username)
        if websocket is None:
            return
        try:
            await websocket.send_json(message)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.info("Dropping connection for %s: %s", username, e)
            self.disconnect(username, websocket)


def create_app(settings: Optional[ServerSettings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The database and connection manager live on app.state so several apps
    (e.g. one per test) can coexist in one process.
    """
    settings = settings or ServerSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.create_tables()
        logger.info("Database initialized")
        yield
        await app.state.db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Encrypted Messenger Server",
        description="Public key directory and ciphertext store for an end-to-end encrypted messenger",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = Database(settings.database_url)
    app.state.connections = ConnectionManager()

    def issue_token(username: str) -> Token:
        access_token = create_access_token(
            data={"sub": username},
            settings=settings,
            expires_delta=timedelta(minutes=settings.access_token_expire_minutes)
        )
        return Token(access_token=access_token, token_type="bearer", username=username)

    @app.post("/api/register", response_model=Token)
    async def register(user_data: UserCredentials, request: Request):
        """Register a new user account. Keys are published separately."""
        user = await request.app.state.db.create_user(
            username=user_data.username,
            password=user_data.password
        )
        if not user:
            raise HTTPException(status_code=400, detail="Username already exists")

        logger.info("Registered user %s", user.username)
        return issue_token(user.username)

    @app.post("/api/login", response_model=Token)
    async def login(user_data: UserCredentials, request: Request):
        """Authenticate a user and return JWT token"""
        user = await request.app.state.db.authenticate_user(user_data.username, user_data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid username or password")
        return issue_token(user.username)

    @app.put("/api/users/{username}/public_key", response_model=PublicKeyEntry)
    async def publish_public_key(
        username: str,
        upload: PublicKeyUpload,
        request: Request,
        caller: str = Depends(current_username),
    ):
        """
        Publish the caller's public key, replacing any previous one.

        Only the owner may write their own directory entry.
        """
        if caller != username:
            raise HTTPException(status_code=403, detail="Not authorized")
        if len(upload.public_key) > settings.max_public_key_length:
            raise HTTPException(status_code=413, detail="Public key too large")

        if not await request.app.state.db.set_public_key(username, upload.public_key):
            raise HTTPException(status_code=404, detail="User not found")

        logger.info("Public key published for %s", username)
        return PublicKeyEntry(username=username, public_key=upload.public_key)

    @app.get("/api/users/{username}/public_key", response_model=PublicKeyEntry)
    async def get_public_key(username: str, request: Request):
        """
        Directory lookup. Public: anyone may fetch a key to encrypt to its owner.
        """
        public_key = await request.app.state.db.get_public_key(username)
        if not public_key:
            raise HTTPException(status_code=404, detail="User not found or no public key published")
        return PublicKeyEntry(username=username, public_key=public_key)

    @app.get("/api/users")
    async def list_users(request: Request):
        """List all registered users"""
        return {"users": await request.app.state.db.list_users()}

    @app.post("/api/messages", response_model=MessageRecord)
    async def send_message(
        message: MessageCreate,
        request: Request,
        caller: str = Depends(current_username),
    ):
        """Store a message and push it to both participants if connected"""
        db = request.app.state.db
        if not await db.get_user(message.to_user):
            raise HTTPException(status_code=404, detail="Recipient not found")

        stored = await db.create_message(
            sender=caller,
            recipient=message.to_user,
            recipient_copy=message.recipient_copy.model_dump(),
            sender_copy=message.sender_copy.model_dump()
        )
        record = stored.to_dict()

        connections = request.app.state.connections
        push = {"type": "message", "message": record}
        await connections.send_message(message.to_user, push)
        if message.to_user != caller:
            await connections.send_message(caller, push)

        return record

    @app.get("/api/messages/{peer}", response_model=List[MessageRecord])
    async def get_messages(
        peer: str,
        request: Request,
        limit: int = 50,
        caller: str = Depends(current_username),
    ):
        """Conversation history between the caller and `peer`, oldest first"""
        limit = max(1, min(limit, 500))
        messages = await request.app.state.db.list_messages(caller, peer, limit=limit)
        return [m.to_dict() for m in messages]

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for real-time delivery.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server verifies and responds: {"type": "auth_success", "username": "..."}
        3. Server pushes: {"type": "message", "message": {...}}
        4. Client may send {"type": "ping"}, server answers {"type": "pong"}
        """
        connections = websocket.app.state.connections
        username = None

        await websocket.accept()
        try:
            auth_data = await websocket.receive_json()

            if auth_data.get("type") != "auth":
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            username = verify_token(auth_data.get("token") or "", settings)
            if not username:
                await websocket.send_json({"type": "error", "message": "Invalid token"})
                await websocket.close()
                return

            connections.register(username, websocket)
            await websocket.send_json({"type": "auth_success", "username": username})

            while True:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
                else:
                    await websocket.send_json({"type": "error", "message": "Unsupported message type"})

        except WebSocketDisconnect:
            pass
        finally:
            if username:
                connections.disconnect(username, websocket)

    return app


def run():
    """Console entry point: serve on CHAT_HOST:CHAT_PORT (default 0.0.0.0:8000)"""
    import os
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        create_app(),
        host=os.environ.get("CHAT_HOST", "0.0.0.0"),
        port=int(os.environ.get("CHAT_PORT", "8000"))
    )


if __name__ == "__main__":
    run()
