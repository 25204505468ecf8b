#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login
- Key generation and public key publication on first login
- Sending messages as recipient bundle + sender self-copy
- Reading history and live messages, each decrypted from our own bundle
"""

import asyncio
import getpass
import json
import logging
import sys
from datetime import datetime
from typing import Dict, Optional

import httpx
import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.config import EncryptionConfig
from e2ee.envelope import EncryptedMessage
from e2ee.errors import (
    DecodeError,
    DecryptionError,
    InvalidKeyError,
    KeyPublicationError,
    KeysNotFoundError,
    RecipientKeyNotFoundError,
    UnavailableEnvironmentError,
)
from e2ee.keystore import KeyStore
from e2ee.manager import EncryptionManager

from .api import ApiError, ChatServerClient
from .config import ClientConfig
from .storage import LocalStore

logger = logging.getLogger(__name__)

DECRYPTION_PLACEHOLDER = "[Unable to decrypt message]"

HELP_TEXT = """Commands:
  /chat <username> - Start chat with user
  /exit - Exit current chat
  /users - List all users
  /quit - Quit application"""


def message_text(manager: EncryptionManager, record: Dict, username: str) -> str:
    """
    Decrypt the bundle of a message record that is addressed to `username`.

    Senders read their self-copy, recipients read the recipient copy. Anything
    that cannot be decrypted is shown as a placeholder, never as blank or
    garbled text.
    """
    copy_field = "sender_copy" if record.get("sender") == username else "recipient_copy"
    try:
        bundle = EncryptedMessage.from_wire(record.get(copy_field))
        return manager.decrypt_own(bundle, username)
    except (DecryptionError, DecodeError, InvalidKeyError, KeysNotFoundError,
            UnavailableEnvironmentError) as e:
        logger.debug("Message %s not decryptable: %s", record.get("id"), e)
        return DECRYPTION_PLACEHOLDER


def _timestamp(record: Dict) -> str:
    created_at = record.get("created_at")
    if not created_at:
        return datetime.now().strftime("%H:%M")
    return datetime.fromisoformat(created_at).strftime("%H:%M")


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, config: Optional[ClientConfig] = None,
                 encryption_config: Optional[EncryptionConfig] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize chat client.

        Args:
            config: Server URL and local storage settings
            encryption_config: KEM scheme and directory timeouts
            http_client: Pre-built httpx.AsyncClient for the REST API
        """
        self.config = config or ClientConfig()
        encryption_config = encryption_config or EncryptionConfig()
        self.api = ChatServerClient(
            self.config.server_url,
            http_client=http_client,
            timeout=self.config.request_timeout
        )
        self.store = LocalStore(self.config.data_dir)
        self.manager = EncryptionManager(
            KeyStore(self.store, namespace=encryption_config.key_namespace),
            self.api,
            config=encryption_config
        )
        self.username: Optional[str] = None
        self.websocket = None
        self.running = False
        self.current_chat: Optional[str] = None

    async def register(self, username: str, password: str) -> bool:
        """Register a new account and set up encryption keys"""
        try:
            await self.api.register(username, password)
        except ApiError as e:
            print(f"Registration failed: {e.detail}")
            return False

        self.username = username
        if not await self._setup_encryption():
            return False
        print(f"Registration successful! Welcome, {username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        """Login with an existing account"""
        try:
            await self.api.login(username, password)
        except ApiError as e:
            print(f"Login failed: {e.detail}")
            return False

        self.username = username
        try:
            has_keys = self.manager.has_keys(username)
        except (InvalidKeyError, UnavailableEnvironmentError) as e:
            print(f"Cannot read your local encryption keys: {e}")
            return False
        if not has_keys:
            print("No encryption keys on this device; generating new ones.")
            print("Messages encrypted to your previous key cannot be read here.")
        if not await self._setup_encryption():
            return False
        print(f"Login successful! Welcome back, {username}")
        return True

    async def _setup_encryption(self) -> bool:
        try:
            await self.manager.initialize(self.username)
            return True
        except KeyPublicationError as e:
            print(f"Could not publish your public key: {e}")
        except InvalidKeyError as e:
            print(f"Your local encryption keys are unusable: {e}")
        except UnavailableEnvironmentError as e:
            print(f"Encryption unavailable on this system: {e}")
        return False

    async def connect_websocket(self) -> bool:
        """Connect to WebSocket server"""
        try:
            self.websocket = await websockets.connect(self.config.ws_url)
            await self.websocket.send(json.dumps({
                "type": "auth",
                "token": self.api.token
            }))

            data = json.loads(await self.websocket.recv())
            if data.get("type") == "auth_success":
                print("Connected to server")
                return True

            print(f"Authentication failed: {data.get('message', 'unknown error')}")
            return False

        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

    async def start_chat(self, peer_username: str):
        """Open a chat with a user and show decrypted history"""
        self.current_chat = peer_username

        try:
            history = await self.api.get_messages(peer_username, limit=self.config.history_limit)
        except ApiError as e:
            print(f"Failed to load history: {e.detail}")
            history = []

        if history:
            print("\n--- Message History ---")
            for record in history:
                self._print_record(record)
            print("--- End History ---\n")

        print(f"Chatting with {peer_username}. Type '/exit' to leave chat, '/help' for commands.")

    def _print_record(self, record: Dict):
        prefix = "You" if record.get("sender") == self.username else record.get("sender")
        text = message_text(self.manager, record, self.username)
        print(f"[{_timestamp(record)}] {prefix}: {text}")

    async def send_message(self, peer: str, message: str):
        """Encrypt a message for `peer` and ourselves, then store it on the server"""
        try:
            outgoing = await self.manager.encrypt_message(message, self.username, peer)
        except RecipientKeyNotFoundError:
            print(f"{peer} has not set up encryption yet; message not sent.")
            return
        except KeysNotFoundError:
            print("Your encryption keys are missing; run /quit and log in again.")
            return
        except InvalidKeyError as e:
            print(f"Cannot encrypt for {peer}: {e}")
            return
        except UnavailableEnvironmentError as e:
            print(f"Encryption unavailable on this system: {e}")
            return

        try:
            await self.api.send_message(peer, outgoing)
        except ApiError as e:
            print(f"Failed to send message: {e.detail}")

    async def receive_messages(self):
        """Background task to receive pushed messages"""
        try:
            while self.running:
                data = json.loads(await self.websocket.recv())

                if data.get("type") == "message":
                    self._handle_incoming_message(data.get("message") or {})
                elif data.get("type") == "error":
                    print(f"\n[Error: {data.get('message')}]")

        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
            self.running = False

    def _handle_incoming_message(self, record: Dict):
        sender = record.get("sender")
        if sender == self.username:
            if record.get("recipient") == self.current_chat:
                self._print_record(record)
            return

        if sender == self.current_chat:
            print()
            self._print_record(record)
        else:
            text = message_text(self.manager, record, self.username)
            print(f"\n[New message from {sender}]: {text}")

    async def list_users(self):
        """List all registered users"""
        try:
            users = await self.api.list_users()
        except ApiError as e:
            print(f"Failed to list users: {e.detail}")
            return
        print("Registered users:")
        for user in users:
            print(f"  - {user}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_chat}] > " if self.current_chat else "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_message(self.current_chat, user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except (KeyboardInterrupt, EOFError):
                    break

        finally:
            self.running = False
            receive_task.cancel()
            await self.close()

    async def close(self):
        if self.websocket:
            await self.websocket.close()
            self.websocket = None
        await self.api.aclose()
        self.store.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1].strip())
        elif cmd == "/exit":
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    client = ChatClient(ClientConfig.from_env(), EncryptionConfig.from_env())

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.close()
            return
        else:
            print("Invalid choice")

    if await client.connect_websocket():
        await client.run_interactive()
    else:
        await client.close()

    print("\nGoodbye!")


def run():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
