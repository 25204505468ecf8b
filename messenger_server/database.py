"""
Database models and operations for the messenger server.

Uses SQLAlchemy with SQLite for user accounts, the public key directory and
message records. Message records hold only ciphertexts and KEM ciphertexts;
the server never receives plaintext, private keys or shared secrets.
"""

from datetime import datetime
from typing import List, Optional

from passlib.context import CryptContext
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class User(Base):
    """User account and directory entry"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)  # base64, single current key
    public_key_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class Message(Base):
    """One chat message with its recipient bundle and sender self-copy"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender = Column(String(50), index=True, nullable=False)
    recipient = Column(String(50), index=True, nullable=False)
    recipient_ciphertext = Column(Text, nullable=False)
    recipient_encapsulated_key = Column(Text, nullable=False)
    sender_ciphertext = Column(Text, nullable=False)
    sender_encapsulated_key = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        """Serialize for the API and WebSocket pushes"""
        return {
            'id': self.id,
            'sender': self.sender,
            'recipient': self.recipient,
            'recipient_copy': {
                'ciphertext': self.recipient_ciphertext,
                'encapsulated_key': self.recipient_encapsulated_key
            },
            'sender_copy': {
                'ciphertext': self.sender_ciphertext,
                'encapsulated_key': self.sender_encapsulated_key
            },
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./chat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password)
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """Get user by username"""
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def set_public_key(self, username: str, public_key: str) -> bool:
        """
        Publish or overwrite a user's public key.

        Returns:
            False if the user does not exist
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if not user:
                return False

            user.public_key = public_key
            user.public_key_updated_at = datetime.utcnow()
            await session.commit()
            return True

    async def get_public_key(self, username: str) -> Optional[str]:
        """Get a user's current public key, None if unknown or unpublished"""
        user = await self.get_user(username)
        if not user or not user.is_active:
            return None
        return user.public_key

    async def create_message(
        self,
        sender: str,
        recipient: str,
        recipient_copy: dict,
        sender_copy: dict,
    ) -> Message:
        """
        Store a message record.

        Args:
            sender: Sending username
            recipient: Receiving username
            recipient_copy: Bundle encapsulated to the recipient
            sender_copy: Self-copy bundle encapsulated to the sender
        """
        async with self.async_session() as session:
            message = Message(
                sender=sender,
                recipient=recipient,
                recipient_ciphertext=recipient_copy['ciphertext'],
                recipient_encapsulated_key=recipient_copy['encapsulated_key'],
                sender_ciphertext=sender_copy['ciphertext'],
                sender_encapsulated_key=sender_copy['encapsulated_key']
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def list_messages(self, user_a: str, user_b: str, limit: int = 50) -> List[Message]:
        """
        Get the most recent messages between two users, oldest first.
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Message)
                .where(or_(
                    and_(Message.sender == user_a, Message.recipient == user_b),
                    and_(Message.sender == user_b, Message.recipient == user_a)
                ))
                .order_by(Message.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    async def list_users(self) -> List[str]:
        """List all registered usernames"""
        async with self.async_session() as session:
            result = await session.execute(select(User.username).where(User.is_active == True))  # noqa: E712
            return [row[0] for row in result.all()]
