"""
Tests for the key store and the encryption manager.
"""

import asyncio
import json

import pytest

from e2ee.codec import bytes_to_text, text_to_bytes
from e2ee.config import EncryptionConfig
from e2ee.directory import DirectoryError, InMemoryDirectory
from e2ee.envelope import EncryptedMessage
from e2ee.errors import (
    AuthenticationError,
    DecryptionError,
    InvalidKeyError,
    KeyPublicationError,
    KeysNotFoundError,
    RecipientKeyNotFoundError,
    UnavailableEnvironmentError,
)
from e2ee.kem import X25519KEM
from e2ee.keystore import KeyStore, MemoryStore
from e2ee.manager import EncryptionManager
from messenger_client.storage import LocalStore


class CountingDirectory(InMemoryDirectory):
    """Records writes and can delay them to widen race windows."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.writes = 0
        self.delay = delay

    async def set_public_key(self, user_id, public_key):
        self.writes += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        await super().set_public_key(user_id, public_key)


class FailingDirectory(InMemoryDirectory):
    async def set_public_key(self, user_id, public_key):
        raise KeyPublicationError("profile update rejected")


class HangingDirectory(InMemoryDirectory):
    async def get_public_key(self, user_id):
        await asyncio.sleep(10)

    async def set_public_key(self, user_id, public_key):
        await asyncio.sleep(10)


class BrokenDirectory(InMemoryDirectory):
    async def get_public_key(self, user_id):
        raise DirectoryError("connection refused")

    async def set_public_key(self, user_id, public_key):
        raise DirectoryError("connection refused")


@pytest.fixture(params=["x25519", "ml-kem-768"])
def config(request):
    return EncryptionConfig(kem=request.param)


def make_manager(directory=None, config=None, backend=None):
    backend = MemoryStore() if backend is None else backend
    return EncryptionManager(KeyStore(backend), directory or InMemoryDirectory(), config=config)


def flip_bit(encoded: str, bit: int) -> str:
    data = bytearray(text_to_bytes(encoded))
    data[bit // 8] ^= 1 << (bit % 8)
    return bytes_to_text(bytes(data))


# Key store ---------------------------------------------------------------

def test_keystore_store_get_has():
    backend = MemoryStore()
    store = KeyStore(backend)
    key_pair = X25519KEM().generate_keypair()

    assert store.get("bob") is None
    assert not store.has("bob")

    store.store("bob", key_pair)
    assert store.has("bob")
    assert store.get("bob") == key_pair
    assert backend.get("encryption_keys_bob") is not None


def test_keystore_overwrites_previous_entry():
    store = KeyStore(MemoryStore())
    kem = X25519KEM()
    first, second = kem.generate_keypair(), kem.generate_keypair()
    store.store("bob", first)
    store.store("bob", second)
    assert store.get("bob") == second


def test_keystore_without_backend():
    store = KeyStore(None)
    assert not store.available
    assert store.get("bob") is None
    assert not store.has("bob")
    with pytest.raises(UnavailableEnvironmentError):
        store.store("bob", X25519KEM().generate_keypair())


def test_keystore_corrupt_entry():
    backend = MemoryStore()
    backend.put("encryption_keys_bob", json.dumps({"publicKey": "%%%", "privateKey": "AAAA"}))
    with pytest.raises(InvalidKeyError):
        KeyStore(backend).get("bob")


def test_keystore_is_durable_across_sessions(tmp_path):
    key_pair = X25519KEM().generate_keypair()

    with LocalStore(str(tmp_path)) as backend:
        KeyStore(backend).store("bob", key_pair)

    with LocalStore(str(tmp_path)) as backend:
        assert KeyStore(backend).get("bob") == key_pair
        KeyStore(backend).remove("bob")
        assert KeyStore(backend).get("bob") is None


def test_local_store_that_cannot_open_reads_as_absent(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = LocalStore(str(blocker / "data"))

    assert store.get("encryption_keys_bob") is None
    with pytest.raises(UnavailableEnvironmentError):
        store.put("encryption_keys_bob", "{}")


def test_local_store_read_error_does_not_replace_keys(tmp_path):
    """A failing read must not look like a missing keypair to initialize"""
    directory = CountingDirectory()
    with LocalStore(str(tmp_path)) as backend:
        manager = make_manager(directory, backend=backend)
        asyncio.run(manager.initialize("bob"))

        backend.db.execute("ALTER TABLE kv RENAME TO kv_moved")
        with pytest.raises(UnavailableEnvironmentError):
            backend.get("encryption_keys_bob")
        with pytest.raises(UnavailableEnvironmentError):
            asyncio.run(manager.initialize("bob"))
        assert directory.writes == 1

        backend.db.execute("ALTER TABLE kv_moved RENAME TO kv")
        assert asyncio.run(manager.initialize("bob")) == directory.keys["bob"]


# Initialization ----------------------------------------------------------

def test_initialize_publishes_public_key(config):
    directory = CountingDirectory()
    manager = make_manager(directory, config)

    assert not manager.has_keys("bob")
    public_key = asyncio.run(manager.initialize("bob"))

    assert manager.has_keys("bob")
    assert directory.keys["bob"] == public_key
    assert len(text_to_bytes(public_key)) == manager.kem.public_key_size


def test_initialize_is_idempotent():
    directory = CountingDirectory()
    backend = MemoryStore()
    manager = make_manager(directory, backend=backend)

    first = asyncio.run(manager.initialize("bob"))
    second = asyncio.run(manager.initialize("bob"))

    assert first == second
    assert directory.writes == 1
    assert len(backend) == 1


def test_concurrent_initialize_generates_one_keypair():
    directory = CountingDirectory(delay=0.05)
    manager = make_manager(directory)

    async def race():
        return await asyncio.gather(manager.initialize("carol"), manager.initialize("carol"))

    first, second = asyncio.run(race())
    assert first == second
    assert directory.writes == 1
    assert directory.keys["carol"] == first


def test_concurrent_initialize_across_event_loops():
    """The same manager races initialize safely under successive asyncio.run calls"""
    directory = CountingDirectory(delay=0.05)
    backend = MemoryStore()
    manager = make_manager(directory, backend=backend)

    async def race():
        return await asyncio.gather(manager.initialize("carol"), manager.initialize("carol"))

    first, second = asyncio.run(race())
    assert first == second
    assert not any(manager._init_locks.values())

    KeyStore(backend).remove("carol")
    third, fourth = asyncio.run(race())

    assert third == fourth
    assert third != first
    assert manager.has_keys("carol")
    assert directory.keys["carol"] == third
    assert directory.writes == 2


def test_initialize_rolls_back_when_publication_fails():
    manager = make_manager(FailingDirectory())
    with pytest.raises(KeyPublicationError):
        asyncio.run(manager.initialize("bob"))
    assert not manager.has_keys("bob")


def test_initialize_rolls_back_on_directory_error():
    manager = make_manager(BrokenDirectory())
    with pytest.raises(KeyPublicationError):
        asyncio.run(manager.initialize("bob"))
    assert not manager.has_keys("bob")


def test_initialize_rolls_back_on_publish_timeout():
    manager = make_manager(HangingDirectory(), EncryptionConfig(publish_timeout=0.05))
    with pytest.raises(KeyPublicationError):
        asyncio.run(manager.initialize("bob"))
    assert not manager.has_keys("bob")


def test_initialize_without_durable_store():
    directory = CountingDirectory()
    manager = EncryptionManager(KeyStore(None), directory)
    with pytest.raises(UnavailableEnvironmentError):
        asyncio.run(manager.initialize("bob"))
    assert directory.writes == 0


# Encrypt / decrypt -------------------------------------------------------

def test_bob_scenario(config):
    """Bob can read what was encrypted for him; an unrelated key cannot"""
    directory = InMemoryDirectory()
    bob = make_manager(directory, config)
    asyncio.run(bob.initialize("bob"))

    message = asyncio.run(bob.encrypt_for("hello", "bob"))
    assert bob.decrypt_own(message, "bob") == "hello"

    stranger = bob.kem.generate_keypair()
    with pytest.raises(DecryptionError) as excinfo:
        bob.decrypt_with_key(message, stranger.private_key)
    assert isinstance(excinfo.value.__cause__, AuthenticationError)


def test_self_copy_scenario(config):
    """Alice and Bob each decrypt their own bundle and only their own"""
    directory = InMemoryDirectory()
    alice = make_manager(directory, config)
    bob = make_manager(directory, config)
    asyncio.run(alice.initialize("alice"))
    asyncio.run(bob.initialize("bob"))

    outgoing = asyncio.run(alice.encrypt_message("hi", "alice", "bob"))

    assert bob.decrypt_own(outgoing.recipient_copy, "bob") == "hi"
    assert alice.decrypt_own(outgoing.sender_copy, "alice") == "hi"

    with pytest.raises(DecryptionError):
        alice.decrypt_own(outgoing.recipient_copy, "alice")
    with pytest.raises(DecryptionError):
        bob.decrypt_own(outgoing.sender_copy, "bob")

    assert outgoing.recipient_copy.encapsulated_key != outgoing.sender_copy.encapsulated_key
    assert outgoing.recipient_copy.ciphertext != outgoing.sender_copy.ciphertext


def test_encryption_is_not_deterministic(config):
    manager = make_manager(config=config)
    asyncio.run(manager.initialize("bob"))

    first = asyncio.run(manager.encrypt_for("same text", "bob"))
    second = asyncio.run(manager.encrypt_for("same text", "bob"))

    assert first.ciphertext != second.ciphertext
    assert first.encapsulated_key != second.encapsulated_key
    assert first.shared_secret != second.shared_secret


def test_roundtrip_various_plaintexts(config):
    manager = make_manager(config=config)
    asyncio.run(manager.initialize("bob"))
    for text in ("", "hello", "ünïcödé 🔐", "x" * 10000):
        message = asyncio.run(manager.encrypt_for(text, "bob"))
        assert manager.decrypt_own(message, "bob") == text


def test_tampered_ciphertext_is_rejected():
    manager = make_manager()
    asyncio.run(manager.initialize("bob"))
    message = asyncio.run(manager.encrypt_for("hello", "bob"))

    total_bits = len(text_to_bytes(message.ciphertext)) * 8
    for bit in range(total_bits):
        tampered = EncryptedMessage(
            ciphertext=flip_bit(message.ciphertext, bit),
            shared_secret="",
            encapsulated_key=message.encapsulated_key
        )
        with pytest.raises(DecryptionError):
            manager.decrypt_own(tampered, "bob")


def test_tampered_encapsulated_key_is_rejected():
    manager = make_manager()
    asyncio.run(manager.initialize("bob"))
    message = asyncio.run(manager.encrypt_for("hello", "bob"))

    for bit in range(len(text_to_bytes(message.encapsulated_key)) * 8):
        tampered = EncryptedMessage(
            ciphertext=message.ciphertext,
            shared_secret="",
            encapsulated_key=flip_bit(message.encapsulated_key, bit)
        )
        with pytest.raises(DecryptionError):
            manager.decrypt_own(tampered, "bob")


def test_tampered_mlkem_bundle_is_rejected():
    """Implicit rejection: a corrupted KEM ciphertext fails at the AEAD tag"""
    manager = make_manager(config=EncryptionConfig(kem="ml-kem-768"))
    asyncio.run(manager.initialize("bob"))
    message = asyncio.run(manager.encrypt_for("hello", "bob"))

    for bit in (0, 8 * 100 + 3, 8 * 1087 + 7):
        tampered = EncryptedMessage(
            ciphertext=message.ciphertext,
            shared_secret="",
            encapsulated_key=flip_bit(message.encapsulated_key, bit)
        )
        with pytest.raises(DecryptionError) as excinfo:
            manager.decrypt_own(tampered, "bob")
        assert isinstance(excinfo.value.__cause__, AuthenticationError)


def test_truncated_encapsulated_key_is_explicit_error(config):
    """Malformed KEM input fails before the cipher is reached"""
    manager = make_manager(config=config)
    asyncio.run(manager.initialize("bob"))
    message = asyncio.run(manager.encrypt_for("hello", "bob"))

    truncated = EncryptedMessage(
        ciphertext=message.ciphertext,
        shared_secret="",
        encapsulated_key=bytes_to_text(text_to_bytes(message.encapsulated_key)[:-1])
    )
    with pytest.raises(DecryptionError) as excinfo:
        manager.decrypt_own(truncated, "bob")
    assert isinstance(excinfo.value.__cause__, InvalidKeyError)


def test_malformed_base64_is_decryption_error():
    manager = make_manager()
    asyncio.run(manager.initialize("bob"))
    message = EncryptedMessage(ciphertext="!!!", shared_secret="", encapsulated_key="???")
    with pytest.raises(DecryptionError):
        manager.decrypt_own(message, "bob")


def test_decrypt_requires_local_keys():
    directory = InMemoryDirectory()
    alice = make_manager(directory)
    asyncio.run(alice.initialize("alice"))
    message = asyncio.run(alice.encrypt_for("hi", "alice"))

    with pytest.raises(KeysNotFoundError):
        make_manager(directory).decrypt_own(message, "alice")
    with pytest.raises(KeysNotFoundError):
        make_manager(directory).encrypt_for_self("hi", "alice")


def test_encrypt_for_unknown_recipient():
    manager = make_manager()
    with pytest.raises(RecipientKeyNotFoundError):
        asyncio.run(manager.encrypt_for("hello", "nobody"))


def test_encrypt_for_recipient_lookup_timeout():
    manager = make_manager(HangingDirectory(), EncryptionConfig(lookup_timeout=0.05))
    with pytest.raises(RecipientKeyNotFoundError):
        asyncio.run(manager.encrypt_for("hello", "bob"))


def test_encrypt_for_recipient_directory_error():
    manager = make_manager(BrokenDirectory())
    with pytest.raises(RecipientKeyNotFoundError):
        asyncio.run(manager.encrypt_for("hello", "bob"))


def test_encrypt_for_malformed_published_key():
    directory = InMemoryDirectory({"bob": "%%%", "eve": bytes_to_text(b"short")})
    manager = make_manager(directory)
    with pytest.raises(InvalidKeyError):
        asyncio.run(manager.encrypt_for("hello", "bob"))
    with pytest.raises(InvalidKeyError):
        asyncio.run(manager.encrypt_for("hello", "eve"))


def test_scheme_mismatch_between_store_and_manager():
    backend = MemoryStore()
    directory = InMemoryDirectory()
    x25519 = make_manager(directory, EncryptionConfig(kem="x25519"), backend)
    asyncio.run(x25519.initialize("bob"))

    mlkem = make_manager(directory, EncryptionConfig(kem="ml-kem-768"), backend)
    with pytest.raises(InvalidKeyError):
        mlkem.encrypt_for_self("hi", "bob")


def test_initialize_refuses_keys_of_another_scheme():
    backend = MemoryStore()
    directory = CountingDirectory()
    asyncio.run(make_manager(directory, EncryptionConfig(kem="x25519"), backend).initialize("bob"))

    mlkem = make_manager(directory, EncryptionConfig(kem="ml-kem-768"), backend)
    with pytest.raises(InvalidKeyError):
        asyncio.run(mlkem.initialize("bob"))
    assert directory.writes == 1
    assert KeyStore(backend).get("bob").scheme == "x25519"


def test_outgoing_wire_format_never_carries_shared_secret():
    directory = InMemoryDirectory()
    alice = make_manager(directory)
    bob = make_manager(directory)
    asyncio.run(alice.initialize("alice"))
    asyncio.run(bob.initialize("bob"))

    outgoing = asyncio.run(alice.encrypt_message("hi", "alice", "bob"))
    wire = json.dumps(outgoing.to_wire())

    assert "shared_secret" not in wire
    assert outgoing.recipient_copy.shared_secret not in wire
    assert outgoing.sender_copy.shared_secret not in wire


def test_config_from_env():
    config = EncryptionConfig.from_env({
        "E2EE_KEM": "ml-kem-768",
        "E2EE_LOOKUP_TIMEOUT": "2.5",
    })
    assert config.kem == "ml-kem-768"
    assert config.lookup_timeout == 2.5
    assert config.publish_timeout == EncryptionConfig().publish_timeout
