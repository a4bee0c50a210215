"""
Tests for public key discovery.
"""

import pytest

from mailpgp.errors import PublicKeyNotFound
from mailpgp.key_store import Contact


class TestResolve:
    """Store first, then the keyring with write-through."""

    def test_from_store(self, runner, discovery, store, bob_key):
        store.import_public_key(bob_key.public_key)
        armored = discovery.resolve_public_key(bob_key.fingerprint.lower())
        assert "PUBLIC KEY BLOCK" in armored
        assert runner.calls == []

    def test_from_keyring_writes_through(self, runner, discovery, store, bob_key):
        runner.on("--export", bob_key.fingerprint, stdout=bob_key.public_key)

        armored = discovery.resolve_public_key(bob_key.fingerprint)

        assert armored == bob_key.public_key
        record = store.get_record(bob_key.fingerprint)
        assert record is not None
        assert not record.is_default

    def test_not_found(self, runner, discovery, bob_key):
        with pytest.raises(PublicKeyNotFound) as exc:
            discovery.resolve_public_key(bob_key.fingerprint)
        assert exc.value.fingerprint == bob_key.fingerprint

    def test_keyring_returns_garbage(self, runner, discovery):
        block = "-----BEGIN PGP PUBLIC KEY BLOCK-----\n\nbroken\n-----END PGP PUBLIC KEY BLOCK-----\n"
        runner.on("--export", "ABCDEF", stdout=block)
        with pytest.raises(PublicKeyNotFound):
            discovery.resolve_public_key("ABCDEF")


class TestExtract:
    """Tests for public keys embedded in message text."""

    def test_extract(self, discovery, store, bob_key):
        text = f"Hi, here is my key.\n\n{bob_key.public_key}\n-- \nBob\n"
        extracted = discovery.extract_public_key_from_message(text)
        assert extracted.fingerprint == bob_key.fingerprint
        assert extracted.email == "bob@example.com"
        assert extracted.name == "Bob"
        assert store.list_keys() == []

    def test_no_block(self, discovery):
        assert discovery.extract_public_key_from_message("plain text") is None

    def test_unparsable_block(self, discovery):
        text = "-----BEGIN PGP PUBLIC KEY BLOCK-----\nxx\n-----END PGP PUBLIC KEY BLOCK-----"
        assert discovery.extract_public_key_from_message(text) is None

    def test_import_from_message(self, discovery, store, bob_key):
        fingerprint = discovery.import_from_message(f"see below\n{bob_key.public_key}")
        assert fingerprint == bob_key.fingerprint
        assert store.get_record(fingerprint) is not None


class TestAddContact:
    def test_with_public_key(self, discovery, bob_key):
        assert discovery.add_contact("bob@example.com", "Bob", bob_key.public_key) == bob_key.fingerprint

    def test_without_public_key(self, discovery, store):
        contact = discovery.add_contact("dave@example.com")
        assert isinstance(contact, Contact)
        assert contact.name == "dave"
        assert store.list_contacts() == [contact]
