"""
Tests for the filesystem key store.
"""

import json
import stat
from pathlib import Path

import pytest

from mailpgp.errors import InvalidKeyBlock, KeyNotFound, KeyStoreError
from mailpgp.key_store import UNKNOWN_EMAIL, KeyStore

from conftest import ALICE_PASSPHRASE


def default_count(store):
    return sum(1 for r in store.list_keys() if r.is_default)


class TestGenerate:
    """Tests for key pair generation and storage."""

    def test_first_key_becomes_default(self, store, alice):
        assert alice.is_default
        assert alice.has_private_key
        assert not alice.from_hardware_token
        assert store.get_default_record().fingerprint == alice.fingerprint

    def test_second_key_is_not_default(self, store, alice):
        second = store.generate_key_pair("Alice Work", "alice@work.example", "pw")
        assert not second.is_default
        assert default_count(store) == 1

    def test_files_written(self, store, alice):
        public = store.public_path(alice.fingerprint)
        private = store.private_path(alice.fingerprint)
        assert "PUBLIC KEY BLOCK" in public.read_text()
        assert "PRIVATE KEY BLOCK" in private.read_text()
        assert stat.S_IMODE(private.stat().st_mode) == 0o600

    def test_metadata_document_layout(self, store, alice):
        document = json.loads(store.metadata_path.read_text())
        entry = document["keys"][alice.fingerprint]
        assert entry == {
            "email": "alice@example.com",
            "name": "Alice",
            "is_default": True,
            "has_private_key": True,
            "from_hardware_token": False,
        }
        assert document["contacts"] == {}

    def test_default_key_pair(self, store, alice, backend):
        material = store.get_default_key_pair()
        assert material.fingerprint == alice.fingerprint
        assert backend.can_unlock(material.private_key, ALICE_PASSPHRASE)

    def test_default_key_pair_missing_file(self, store, alice):
        store.private_path(alice.fingerprint).unlink()
        assert store.get_default_key_pair() is None

    def test_persists_across_instances(self, settings, backend, alice):
        reopened = KeyStore(settings, backend)
        assert reopened.get_default_record() == alice


class TestImport:
    """Tests for importing public keys."""

    def test_import_public_key(self, store, bob_key):
        fingerprint = store.import_public_key(bob_key.public_key)
        assert fingerprint == bob_key.fingerprint
        record = store.get_record(fingerprint)
        assert record.email == "bob@example.com"
        assert record.name == "Bob"
        assert not record.is_default
        assert not record.has_private_key
        assert store.read_public_key(fingerprint).strip() == bob_key.public_key.strip()

    def test_import_does_not_set_default(self, store, bob_key):
        store.import_public_key(bob_key.public_key)
        assert store.get_default_record() is None

    def test_reimport_preserves_flags(self, store, bob_key):
        fingerprint = store.import_public_key(bob_key.public_key)
        store.mark_as_hardware_origin(fingerprint)
        store.set_default_key(fingerprint)

        store.import_public_key(bob_key.public_key)

        record = store.get_record(fingerprint)
        assert record.from_hardware_token
        assert record.is_default

    def test_rejects_secret_block(self, store, bob_key):
        with pytest.raises(InvalidKeyBlock):
            store.import_public_key(bob_key.private_key)
        assert store.list_keys() == []

    def test_rejects_garbage(self, store):
        with pytest.raises(InvalidKeyBlock):
            store.import_public_key("hello")

    def test_sets_contact_key_flag(self, store, bob_key):
        store.add_contact("Bob@Example.com")
        store.import_public_key(bob_key.public_key)
        [contact] = store.list_contacts()
        assert contact.has_public_key


class TestDefaultKey:
    """At most one record is the default at any time."""

    def test_set_default(self, store, alice, bob_key):
        fingerprint = store.import_public_key(bob_key.public_key)
        store.set_default_key(fingerprint.lower())
        assert store.get_default_record().fingerprint == fingerprint
        assert default_count(store) == 1

    def test_set_default_idempotent(self, store, alice, bob_key):
        fingerprint = store.import_public_key(bob_key.public_key)
        store.set_default_key(fingerprint)
        once = store.metadata_path.read_text()
        store.set_default_key(fingerprint)
        assert store.metadata_path.read_text() == once

    def test_set_default_unknown(self, store, alice):
        with pytest.raises(KeyNotFound):
            store.set_default_key("ABCDEF")
        assert store.get_default_record().fingerprint == alice.fingerprint

    def test_mark_unknown(self, store):
        with pytest.raises(KeyNotFound):
            store.mark_as_hardware_origin("ABCDEF")

    @pytest.mark.parametrize("operation", ["set_default_key", "mark_as_hardware_origin", "delete_key"])
    def test_malformed_fingerprint(self, store, alice, operation):
        with pytest.raises(KeyNotFound) as exc:
            getattr(store, operation)("not-a-fingerprint")
        assert exc.value.fingerprint == "not-a-fingerprint"
        assert store.get_default_record().fingerprint == alice.fingerprint

    def test_single_default_across_operations(self, store, bob_key):
        """No sequence of mutations leaves more than one default."""
        def check():
            assert default_count(store) <= 1

        first = store.generate_key_pair("Alice", "alice@example.com", "pw")
        check()
        second = store.generate_key_pair("Alice Work", "alice@work.example", "pw")
        check()
        bob = store.import_public_key(bob_key.public_key)
        check()
        store.set_default_key(bob)
        check()
        store.set_default_key(second.fingerprint)
        check()
        store.import_public_key(bob_key.public_key)
        check()
        store.delete_key(second.fingerprint)
        check()
        assert store.get_default_record().fingerprint == first.fingerprint

        store.delete_key(first.fingerprint)
        check()
        assert store.get_default_record() is None

        store.set_default_key(bob)
        check()
        assert store.get_default_record().fingerprint == bob
        third = store.generate_key_pair("Carol", "carol@example.com", "pw")
        check()
        assert not third.is_default
        store.delete_key(bob)
        check()
        assert store.get_default_record().fingerprint == third.fingerprint


class TestDelete:
    """Tests for key deletion and default re-election."""

    def test_delete_removes_files(self, store, alice):
        store.delete_key(alice.fingerprint)
        assert store.list_keys() == []
        assert not store.public_path(alice.fingerprint).exists()
        assert not store.private_path(alice.fingerprint).exists()
        assert store.get_default_record() is None

    def test_delete_default_prefers_private_key(self, store, alice, bob_key):
        store.import_public_key(bob_key.public_key)
        second = store.generate_key_pair("Alice Work", "alice@work.example", "pw")

        store.delete_key(alice.fingerprint)

        assert store.get_default_record().fingerprint == second.fingerprint
        assert default_count(store) == 1

    def test_delete_default_without_private_successor(self, store, alice, bob_key):
        store.import_public_key(bob_key.public_key)
        store.delete_key(alice.fingerprint)
        assert store.get_default_record() is None

    def test_delete_non_default_keeps_default(self, store, alice, bob_key):
        fingerprint = store.import_public_key(bob_key.public_key)
        store.delete_key(fingerprint)
        assert store.get_default_record().fingerprint == alice.fingerprint

    def test_delete_unknown(self, store):
        with pytest.raises(KeyNotFound):
            store.delete_key("ABCDEF")

    def test_failed_metadata_write_keeps_files(self, store, alice, monkeypatch):
        def refuse(self, target):
            raise OSError("disk full")

        monkeypatch.setattr(Path, "replace", refuse)
        with pytest.raises(KeyStoreError):
            store.delete_key(alice.fingerprint)
        monkeypatch.undo()

        assert store.get_record(alice.fingerprint) == alice
        assert store.public_path(alice.fingerprint).exists()
        assert store.private_path(alice.fingerprint).exists()


class TestContacts:
    def test_add_contact_defaults_name(self, store):
        contact = store.add_contact("  Carol@Example.com ")
        assert contact.email == "carol@example.com"
        assert contact.name == "carol"
        assert not contact.has_public_key
        assert contact.created

    def test_add_contact_with_known_key(self, store, alice):
        contact = store.add_contact("alice@example.com", "Alice")
        assert contact.has_public_key

    def test_find_by_email(self, store, alice):
        assert store.find_by_email("ALICE@example.com").fingerprint == alice.fingerprint
        assert store.find_by_email(UNKNOWN_EMAIL) is None


class TestMetadataErrors:
    def test_corrupt_document(self, store):
        store.metadata_path.write_text("{not json")
        with pytest.raises(KeyStoreError):
            store.list_keys()

    def test_non_object_document(self, store):
        store.metadata_path.write_text("[]")
        with pytest.raises(KeyStoreError):
            store.list_keys()

    def test_no_temp_files_left(self, store, alice, bob_key):
        store.import_public_key(bob_key.public_key)
        leftovers = list(store.metadata_path.parent.glob(".pgp-config-*"))
        assert leftovers == []
