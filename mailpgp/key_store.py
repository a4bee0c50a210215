"""
Key Store

Persists key metadata and armored key material on the filesystem.

Layout under the configured home directory:
    pgp-config.json        {"keys": {FP: {...}}, "contacts": {email: {...}}}
    keys/<FP>.public       armored public block
    keys/<FP>.private      armored private block (software keys only)

Every mutation rewrites the whole metadata document through a temp file
and an atomic replace. Read-modify-write sequences hold an in-process
RLock and an exclusive lock on the sidecar ``pgp-config.json.lock`` file,
so only one writer touches the document at a time.
"""

import json
import logging
import os
import sys
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import Settings
from .errors import InvalidKeyBlock, KeyNotFound, KeyStoreError
from .openpgp import OpenPGPBackend, canonical_fingerprint


logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"
UNKNOWN_EMAIL = "unknown@email.com"

# Platform-specific file locking
if sys.platform == "win32":
    import msvcrt

    def _lock_file(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_LOCK, 1)

    def _unlock_file(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _lock_file(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX)

    def _unlock_file(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


def _known_fingerprint(value: str) -> str:
    """Canonical form of value; a malformed fingerprint names no stored key."""
    try:
        return canonical_fingerprint(value)
    except ValueError as e:
        raise KeyNotFound(value) from e


@dataclass
class KeyRecord:
    """Metadata for one key, keyed by fingerprint."""
    fingerprint: str
    email: str
    name: str
    is_default: bool = False
    has_private_key: bool = False
    from_hardware_token: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        del data["fingerprint"]
        return data

    @classmethod
    def from_dict(cls, fingerprint: str, data: dict[str, Any]) -> "KeyRecord":
        return cls(
            fingerprint=fingerprint,
            email=data.get("email", UNKNOWN_EMAIL),
            name=data.get("name", UNKNOWN_NAME),
            is_default=bool(data.get("is_default", False)),
            has_private_key=bool(data.get("has_private_key", False)),
            from_hardware_token=bool(data.get("from_hardware_token", False)),
        )


@dataclass
class KeyMaterial:
    """Armored blocks for one key, read for the duration of one operation."""
    fingerprint: str
    public_key: str
    private_key: Optional[str] = None


@dataclass
class Contact:
    email: str
    name: str
    has_public_key: bool = False
    created: str = ""


class KeyStore:
    """
    Filesystem key store.

    The store is a pure data layer: the only cryptographic work it asks
    of the backend is generating keys and parsing armored blocks to
    learn their fingerprint and identity.
    """

    def __init__(self, settings: Settings, backend: Optional[OpenPGPBackend] = None):
        self.settings = settings
        self.backend = backend or OpenPGPBackend()
        self.keys_dir = settings.keys_dir
        self.metadata_path = settings.metadata_path
        self._lock = threading.RLock()
        self._lock_path = self.metadata_path.with_name(self.metadata_path.name + ".lock")
        self.keys_dir.mkdir(parents=True, exist_ok=True)

    # Paths

    def public_path(self, fingerprint: str) -> Path:
        return self.keys_dir / f"{fingerprint}.public"

    def private_path(self, fingerprint: str) -> Path:
        return self.keys_dir / f"{fingerprint}.private"

    # Metadata document

    @contextmanager
    def _critical(self) -> Iterator[None]:
        """Hold the in-process lock and the sidecar file lock."""
        with self._lock:
            self.metadata_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._lock_path, os.O_CREAT | os.O_RDWR, 0o600)
            try:
                _lock_file(fd)
                try:
                    yield
                finally:
                    _unlock_file(fd)
            finally:
                os.close(fd)

    def _read_document(self) -> dict[str, Any]:
        if not self.metadata_path.exists():
            return {"keys": {}, "contacts": {}}
        try:
            document = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read key metadata: {e}")
            raise KeyStoreError(f"Key metadata is unreadable: {e}") from e
        if not isinstance(document, dict):
            raise KeyStoreError("Key metadata is not a JSON object")
        document.setdefault("keys", {})
        document.setdefault("contacts", {})
        return document

    def _write_document(self, document: dict[str, Any]) -> None:
        data = json.dumps(document, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".pgp-config-", suffix=".tmp", dir=str(self.metadata_path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp_f:
                tmp_f.write(data)
                tmp_f.flush()
                os.fsync(tmp_f.fileno())
            Path(tmp_path).replace(self.metadata_path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            logger.error(f"Failed to write key metadata: {e}")
            raise KeyStoreError(f"Could not write key metadata: {e}") from e

    def _records(self, document: dict[str, Any]) -> dict[str, KeyRecord]:
        return {
            fp: KeyRecord.from_dict(fp, data)
            for fp, data in document["keys"].items()
        }

    def _put(self, document: dict[str, Any], record: KeyRecord) -> None:
        document["keys"][record.fingerprint] = record.to_dict()

    # Queries

    def list_keys(self) -> list[KeyRecord]:
        with self._lock:
            return list(self._records(self._read_document()).values())

    def get_record(self, fingerprint: str) -> Optional[KeyRecord]:
        fingerprint = canonical_fingerprint(fingerprint)
        with self._lock:
            return self._records(self._read_document()).get(fingerprint)

    def get_default_record(self) -> Optional[KeyRecord]:
        for record in self.list_keys():
            if record.is_default:
                return record
        return None

    def find_by_email(self, email: str) -> Optional[KeyRecord]:
        email = email.strip().lower()
        for record in self.list_keys():
            if record.email.lower() == email:
                return record
        return None

    def read_public_key(self, fingerprint: str) -> Optional[str]:
        """Armored public block for a fingerprint, or None when not stored."""
        path = self.public_path(canonical_fingerprint(fingerprint))
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def get_default_key_pair(self) -> Optional[KeyMaterial]:
        """
        Key material of the default key, when it can be used locally.

        Returns:
            KeyMaterial only if the default record has a private key and
            both files exist, otherwise None
        """
        record = self.get_default_record()
        if record is None or not record.has_private_key:
            return None
        public_path = self.public_path(record.fingerprint)
        private_path = self.private_path(record.fingerprint)
        try:
            public_key = public_path.read_text(encoding="utf-8")
            private_key = private_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning(f"Key material missing for default key {record.fingerprint}")
            return None
        return KeyMaterial(record.fingerprint, public_key, private_key)

    # Mutations

    def generate_key_pair(self, name: str, email: str, passphrase: str) -> KeyRecord:
        """
        Generate a Curve25519 key pair and store it.

        The first key stored becomes the default.
        """
        generated = self.backend.generate_key(name, email, passphrase)
        fingerprint = generated.fingerprint
        with self._critical():
            document = self._read_document()
            records = self._records(document)
            self._write_key_file(self.public_path(fingerprint), generated.public_key)
            self._write_key_file(self.private_path(fingerprint), generated.private_key, private=True)
            record = KeyRecord(
                fingerprint=fingerprint,
                email=email,
                name=name,
                is_default=not records,
                has_private_key=True,
            )
            self._put(document, record)
            self._write_document(document)
        logger.info(f"Stored new key pair {fingerprint} (default={record.is_default})")
        return record

    def import_public_key(self, armored: str) -> str:
        """
        Import an armored public key block.

        Existing flags on the record are preserved.

        Returns:
            Canonical fingerprint

        Raises:
            InvalidKeyBlock: if the block cannot be parsed or holds secret material
        """
        parsed = self.backend.parse_key(armored)
        if parsed.is_secret:
            raise InvalidKeyBlock("Expected a public key block, got secret key material")
        fingerprint = parsed.fingerprint
        with self._critical():
            document = self._read_document()
            existing = self._records(document).get(fingerprint)
            self._write_key_file(self.public_path(fingerprint), armored.strip() + "\n")
            record = KeyRecord(
                fingerprint=fingerprint,
                email=parsed.email or UNKNOWN_EMAIL,
                name=parsed.name or UNKNOWN_NAME,
            )
            if existing is not None:
                record.is_default = existing.is_default
                record.has_private_key = existing.has_private_key
                record.from_hardware_token = existing.from_hardware_token
            self._put(document, record)
            contact = document["contacts"].get(record.email.lower())
            if contact is not None:
                contact["has_public_key"] = True
            self._write_document(document)
        logger.info(f"Imported public key {fingerprint} for {record.email}")
        return fingerprint

    def set_default_key(self, fingerprint: str) -> None:
        fingerprint = _known_fingerprint(fingerprint)
        with self._critical():
            document = self._read_document()
            records = self._records(document)
            if fingerprint not in records:
                raise KeyNotFound(fingerprint)
            for record in records.values():
                record.is_default = record.fingerprint == fingerprint
                self._put(document, record)
            self._write_document(document)
        logger.info(f"Default key set to {fingerprint}")

    def mark_as_hardware_origin(self, fingerprint: str) -> None:
        fingerprint = _known_fingerprint(fingerprint)
        with self._critical():
            document = self._read_document()
            record = self._records(document).get(fingerprint)
            if record is None:
                raise KeyNotFound(fingerprint)
            record.from_hardware_token = True
            self._put(document, record)
            self._write_document(document)
        logger.info(f"Key {fingerprint} marked as hardware token key")

    def delete_key(self, fingerprint: str) -> None:
        """
        Remove a key's files and metadata.

        If the removed key was the default, another key becomes default,
        preferring one with a private key.
        """
        fingerprint = _known_fingerprint(fingerprint)
        with self._critical():
            document = self._read_document()
            records = self._records(document)
            record = records.pop(fingerprint, None)
            if record is None:
                raise KeyNotFound(fingerprint)

            del document["keys"][fingerprint]

            if record.is_default and records:
                successor = next(
                    (r for r in records.values() if r.has_private_key), None
                )
                if successor is not None:
                    successor.is_default = True
                    self._put(document, successor)
                    logger.info(f"Default key moved to {successor.fingerprint}")
            self._write_document(document)
            # Files go only once the record is gone
            self.public_path(fingerprint).unlink(missing_ok=True)
            self.private_path(fingerprint).unlink(missing_ok=True)
        logger.info(f"Deleted key {fingerprint}")

    # Contacts

    def add_contact(self, email: str, name: Optional[str] = None) -> Contact:
        """Record an address without a key; name defaults to the local part."""
        email = email.strip().lower()
        with self._critical():
            document = self._read_document()
            has_key = any(
                r.email.lower() == email for r in self._records(document).values()
            )
            existing = document["contacts"].get(email, {})
            contact = Contact(
                email=email,
                name=name or existing.get("name") or email.split("@")[0],
                has_public_key=has_key,
                created=existing.get("created") or datetime.now(timezone.utc).isoformat(),
            )
            document["contacts"][email] = asdict(contact)
            self._write_document(document)
        return contact

    def list_contacts(self) -> list[Contact]:
        with self._lock:
            document = self._read_document()
        return [Contact(**data) for data in document["contacts"].values()]

    def _write_key_file(self, path: Path, content: str, private: bool = False) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = 0o600 if private else 0o644
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
