"""
Public key discovery.

Resolves public keys by fingerprint (local store first, then the gpg
keyring with write-through into the store) and finds public keys
embedded in incoming messages.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .errors import InvalidKeyBlock, PublicKeyNotFound
from .key_store import UNKNOWN_EMAIL, UNKNOWN_NAME, Contact, KeyStore
from .keyring import GpgKeyring
from .openpgp import PUBLIC_KEY_BLOCK_RE, canonical_fingerprint


logger = logging.getLogger(__name__)


@dataclass
class ExtractedKey:
    armored: str
    fingerprint: str
    email: str
    name: str


class KeyDiscovery:
    """Public key lookup over the key store and the gpg keyring."""

    def __init__(self, store: KeyStore, keyring: GpgKeyring):
        self.store = store
        self.keyring = keyring

    def resolve_public_key(self, fingerprint: str) -> str:
        """
        Armored public key for a fingerprint.

        A key found only in the keyring is imported into the store.

        Raises:
            PublicKeyNotFound: if neither the store nor the keyring has it
        """
        fingerprint = canonical_fingerprint(fingerprint)
        armored = self.store.read_public_key(fingerprint)
        if armored:
            return armored

        logger.info(f"Public key {fingerprint} not in store, asking keyring")
        armored = self.keyring.export_public_key(fingerprint)
        if not armored:
            raise PublicKeyNotFound(fingerprint)
        try:
            self.store.import_public_key(armored)
        except InvalidKeyBlock as e:
            logger.warning(f"Keyring returned an unusable block for {fingerprint}: {e}")
            raise PublicKeyNotFound(fingerprint) from e
        return armored

    def extract_public_key_from_message(self, text: str) -> Optional[ExtractedKey]:
        """The first valid public key block embedded in text, or None."""
        match = PUBLIC_KEY_BLOCK_RE.search(text)
        if not match:
            return None
        armored = match.group(0)
        try:
            parsed = self.store.backend.parse_key(armored)
        except InvalidKeyBlock:
            logger.info("Message contains an unparsable public key block")
            return None
        return ExtractedKey(
            armored=armored,
            fingerprint=parsed.fingerprint,
            email=parsed.email or UNKNOWN_EMAIL,
            name=parsed.name or UNKNOWN_NAME,
        )

    def import_from_message(self, text: str) -> Optional[str]:
        """Import an embedded public key; returns its fingerprint or None."""
        extracted = self.extract_public_key_from_message(text)
        if extracted is None:
            return None
        return self.store.import_public_key(extracted.armored)

    def add_contact(self, email: str, name: Optional[str] = None,
                    public_key: Optional[str] = None) -> Union[str, Contact]:
        """
        Add a correspondent.

        With a public key the key is imported and its fingerprint returned;
        otherwise a contact entry is recorded and returned.
        """
        if public_key:
            return self.store.import_public_key(public_key)
        return self.store.add_contact(email, name)
