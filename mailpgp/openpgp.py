"""
OpenPGP Backend Module

Provides OpenPGP operations using johnnycanencrypt for:
- Key generation (Curve25519, RSA)
- Parsing armored certificates (fingerprint and user ids)
- Multi-recipient encryption
- Decryption and detached signatures with a passphrase-protected key
- Signature verification

Usage:
    from johnnycanencrypt import Cipher
    from johnnycanencrypt.johnnycanencrypt import Johnny, create_key, parse_cert_bytes
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from johnnycanencrypt import Cipher
from johnnycanencrypt.johnnycanencrypt import (
    CryptoError,
    Johnny,
    create_key as jce_create_key,
    encrypt_bytes_to_bytes as jce_encrypt_bytes_to_bytes,
    parse_cert_bytes as jce_parse_cert_bytes,
)

from .errors import InvalidKeyBlock


logger = logging.getLogger(__name__)


PUBLIC_KEY_BLOCK_RE = re.compile(
    r"-----BEGIN PGP PUBLIC KEY BLOCK-----[\s\S]*?-----END PGP PUBLIC KEY BLOCK-----"
)
MESSAGE_BLOCK_RE = re.compile(
    r"-----BEGIN PGP MESSAGE-----[\s\S]*?-----END PGP MESSAGE-----"
)
SIGNATURE_BEGIN = "-----BEGIN PGP SIGNATURE-----"
SIGNATURE_END = "-----END PGP SIGNATURE-----"

_EMAIL_RE = re.compile(r"<(.+)>")
_NAME_RE = re.compile(r"^([^<]+)")

# whichkeys: 1=signing, 2=encryption, 4=authentication, 7=all
ALL_SUBKEYS = 7


def canonical_fingerprint(value: str) -> str:
    """
    Normalize a fingerprint to uppercase hex without whitespace.

    Raises:
        ValueError: if the value is not a hex string
    """
    fingerprint = re.sub(r"\s+", "", value).upper()
    if not fingerprint or not re.fullmatch(r"[0-9A-F]+", fingerprint):
        raise ValueError(f"Not a fingerprint: {value!r}")
    return fingerprint


def split_user_id(user_id: str) -> tuple[str, str]:
    """Split ``Name <email>`` into (name, email), empty strings when absent."""
    email_match = _EMAIL_RE.search(user_id)
    name_match = _NAME_RE.match(user_id)
    email = email_match.group(1) if email_match else ""
    name = name_match.group(1).strip() if name_match else ""
    return name, email


def compose_signed(text: str, signature: str) -> str:
    """Append an armored detached signature to the text it covers."""
    return f"{text}\n{signature.strip()}\n"


def split_signed(payload: str) -> tuple[str, Optional[str]]:
    """
    Split a payload built by compose_signed().

    Returns:
        (text, signature) where signature is None when the payload
        does not end with an armored signature block
    """
    stripped = payload.rstrip()
    if not stripped.endswith(SIGNATURE_END):
        return payload, None
    index = stripped.rfind("\n" + SIGNATURE_BEGIN)
    if index < 0:
        return payload, None
    return stripped[:index], stripped[index + 1:] + "\n"


@dataclass
class GeneratedKey:
    """Result of key generation."""
    public_key: str         # Armored public certificate
    private_key: str        # Armored secret key, protected by the passphrase
    fingerprint: str        # Canonical uppercase hex
    generation_time: int    # Unix timestamp


@dataclass
class ParsedKey:
    """Identity information read from an armored certificate."""
    fingerprint: str
    user_ids: list[str]
    name: str
    email: str
    is_secret: bool


@dataclass
class SignatureResult:
    """Result of a signing operation."""
    signature: str
    success: bool
    error: Optional[str] = None


@dataclass
class DecryptionResult:
    """Result of a decryption operation."""
    plaintext: bytes
    success: bool
    error: Optional[str] = None


class OpenPGPBackend:
    """
    OpenPGP operations on armored key material using johnnycanencrypt.

    The backend holds no key material between calls; every method takes
    the armored blocks it needs.
    """

    def generate_key(
        self,
        name: str,
        email: str,
        passphrase: str,
        cipher: Cipher = Cipher.Cv25519,
    ) -> GeneratedKey:
        """
        Generate a key pair with signing, encryption and authentication subkeys.

        Args:
            name: Real name for the user id
            email: Email address for the user id
            passphrase: Passphrase protecting the secret key
            cipher: Cipher suite (Cv25519 by default)

        Returns:
            GeneratedKey with both armored blocks
        """
        timestamp = int(time.time())
        user_id = f"{name} <{email}>" if name else f"<{email}>"
        logger.info(f"Generating {cipher.name} key for {email}")

        pub_key_pem, sec_key_pem, fingerprint_hex = jce_create_key(
            passphrase,             # password: str
            [user_id],              # userids: list[str]
            cipher.value,           # cipher: str
            timestamp,              # creation: int
            0,                      # expiration: int (no expiration)
            True,                   # subkeys_expiration: bool
            ALL_SUBKEYS,            # whichkeys: int
            True,                   # can_primary_sign: bool
            False                   # can_primary_expire: bool
        )

        fingerprint = canonical_fingerprint(fingerprint_hex)
        logger.info(f"Generated key with fingerprint {fingerprint}")
        return GeneratedKey(
            public_key=pub_key_pem,
            private_key=sec_key_pem,
            fingerprint=fingerprint,
            generation_time=timestamp,
        )

    def parse_key(self, armored: str) -> ParsedKey:
        """
        Parse an armored certificate.

        The name and email come from the first user id.

        Raises:
            InvalidKeyBlock: if the block is not a valid certificate
        """
        try:
            uids, fingerprint_hex, is_secret, *_ = jce_parse_cert_bytes(armored.encode("utf-8"))
        except Exception as e:
            logger.warning(f"Failed to parse key block: {e}")
            raise InvalidKeyBlock(f"Invalid OpenPGP key block: {e}") from e

        user_ids = [uid.get("value", "") for uid in uids]
        name, email = split_user_id(user_ids[0]) if user_ids else ("", "")
        return ParsedKey(
            fingerprint=canonical_fingerprint(fingerprint_hex),
            user_ids=user_ids,
            name=name,
            email=email,
            is_secret=bool(is_secret),
        )

    def encrypt(self, public_keys: list[str], plaintext: bytes) -> str:
        """
        Encrypt to every given certificate.

        Returns:
            Armored PGP MESSAGE
        """
        certs = [key.encode("utf-8") for key in public_keys]
        encrypted: bytes = jce_encrypt_bytes_to_bytes(certs, plaintext, True)
        logger.debug(f"Encrypted {len(plaintext)} bytes to {len(certs)} recipients")
        return encrypted.decode("utf-8")

    def decrypt(self, private_key: str, ciphertext: bytes, passphrase: str) -> DecryptionResult:
        """
        Decrypt a PGP message with a passphrase-protected secret key.

        Returns:
            DecryptionResult with plaintext or error
        """
        try:
            j = Johnny(private_key.encode("utf-8"))
            plaintext: bytes = j.decrypt_bytes(ciphertext, passphrase)
            logger.debug(f"Decrypted {len(ciphertext)} bytes")
            return DecryptionResult(plaintext, True)
        except CryptoError as e:
            logger.warning(f"Decryption failed: {e}")
            return DecryptionResult(b"", False, str(e))

    def sign_detached(self, private_key: str, data: bytes, passphrase: str) -> SignatureResult:
        """
        Create an armored detached signature.

        Returns:
            SignatureResult with the signature or error
        """
        try:
            j = Johnny(private_key.encode("utf-8"))
            signature: str = j.sign_bytes_detached(data, passphrase)
            logger.debug(f"Signed {len(data)} bytes of data")
            return SignatureResult(signature, True)
        except CryptoError as e:
            logger.warning(f"Signing failed: {e}")
            return SignatureResult("", False, str(e))

    def can_unlock(self, private_key: str, passphrase: str) -> bool:
        """Check whether the passphrase unlocks the secret key."""
        return self.sign_detached(private_key, b"unlock-probe", passphrase).success

    def verify(self, public_key: str, data: bytes, signature: str) -> bool:
        """Verify a detached signature, False on any mismatch."""
        try:
            j = Johnny(public_key.encode("utf-8"))
            return bool(j.verify_bytes(data, signature.encode("utf-8")))
        except CryptoError as e:
            logger.debug(f"Verification failed: {e}")
            return False
