"""
Crypto Engine

Chooses, per operation, between locally stored key material and the
hardware token, runs the operation and maps every outcome onto the
mailpgp error taxonomy.

Signing returns a SignOutcome instead of raising, so the caller can
tell a PIN prompt apart from a hard failure and from the fallback
message sent when the token could not sign. Encryption and decryption
raise PGPError subclasses.

Signed payloads are the text followed by an armored detached signature:

    <text>
    -----BEGIN PGP SIGNATURE-----
    ...
    -----END PGP SIGNATURE-----
"""

import logging
from typing import Optional

from .discovery import KeyDiscovery
from .errors import (
    DecryptionFailed,
    ExternalToolFailure,
    HardwareNotDetected,
    NoDefaultKey,
    NoRecipientKeys,
    PassphraseIncorrect,
    PGPError,
    PinBlocked,
    PinIncorrect,
    PinRequired,
    PublicKeyNotFound,
)
from .hardware import HardwareTokenBridge, KeySlot
from .key_store import KeyRecord, KeyStore
from .openpgp import (
    MESSAGE_BLOCK_RE,
    OpenPGPBackend,
    canonical_fingerprint,
    compose_signed,
    split_signed,
)
from .outcomes import DecryptedMessage, SignOutcome, SignStatus, TokenResult, TokenStatus


logger = logging.getLogger(__name__)

FALLBACK_BEGIN = "-----BEGIN UNSIGNED MESSAGE NOTICE-----"
FALLBACK_END = "-----END UNSIGNED MESSAGE NOTICE-----"


def _pin_error(result: TokenResult) -> Optional[PGPError]:
    """The PIN error for a token result, or None when it is not PIN related."""
    if result.status == TokenStatus.NEEDS_PIN:
        return PinRequired(result.error or "PIN required", result.hardware_detected)
    if result.status == TokenStatus.INCORRECT_PIN:
        return PinIncorrect(result.error or "Incorrect PIN", result.hardware_detected)
    if result.status == TokenStatus.PIN_BLOCKED:
        return PinBlocked(result.error or "PIN blocked", result.hardware_detected)
    return None


class CryptoEngine:
    """
    Encrypt, decrypt and sign using the key store and the hardware token.

    Args:
        store: Key store handle
        bridge: Hardware token bridge
        discovery: Public key resolution
        backend: OpenPGP primitives (defaults to the store's backend)
    """

    def __init__(
        self,
        store: KeyStore,
        bridge: HardwareTokenBridge,
        discovery: KeyDiscovery,
        backend: Optional[OpenPGPBackend] = None,
    ):
        self.store = store
        self.bridge = bridge
        self.discovery = discovery
        self.backend = backend or store.backend

    # Encryption

    def encrypt_message(
        self,
        plaintext: str,
        recipient_fingerprints: list[str],
        sign: bool = True,
        attach_public_key: bool = True,
        passphrase: str = "",
    ) -> str:
        """
        Encrypt a message to the given recipients and to the sender.

        Args:
            plaintext: Message text
            recipient_fingerprints: Recipient key fingerprints
            sign: Embed a signature made with the local default key
            attach_public_key: Append the sender's public key after the message
            passphrase: Passphrase of the local default key, used when signing

        Returns:
            Armored PGP MESSAGE, optionally followed by the sender's public key

        Raises:
            NoRecipientKeys: if no recipients were given
            PublicKeyNotFound: if a recipient key cannot be resolved
        """
        if not recipient_fingerprints:
            raise NoRecipientKeys("No recipient keys given")

        recipients: dict[str, str] = {}
        for fingerprint in recipient_fingerprints:
            try:
                fingerprint = canonical_fingerprint(fingerprint)
            except ValueError as e:
                raise PublicKeyNotFound(fingerprint) from e
            recipients[fingerprint] = self.discovery.resolve_public_key(fingerprint)

        sender_public = None
        default = self.store.get_default_record()
        if default is not None:
            sender_public = self.store.read_public_key(default.fingerprint)
            if sender_public and default.fingerprint not in recipients:
                recipients[default.fingerprint] = sender_public

        payload = plaintext
        if sign:
            payload = self._sign_for_encryption(plaintext, passphrase)

        armored = self.backend.encrypt(list(recipients.values()), payload.encode("utf-8"))
        logger.info(f"Encrypted message to {len(recipients)} recipients")

        if attach_public_key and sender_public:
            armored = f"{armored.rstrip()}\n\n{sender_public.strip()}\n"
        return armored

    def _sign_for_encryption(self, plaintext: str, passphrase: str) -> str:
        material = self.store.get_default_key_pair()
        if material is None:
            logger.info("No local signing key, encrypting unsigned")
            return plaintext
        result = self.backend.sign_detached(
            material.private_key, plaintext.encode("utf-8"), passphrase
        )
        if not result.success:
            logger.warning("Could not unlock signing key, encrypting unsigned")
            return plaintext
        return compose_signed(plaintext, result.signature)

    # Signing

    def sign_message(self, plaintext: str, passphrase_or_pin: Optional[str] = None) -> SignOutcome:
        """
        Sign a message with the default key.

        A default key without local private material, or one that lives on
        the hardware token, is signed on the token. When the token fails for
        a reason other than a PIN problem, an absent token, a timeout or
        a missing keyring key, a fallback message is returned with success True.

        Returns:
            SignOutcome; errors are carried in ``error``, never raised
        """
        record = self.store.get_default_record()
        if record is None:
            return SignOutcome(SignStatus.FAILED, error=NoDefaultKey("No default key configured"))

        material = self.store.get_default_key_pair()
        if record.from_hardware_token or material is None:
            return self._sign_with_token(record, plaintext, passphrase_or_pin)

        result = self.backend.sign_detached(
            material.private_key, plaintext.encode("utf-8"), passphrase_or_pin or ""
        )
        if not result.success:
            return SignOutcome(
                SignStatus.FAILED,
                error=PassphraseIncorrect("Incorrect passphrase for signing key"),
            )
        logger.info(f"Signed message with local key {record.fingerprint}")
        return SignOutcome(
            SignStatus.SIGNED,
            signed_message=compose_signed(plaintext, result.signature),
            signature=result.signature,
        )

    def _sign_with_token(self, record: KeyRecord, plaintext: str, pin: Optional[str]) -> SignOutcome:
        public_key = self.store.read_public_key(record.fingerprint)
        result = self.bridge.sign(plaintext, pin=pin or None, public_key=public_key)

        if result.is_success:
            logger.info(f"Signed message on hardware token for {record.fingerprint}")
            return SignOutcome(
                SignStatus.SIGNED,
                signed_message=compose_signed(plaintext, result.output),
                signature=result.output,
                hardware_detected=True,
            )
        if result.status == TokenStatus.HARDWARE_ABSENT:
            return SignOutcome(
                SignStatus.FAILED,
                error=HardwareNotDetected(result.error or "No hardware token detected"),
                hardware_detected=False,
            )
        pin_error = _pin_error(result)
        if pin_error is not None:
            return SignOutcome(
                SignStatus.NEEDS_PIN if result.status == TokenStatus.NEEDS_PIN else SignStatus.FAILED,
                error=pin_error,
                needs_pin=pin_error.retryable,
                hardware_detected=True,
            )
        if result.status == TokenStatus.KEYRING_MISSING_KEY:
            return SignOutcome(
                SignStatus.FAILED,
                error=PublicKeyNotFound(record.fingerprint, result.error),
                hardware_detected=True,
            )
        if result.timed_out:
            return SignOutcome(
                SignStatus.FAILED,
                error=ExternalToolFailure("Hardware signing timed out", result.error or ""),
                hardware_detected=True,
            )

        logger.warning(f"Hardware signing failed, sending fallback message: {result.error}")
        return SignOutcome(
            SignStatus.FALLBACK,
            signed_message=self._fallback_message(record, plaintext, result.error or "Unknown error"),
            error=ExternalToolFailure("Hardware signing failed", result.error or ""),
            hardware_detected=True,
        )

    def _fallback_message(self, record: KeyRecord, plaintext: str, reason: str) -> str:
        try:
            public_key = self.discovery.resolve_public_key(record.fingerprint).strip()
        except PublicKeyNotFound:
            public_key = "Public key unavailable"
        return (
            f"{plaintext}\n\n"
            f"{FALLBACK_BEGIN}\n"
            f"This message could not be signed with the hardware token of "
            f"{record.name} <{record.email}>.\n"
            f"Reason: {reason}\n"
            f"Fingerprint: {record.fingerprint}\n"
            f"{FALLBACK_END}\n\n"
            f"{public_key}\n"
        )

    # Decryption

    def decrypt_message(self, ciphertext: str, passphrase_or_pin: Optional[str] = None) -> str:
        """Decrypt a message and return its text."""
        return self.decrypt_and_verify(ciphertext, passphrase_or_pin).text

    def decrypt_and_verify(
        self, ciphertext: str, passphrase_or_pin: Optional[str] = None
    ) -> DecryptedMessage:
        """
        Decrypt a message and check an embedded signature.

        Tries the hardware token when one is configured, then the keyring
        for a hardware-origin default key, then the local default key.

        Raises:
            PinRequired, PinIncorrect, PinBlocked: token PIN problems
            PassphraseIncorrect: the local key did not unlock
            NoDefaultKey: no path can decrypt
        """
        match = MESSAGE_BLOCK_RE.search(ciphertext)
        message = match.group(0) if match else ciphertext
        secret = passphrase_or_pin or None

        payload = self._decrypt_with_token(message, secret)
        used_hardware = payload is not None
        if payload is None:
            payload = self._decrypt_without_token(message, secret)
        return self._verify(payload, used_hardware)

    def _decrypt_with_token(self, message: str, pin: Optional[str]) -> Optional[str]:
        session = self.bridge.detect()
        if not session.configured or not session.fingerprint(KeySlot.DECRYPTION):
            return None

        default = self.store.get_default_record()
        public_key = self.store.read_public_key(default.fingerprint) if default else None
        result = self.bridge.decrypt(message, pin=pin, public_key=public_key)
        if result.is_success:
            return result.output
        pin_error = _pin_error(result)
        if pin_error is not None:
            raise pin_error
        if result.timed_out:
            raise ExternalToolFailure("Hardware decryption timed out", result.error or "")
        logger.info(f"Hardware decryption failed ({result.status.value}), trying other keys")
        return None

    def _decrypt_without_token(self, message: str, secret: Optional[str]) -> str:
        record = self.store.get_default_record()
        if record is None:
            raise NoDefaultKey("No default key configured")
        material = self.store.get_default_key_pair()

        if material is None and record.from_hardware_token:
            with self.bridge.exclusive():
                result = self.bridge.keyring.decrypt(message, secret)
            if result.is_success:
                return result.output
            pin_error = _pin_error(result)
            if pin_error is not None:
                raise pin_error
            raise ExternalToolFailure("gpg could not decrypt the message", result.error or "")

        if material is None:
            raise NoDefaultKey("Default key has no private key available")

        result = self.backend.decrypt(
            material.private_key, message.encode("utf-8"), secret or ""
        )
        if result.success:
            return result.plaintext.decode("utf-8", errors="replace")
        if not self.backend.can_unlock(material.private_key, secret or ""):
            raise PassphraseIncorrect("Incorrect passphrase for decryption key")
        raise DecryptionFailed(f"Could not decrypt message: {result.error}")

    def _verify(self, payload: str, used_hardware: bool) -> DecryptedMessage:
        text, signature = split_signed(payload)
        if signature is None:
            return DecryptedMessage(payload, used_hardware=used_hardware)

        data = text.encode("utf-8")
        for record in self.store.list_keys():
            public_key = self.store.read_public_key(record.fingerprint)
            if public_key and self.backend.verify(public_key, data, signature):
                logger.info(f"Valid signature from {record.fingerprint}")
                return DecryptedMessage(
                    text,
                    signer_fingerprint=record.fingerprint,
                    signature_verified=True,
                    used_hardware=used_hardware,
                )
        logger.info("Embedded signature could not be verified with known keys")
        return DecryptedMessage(payload, used_hardware=used_hardware)
