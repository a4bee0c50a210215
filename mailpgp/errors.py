"""
Error Taxonomy

Every failure surfaced by mailpgp derives from PGPError. Store and
discovery errors are raised to the engine, which may try another
resolution path before letting them reach the caller.

PIN errors carry two flags the caller needs when deciding whether to
show the PIN dialog again:
- retryable: False only for PinBlocked
- hardware_detected: whether a token was present when the error occurred
"""

from typing import Optional


class PGPError(Exception):
    """Base class for all mailpgp errors."""


class KeyNotFound(PGPError):
    """No key record exists for the given fingerprint."""

    def __init__(self, fingerprint: str):
        super().__init__(f"Key not found for fingerprint: {fingerprint}")
        self.fingerprint = fingerprint


class NoDefaultKey(PGPError):
    """No usable default key for the requested operation."""


class NoRecipientKeys(PGPError):
    """An encryption request named no recipient keys."""


class PublicKeyNotFound(PGPError):
    """A public key could be found neither locally nor in the keyring."""

    def __init__(self, fingerprint: str, message: Optional[str] = None):
        super().__init__(message or f"Public key not found for fingerprint: {fingerprint}")
        self.fingerprint = fingerprint


class PassphraseIncorrect(PGPError):
    """The passphrase did not unlock the local private key."""


class InvalidKeyBlock(PGPError):
    """Armored input could not be parsed as an OpenPGP key."""


class PinError(PGPError):
    """Base class for hardware token PIN failures."""

    retryable = True

    def __init__(self, message: str, hardware_detected: bool = True):
        super().__init__(message)
        self.hardware_detected = hardware_detected


class PinRequired(PinError):
    """The token needs a PIN and none was supplied."""


class PinIncorrect(PinError):
    """The supplied PIN was rejected; the caller may prompt again."""


class PinBlocked(PinError):
    """The PIN retry counter is exhausted; the token must be reset out-of-band."""

    retryable = False


class HardwareNotDetected(PGPError):
    """No hardware token is connected."""


class HardwareMisconfigured(PGPError):
    """A token is present but its OpenPGP applet or key slot is unavailable."""


class ExternalToolFailure(PGPError):
    """
    An external command failed in a way that is not a recognized error kind.

    The tool's diagnostic output is kept verbatim in ``diagnostic``.
    """

    def __init__(self, message: str, diagnostic: str = ""):
        super().__init__(message)
        self.diagnostic = diagnostic


class KeyStoreError(PGPError):
    """The key metadata document could not be read or written."""


class DecryptionFailed(PGPError):
    """The key unlocked but the message could not be decrypted with it."""
