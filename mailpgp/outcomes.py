"""
Operation Outcomes

Tagged results returned by hardware operations and by the engine's
signing path, and the classification of external tool output into a
TokenStatus.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import PGPError
from .runner import CommandResult


class TokenStatus(Enum):
    """Outcome kinds of a hardware token invocation."""
    SUCCESS = "success"
    NEEDS_PIN = "needs_pin"
    INCORRECT_PIN = "incorrect_pin"
    PIN_BLOCKED = "pin_blocked"
    HARDWARE_ABSENT = "hardware_absent"
    HARDWARE_MISCONFIGURED = "hardware_misconfigured"
    KEYRING_MISSING_KEY = "keyring_missing_key"
    FAILURE = "failure"


@dataclass
class TokenResult:
    """Result of a token sign or decrypt invocation."""
    status: TokenStatus
    output: str = ""
    error: Optional[str] = None
    hardware_detected: bool = True
    timed_out: bool = False

    @property
    def is_success(self) -> bool:
        return self.status == TokenStatus.SUCCESS

    @property
    def needs_pin(self) -> bool:
        return self.status in (TokenStatus.NEEDS_PIN, TokenStatus.INCORRECT_PIN)

    @property
    def is_blocked(self) -> bool:
        return self.status == TokenStatus.PIN_BLOCKED


class SignStatus(Enum):
    SIGNED = "signed"
    FALLBACK = "fallback"
    NEEDS_PIN = "needs_pin"
    FAILED = "failed"


@dataclass
class SignOutcome:
    """
    Result of CryptoEngine.sign_message().

    success is True for a real signature and for the hardware fallback
    message, which carries the signer identity and the failure reason
    in place of a signature.
    """
    status: SignStatus
    signed_message: str = ""
    signature: str = ""
    error: Optional[PGPError] = None
    needs_pin: bool = False
    hardware_detected: bool = False

    @property
    def success(self) -> bool:
        return self.status in (SignStatus.SIGNED, SignStatus.FALLBACK)

    @property
    def is_fallback(self) -> bool:
        return self.status == SignStatus.FALLBACK

    def raise_for_error(self) -> None:
        """Raise the carried error unless the outcome counts as success."""
        if not self.success and self.error is not None:
            raise self.error


@dataclass
class DecryptedMessage:
    """Plaintext plus what is known about an embedded signature."""
    text: str
    signer_fingerprint: Optional[str] = None
    signature_verified: bool = False
    used_hardware: bool = False


@dataclass
class SelfTestReport:
    """Summary produced by TokenManager.self_test()."""
    key_detected: bool = False
    public_key_found: bool = False
    can_sign: bool = False
    can_encrypt: bool = False
    can_decrypt: bool = False
    messages: list[str] = field(default_factory=list)


ERROR_BLOCK_RE = re.compile(r"-----BEGIN ERROR-----\s*([\s\S]*?)\s*-----END ERROR-----")

PIN_PROMPT_MARKER = "PIN entry may be required"

_BLOCKED_PATTERNS = (
    "pin blocked",
    "pin is blocked",
    "permanently locked",
    "no more retries",
    "card is locked",
)

_BAD_PIN_PATTERNS = (
    "bad pin",
    "bad passphrase",
    "incorrect pin",
    "wrong pin",
    "sc_op_failure 2",
)

_NEED_PIN_PATTERNS = (
    "no pinentry",
    "inappropriate ioctl",
    "need_passphrase",
    "sc_op_failure 1",
    "pinentry",
)

_MISSING_KEY_PATTERNS = (
    "no public key",
    "no secret key",
    "no_seckey",
    "failed to import",
    "public key not found",
)


def classify(result: CommandResult, output: Optional[str], pin_supplied: bool) -> TokenResult:
    """
    Map the result of a token invocation to a TokenResult.

    Args:
        result: The finished command
        output: Contents of the output file, or None if it was not written
        pin_supplied: Whether a PIN was passed to the tool

    Returns:
        TokenResult; the raw diagnostic text is kept for FAILURE
    """
    if result.timed_out:
        return TokenResult(
            TokenStatus.FAILURE, error="Hardware token operation timed out", timed_out=True
        )
    if result.not_found:
        return TokenResult(TokenStatus.FAILURE, error=result.stderr)

    text = output or ""
    error_block = ERROR_BLOCK_RE.search(text) or ERROR_BLOCK_RE.search(result.output)
    if result.ok and text and not error_block:
        if PIN_PROMPT_MARKER in text:
            return TokenResult(TokenStatus.NEEDS_PIN, error=PIN_PROMPT_MARKER)
        return TokenResult(TokenStatus.SUCCESS, output=text)

    diagnostic = error_block.group(1) if error_block else result.stderr.strip()
    lowered = f"{diagnostic}\n{result.output}".lower()

    if any(p in lowered for p in _BLOCKED_PATTERNS):
        return TokenResult(TokenStatus.PIN_BLOCKED, error=diagnostic)
    if any(p in lowered for p in _BAD_PIN_PATTERNS):
        status = TokenStatus.INCORRECT_PIN if pin_supplied else TokenStatus.NEEDS_PIN
        return TokenResult(status, error=diagnostic)
    # gpg follows "No pinentry" with "No secret key", so PIN checks go first.
    if not pin_supplied and (PIN_PROMPT_MARKER.lower() in lowered
                             or any(p in lowered for p in _NEED_PIN_PATTERNS)):
        return TokenResult(TokenStatus.NEEDS_PIN, error=diagnostic)
    if any(p in lowered for p in _MISSING_KEY_PATTERNS):
        return TokenResult(TokenStatus.KEYRING_MISSING_KEY, error=diagnostic)
    if output is None and not pin_supplied and not error_block:
        return TokenResult(TokenStatus.NEEDS_PIN, error=diagnostic or "No output produced")
    return TokenResult(TokenStatus.FAILURE, error=diagnostic or f"exit status {result.returncode}")
