"""
mailpgp - OpenPGP key management for secure mail

Key store, hardware token bridge and crypto engine for a secure-mail
client, using johnnycanencrypt for OpenPGP and gpg/ykman for hardware
tokens.
"""

__version__ = "0.1.0"

from .errors import (
    PGPError,
    KeyNotFound,
    KeyStoreError,
    NoDefaultKey,
    NoRecipientKeys,
    PublicKeyNotFound,
    PassphraseIncorrect,
    DecryptionFailed,
    InvalidKeyBlock,
    PinError,
    PinRequired,
    PinIncorrect,
    PinBlocked,
    HardwareNotDetected,
    HardwareMisconfigured,
    ExternalToolFailure,
)

from .config import Settings

from .runner import (
    CommandResult,
    HardwareCommandRunner,
    SubprocessRunner,
    WorkArea,
)

from .outcomes import (
    TokenStatus,
    TokenResult,
    SignStatus,
    SignOutcome,
    DecryptedMessage,
    SelfTestReport,
)

from .openpgp import (
    OpenPGPBackend,
    GeneratedKey,
    ParsedKey,
    SignatureResult,
    DecryptionResult,
    canonical_fingerprint,
)

from .key_store import (
    KeyStore,
    KeyRecord,
    KeyMaterial,
    Contact,
)

from .keyring import GpgKeyring

from .hardware import (
    HardwareTokenBridge,
    KeySlot,
    SlotInfo,
    TokenSession,
    TokenState,
)

from .discovery import (
    KeyDiscovery,
    ExtractedKey,
)

from .engine import CryptoEngine

from .token_manager import (
    TokenManager,
    SyncReport,
)

__all__ = [
    # Version
    "__version__",

    # Errors
    "PGPError",
    "KeyNotFound",
    "KeyStoreError",
    "NoDefaultKey",
    "NoRecipientKeys",
    "PublicKeyNotFound",
    "PassphraseIncorrect",
    "DecryptionFailed",
    "InvalidKeyBlock",
    "PinError",
    "PinRequired",
    "PinIncorrect",
    "PinBlocked",
    "HardwareNotDetected",
    "HardwareMisconfigured",
    "ExternalToolFailure",

    # Configuration
    "Settings",

    # Command runner
    "CommandResult",
    "HardwareCommandRunner",
    "SubprocessRunner",
    "WorkArea",

    # Outcomes
    "TokenStatus",
    "TokenResult",
    "SignStatus",
    "SignOutcome",
    "DecryptedMessage",
    "SelfTestReport",

    # OpenPGP backend
    "OpenPGPBackend",
    "GeneratedKey",
    "ParsedKey",
    "SignatureResult",
    "DecryptionResult",
    "canonical_fingerprint",

    # Key store
    "KeyStore",
    "KeyRecord",
    "KeyMaterial",
    "Contact",

    # Keyring
    "GpgKeyring",

    # Hardware token
    "HardwareTokenBridge",
    "KeySlot",
    "SlotInfo",
    "TokenSession",
    "TokenState",

    # Discovery
    "KeyDiscovery",
    "ExtractedKey",

    # Engine
    "CryptoEngine",

    # Token management
    "TokenManager",
    "SyncReport",
]
