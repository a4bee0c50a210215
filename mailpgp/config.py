"""
Configuration

Settings are plain data passed to each component's constructor. Nothing in
the package reads configuration at import time.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


DEFAULT_HOME = Path(os.path.expanduser("~/.mailpgp"))

DEFAULT_KEYSERVERS = (
    "keys.openpgp.org",
    "keyserver.ubuntu.com",
    "pgp.mit.edu",
)

# Seconds
TOKEN_TIMEOUT = 30.0
TOOL_TIMEOUT = 20.0
KEYSERVER_TIMEOUT = 10.0


@dataclass
class Settings:
    """
    Runtime settings for mailpgp.

    Attributes:
        home: Base directory holding the metadata file and keys directory
        gpg_binary: External keyring tool
        ykman_binary: Vendor token management tool
        sign_script: Optional external signing script called as
            ``<script> <input-file> <output-file>``
        token_timeout: Timeout for token sign/decrypt invocations
        tool_timeout: Timeout for detection and keyring queries
        keyserver_timeout: Timeout per keyserver request
        keyservers: Keyservers tried in order when importing keys
    """
    home: Path = DEFAULT_HOME
    gpg_binary: str = "gpg"
    ykman_binary: str = "ykman"
    sign_script: Optional[Path] = None
    token_timeout: float = TOKEN_TIMEOUT
    tool_timeout: float = TOOL_TIMEOUT
    keyserver_timeout: float = KEYSERVER_TIMEOUT
    keyservers: tuple[str, ...] = field(default=DEFAULT_KEYSERVERS)

    @property
    def keys_dir(self) -> Path:
        return self.home / "keys"

    @property
    def metadata_path(self) -> Path:
        return self.home / "pgp-config.json"

    @classmethod
    def from_env(cls, home: Optional[Path] = None) -> "Settings":
        """
        Build settings from MAILPGP_* environment variables.

        Args:
            home: Explicit home directory, overriding MAILPGP_HOME

        Returns:
            Settings instance
        """
        env = os.environ
        sign_script = env.get("MAILPGP_SIGN_SCRIPT")
        return cls(
            home=Path(home or env.get("MAILPGP_HOME") or DEFAULT_HOME),
            gpg_binary=env.get("MAILPGP_GPG", "gpg"),
            ykman_binary=env.get("MAILPGP_YKMAN", "ykman"),
            sign_script=Path(sign_script) if sign_script else None,
        )
