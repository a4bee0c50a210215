"""
Pytest configuration and fixtures for mailpgp tests.

External tools are never run: gpg, ykman and sign scripts go through a
FakeRunner scripted per test. OpenPGP operations use real
johnnycanencrypt Curve25519 keys generated into temporary stores.
"""

import os
import stat
from pathlib import Path
from typing import Callable, Optional

import pytest

from mailpgp.config import Settings
from mailpgp.discovery import KeyDiscovery
from mailpgp.engine import CryptoEngine
from mailpgp.hardware import HardwareTokenBridge
from mailpgp.key_store import KeyStore
from mailpgp.keyring import GpgKeyring
from mailpgp.openpgp import OpenPGPBackend
from mailpgp.runner import CommandResult
from mailpgp.token_manager import TokenManager


ALICE_PASSPHRASE = "alice passphrase"
BOB_PASSPHRASE = "bob passphrase"

SIG_FP = "AAAA1111BBBB2222CCCC3333DDDD4444EEEE5555"
DEC_FP = "1111AAAA2222BBBB3333CCCC4444DDDD5555EEEE"
AUT_FP = "9999AAAA8888BBBB7777CCCC6666DDDD5555EEEE"

FAKE_SIGNATURE = (
    "-----BEGIN PGP SIGNATURE-----\n"
    "\n"
    "iHUEABYKAB0WIQTfakesignaturedata\n"
    "-----END PGP SIGNATURE-----\n"
)

# gpg --pinentry-mode error output for a card key that wants its PIN
NO_PINENTRY_DECRYPT = (
    "gpg: public key decryption failed: No pinentry\n"
    "gpg: decryption failed: No secret key\n"
)


def spaced(fingerprint: str) -> str:
    """Fingerprint in the 4-character groups printed by gpg and ykman."""
    return " ".join(fingerprint[i:i + 4] for i in range(0, len(fingerprint), 4))


YKMAN_INFO = """Device type: YubiKey 5 NFC
Serial number: 12345678
Firmware version: 5.4.3
Form factor: Keychain (USB-A)
Enabled USB interfaces: OTP, FIDO, CCID
NFC transport is enabled.
"""


def ykman_openpgp_info(pin_tries: int = 3) -> str:
    return f"""OpenPGP version: 3.4
Application version: 5.4.3

PIN tries remaining: {pin_tries}
Reset code tries remaining: 0
Admin PIN tries remaining: 3

Signature key:
  Fingerprint: {spaced(SIG_FP)}
  Touch policy: Off
Decryption key:
  Fingerprint: {spaced(DEC_FP)}
  Touch policy: On
Authentication key:
  Fingerprint: {spaced(AUT_FP)}
  Touch policy: Off
"""


def card_status(pin_counter: str = "3 0 3") -> str:
    return f"""Reader ...........: Yubico YubiKey OTP FIDO CCID 00 00
Application ID ...: D2760001240103040006123456780000
Application type .: OpenPGP
Version ..........: 3.4
Manufacturer .....: Yubico
Serial number ....: 12345678
Name of cardholder: [not set]
Language prefs ...: [not set]
Salutation .......:
URL of public key : https://keys.example.org/alice.asc
Login data .......: [not set]
Signature PIN ....: not forced
Key attributes ...: ed25519 cv25519 ed25519
Max. PIN lengths .: 127 127 127
PIN retry counter : {pin_counter}
Signature counter : 4
KDF setting ......: off
UIF setting ......: Sign=off Decrypt=on Auth=off
Signature key ....: {spaced(SIG_FP)}
      created ....: 2023-01-01 10:00:00
Encryption key....: {spaced(DEC_FP)}
      created ....: 2023-01-01 10:00:00
Authentication key: {spaced(AUT_FP)}
      created ....: 2023-01-01 10:00:00
General key info..: [none]
"""


class FakeRunner:
    """
    Scripted HardwareCommandRunner.

    Responses are matched by a contiguous run of argv tokens; the most
    recently added match wins. Unscripted commands exit with status 1.
    Each call records argv, env, timeout and a snapshot of the files
    named in argv so tests can inspect work area contents after cleanup.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self._responders: list[tuple[tuple[str, ...], Callable]] = []

    def on(
        self,
        *tokens: str,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        timed_out: bool = False,
        not_found: bool = False,
        output: Optional[str] = None,
        handler: Optional[Callable] = None,
    ) -> None:
        """Script the response for commands containing tokens."""
        def respond(argv, input_text, env):
            if handler is not None:
                return handler(argv, input_text, env)
            if output is not None:
                write_output(argv, output)
            return CommandResult(
                list(argv), returncode, stdout, stderr,
                timed_out=timed_out, not_found=not_found,
            )
        self._responders.append((tokens, respond))

    def run(self, args, *, input_text=None, env=None, timeout=20.0):
        argv = [str(a) for a in args]
        self.calls.append({
            "argv": argv,
            "input": input_text,
            "env": dict(env or {}),
            "timeout": timeout,
            "files": snapshot_files(argv, env),
        })
        for tokens, respond in reversed(self._responders):
            if contains(argv, tokens):
                return respond(argv, input_text, env)
        return CommandResult(argv, 1, "", f"{argv[0]}: unscripted")

    def commands(self, *tokens: str) -> list[dict]:
        return [c for c in self.calls if contains(c["argv"], tokens)]


def contains(argv: list[str], tokens: tuple[str, ...]) -> bool:
    n = len(tokens)
    return any(tuple(argv[i:i + n]) == tokens for i in range(len(argv) - n + 1))


def output_path(argv: list[str]) -> Path:
    if "--output" in argv:
        return Path(argv[argv.index("--output") + 1])
    return Path(argv[-1])


def write_output(argv: list[str], content: str) -> None:
    output_path(argv).write_text(content, encoding="utf-8")


def snapshot_files(argv: list[str], env: Optional[dict]) -> dict:
    """Contents and permission bits of existing files named in argv or env."""
    files = {}
    candidates = list(argv) + list((env or {}).values())
    for candidate in candidates:
        if os.sep not in candidate:
            continue
        path = Path(candidate)
        if path.is_file():
            files[candidate] = {
                "content": path.read_text(encoding="utf-8"),
                "mode": stat.S_IMODE(path.stat().st_mode),
                "dir_mode": stat.S_IMODE(path.parent.stat().st_mode),
            }
    return files


def script_token(runner: FakeRunner, pin_tries: int = 3, in_keyring: bool = True) -> None:
    """Script a connected YubiKey with all three OpenPGP keys."""
    runner.on("ykman", "info", stdout=YKMAN_INFO)
    runner.on("ykman", "openpgp", "info", stdout=ykman_openpgp_info(pin_tries))
    runner.on("--card-status", stdout=card_status(f"{pin_tries} 0 3"))
    if in_keyring:
        for fp in (SIG_FP, DEC_FP, AUT_FP):
            runner.on("--list-keys", fp, stdout=f"pub   ed25519 2023-01-01\n      {fp}\n")


@pytest.fixture(scope="session")
def backend():
    """OpenPGP backend shared across tests."""
    return OpenPGPBackend()


@pytest.fixture(scope="session")
def bob_key(backend):
    """A key pair that is not in any store."""
    return backend.generate_key("Bob", "bob@example.com", BOB_PASSPHRASE)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary home directory."""
    return Settings(home=tmp_path / "mailpgp-home")


@pytest.fixture
def store(settings, backend):
    """Empty key store."""
    return KeyStore(settings, backend)


@pytest.fixture
def alice(store):
    """Alice's locally generated key pair, the store default."""
    return store.generate_key_pair("Alice", "alice@example.com", ALICE_PASSPHRASE)


@pytest.fixture
def runner():
    """FakeRunner with nothing scripted: no token, empty keyring."""
    return FakeRunner()


@pytest.fixture
def keyring(runner, settings):
    return GpgKeyring(runner, settings)


@pytest.fixture
def readers_list():
    """Mutable PC/SC reader list seen by the bridge."""
    return []


@pytest.fixture
def bridge(runner, keyring, settings, readers_list):
    return HardwareTokenBridge(runner, keyring, settings, list_readers=lambda: readers_list)


@pytest.fixture
def discovery(store, keyring):
    return KeyDiscovery(store, keyring)


@pytest.fixture
def engine(store, bridge, discovery):
    return CryptoEngine(store, bridge, discovery)


@pytest.fixture
def tokens(store, bridge, keyring):
    return TokenManager(store, bridge, keyring)
