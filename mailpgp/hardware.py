"""
Hardware Token Bridge

Detects an OpenPGP hardware token (YubiKey or any OpenPGP smart card)
and runs sign/decrypt operations on it through gpg.

Detection probes, in order, until one succeeds:
- ykman info (falling back to ykman list)
- gpg --card-status
- PC/SC reader enumeration via pyscard

A detected token is then queried for its OpenPGP applet with
``ykman openpgp info`` and ``gpg --card-status``. The result is a
TokenSession that is rebuilt on every call and never cached.

Token operations are serialized by a per-bridge lock; other components
that talk to the token (direct keyring decryption) take the same lock
through exclusive().
"""

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Iterator, Optional

from smartcard.System import readers

from .config import Settings
from .errors import HardwareMisconfigured, HardwareNotDetected
from .keyring import GpgKeyring
from .outcomes import TokenResult, TokenStatus, classify
from .runner import CommandResult, HardwareCommandRunner, WorkArea


logger = logging.getLogger(__name__)

MISSING_PUBLIC_KEY_MESSAGE = (
    "Your hardware token public key is not in your GPG keyring. Please import it first."
)


class KeySlot(IntEnum):
    """OpenPGP card key slots (values are the card CRT tags)."""
    SIGNATURE = 0xB6
    DECRYPTION = 0xB8
    AUTHENTICATION = 0xA4


class TokenState(Enum):
    ABSENT = "absent"
    DETECTED = "detected"
    PGP_CONFIGURED = "pgp_configured"
    PGP_UNCONFIGURED = "pgp_unconfigured"


@dataclass
class SlotInfo:
    fingerprint: Optional[str] = None
    touch_policy: Optional[str] = None


@dataclass
class TokenSession:
    """Result of one detection pass."""
    state: TokenState = TokenState.ABSENT
    method: Optional[str] = None
    device_type: Optional[str] = None
    serial: Optional[str] = None
    firmware_version: Optional[str] = None
    form_factor: Optional[str] = None
    interfaces: list[str] = field(default_factory=list)
    openpgp_version: Optional[str] = None
    application_version: Optional[str] = None
    pin_tries_remaining: Optional[int] = None
    public_key_url: Optional[str] = None
    slots: dict[KeySlot, SlotInfo] = field(default_factory=dict)

    @property
    def detected(self) -> bool:
        return self.state != TokenState.ABSENT

    @property
    def configured(self) -> bool:
        return self.state == TokenState.PGP_CONFIGURED

    def fingerprint(self, slot: KeySlot) -> Optional[str]:
        info = self.slots.get(slot)
        return info.fingerprint if info else None


# Output parsing

_YKMAN_INFO_FIELDS = {
    "device_type": re.compile(r"Device type:\s*(.+)"),
    "serial": re.compile(r"Serial number:\s*(.+)"),
    "firmware_version": re.compile(r"Firmware version:\s*(.+)"),
    "form_factor": re.compile(r"Form factor:\s*(.+)"),
}
_YKMAN_INTERFACES_RE = re.compile(r"Enabled USB interfaces:\s*(.+)")

_OPENPGP_VERSION_RE = re.compile(r"OpenPGP version:\s+(.+)")
_APPLICATION_VERSION_RE = re.compile(r"Application version:\s+(.+)")
_PIN_TRIES_RE = re.compile(r"PIN tries remaining:\s+(\d+)")
_YKMAN_SLOT_LABELS = {
    KeySlot.SIGNATURE: "Signature key",
    KeySlot.DECRYPTION: "Decryption key",
    KeySlot.AUTHENTICATION: "Authentication key",
}

_CARD_SLOT_LABELS = {
    KeySlot.SIGNATURE: "Signature key",
    KeySlot.DECRYPTION: "Encryption key",
    KeySlot.AUTHENTICATION: "Authentication key",
}
_UIF_RE = re.compile(r"UIF setting\s*\.*:\s*Sign=(\S+)\s+Decrypt=(\S+)\s+Auth=(\S+)")
_UNSET = ("[none]", "[not set]", "")


def _card_field(text: str, label: str) -> Optional[str]:
    match = re.search(rf"^{re.escape(label)}\s*\.*\s*:\s*(.*)$", text, re.MULTILINE)
    if not match:
        return None
    value = match.group(1).strip()
    return None if value in _UNSET else value


def _clean_fingerprint(value: str) -> Optional[str]:
    fingerprint = re.sub(r"\s+", "", value).upper()
    if not re.fullmatch(r"[0-9A-F]{32,64}", fingerprint):
        return None
    return fingerprint


def parse_ykman_info(text: str) -> dict:
    """Device fields from ``ykman info``."""
    info = {}
    for name, pattern in _YKMAN_INFO_FIELDS.items():
        match = pattern.search(text)
        if match:
            info[name] = match.group(1).strip()
    interfaces = _YKMAN_INTERFACES_RE.search(text)
    if interfaces:
        info["interfaces"] = [i.strip() for i in interfaces.group(1).split(",") if i.strip()]
    return info


def parse_openpgp_info(text: str) -> dict:
    """Applet fields and per-slot metadata from ``ykman openpgp info``."""
    info: dict = {"slots": {}}
    for key, pattern in (("openpgp_version", _OPENPGP_VERSION_RE),
                         ("application_version", _APPLICATION_VERSION_RE)):
        match = pattern.search(text)
        if match:
            info[key] = match.group(1).strip()
    tries = _PIN_TRIES_RE.search(text)
    if tries:
        info["pin_tries_remaining"] = int(tries.group(1))
    for slot, label in _YKMAN_SLOT_LABELS.items():
        section = re.search(
            rf"{label}:[\s\S]*?Fingerprint:\s+(.+)[\s\S]*?Touch policy:\s+(.+?)(?:\n|$)",
            text,
        )
        if section:
            info["slots"][slot] = SlotInfo(
                fingerprint=_clean_fingerprint(section.group(1)),
                touch_policy=section.group(2).strip(),
            )
    return info


def parse_card_status(text: str) -> dict:
    """Card fields and per-slot metadata from ``gpg --card-status``."""
    info: dict = {"slots": {}}
    serial = _card_field(text, "Serial number")
    if serial:
        info["serial"] = serial
    version = _card_field(text, "Version")
    if version:
        info["openpgp_version"] = version
    manufacturer = _card_field(text, "Manufacturer")
    if manufacturer:
        info["device_type"] = manufacturer
    url = _card_field(text, "URL of public key")
    if url:
        info["public_key_url"] = url
    counters = _card_field(text, "PIN retry counter")
    if counters:
        first = counters.split()[0]
        if first.isdigit():
            info["pin_tries_remaining"] = int(first)

    touch = {}
    uif = _UIF_RE.search(text)
    if uif:
        touch = {
            KeySlot.SIGNATURE: uif.group(1),
            KeySlot.DECRYPTION: uif.group(2),
            KeySlot.AUTHENTICATION: uif.group(3),
        }
    for slot, label in _CARD_SLOT_LABELS.items():
        value = _card_field(text, label)
        fingerprint = _clean_fingerprint(value) if value else None
        if fingerprint:
            info["slots"][slot] = SlotInfo(fingerprint, touch.get(slot))
    return info


def _apply(session: TokenSession, info: dict, overwrite: bool = False) -> None:
    """Copy parsed fields onto the session, filling gaps unless overwrite."""
    for key, value in info.items():
        if key == "slots":
            for slot, slot_info in value.items():
                current = session.slots.get(slot)
                if current is None:
                    session.slots[slot] = slot_info
                    continue
                if slot_info.fingerprint and (overwrite or not current.fingerprint):
                    current.fingerprint = slot_info.fingerprint
                if slot_info.touch_policy and (overwrite or not current.touch_policy):
                    current.touch_policy = slot_info.touch_policy
        elif overwrite or getattr(session, key) in (None, []):
            setattr(session, key, value)


class HardwareTokenBridge:
    """
    Detection and private key operations on a hardware token.

    Args:
        runner: Runs ykman, gpg and the optional sign script
        keyring: gpg keyring wrapper sharing the same runner
        settings: Binaries, timeouts and the optional sign script
        list_readers: PC/SC reader enumeration, pyscard's readers() by default
    """

    def __init__(
        self,
        runner: HardwareCommandRunner,
        keyring: GpgKeyring,
        settings: Settings,
        list_readers: Callable[[], list] = readers,
    ):
        self.runner = runner
        self.keyring = keyring
        self.settings = settings
        self._list_readers = list_readers
        self._lock = threading.RLock()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the token lock for a sequence of operations."""
        with self._lock:
            yield

    def _ykman(self, *args: str) -> CommandResult:
        return self.runner.run(
            [self.settings.ykman_binary, *args],
            timeout=self.settings.tool_timeout,
        )

    def ykman_available(self) -> bool:
        return self._ykman("--version").ok

    # Detection

    def detect(self) -> TokenSession:
        """
        Probe for a token and read its OpenPGP applet.

        Returns:
            A fresh TokenSession; ABSENT when every probe fails
        """
        session = TokenSession()
        card_status: Optional[CommandResult] = None

        info = self._ykman("info")
        if info.ok and ("Serial number" in info.stdout or "Device type" in info.stdout):
            session.method = "ykman"
            _apply(session, parse_ykman_info(info.stdout))
        elif not info.not_found:
            listing = self._ykman("list")
            if listing.ok and "YubiKey" in listing.stdout:
                session.method = "ykman"
                session.device_type = listing.stdout.strip().splitlines()[0]

        if session.method is None:
            card_status = self.keyring.card_status()
            if card_status.ok and ("Serial number" in card_status.stdout
                                   or "Application ID" in card_status.stdout):
                session.method = "gpg"

        if session.method is None and self._pcsc_reader_present():
            session.method = "pcsc"

        if session.method is None:
            logger.debug("No hardware token detected")
            return session

        session.state = TokenState.DETECTED
        logger.info(f"Hardware token detected via {session.method}")
        self._read_applet(session, card_status)
        return session

    def _pcsc_reader_present(self) -> bool:
        try:
            reader_list = self._list_readers()
        except Exception as e:
            logger.debug(f"PC/SC enumeration failed: {e}")
            return False
        return len(reader_list) > 0

    def _read_applet(self, session: TokenSession, card_status: Optional[CommandResult]) -> None:
        accessible = False

        applet = self._ykman("openpgp", "info")
        if applet.ok and "OpenPGP version" in applet.stdout:
            accessible = True
            _apply(session, parse_openpgp_info(applet.stdout), overwrite=True)

        if card_status is None:
            card_status = self.keyring.card_status()
        if card_status.ok and card_status.stdout.strip():
            accessible = True
            _apply(session, parse_card_status(card_status.stdout))

        session.state = TokenState.PGP_CONFIGURED if accessible else TokenState.PGP_UNCONFIGURED
        if not accessible:
            logger.warning("Hardware token found but its OpenPGP applet is not accessible")

    def has_pgp_keys(self) -> bool:
        session = self.detect()
        return session.configured and any(s.fingerprint for s in session.slots.values())

    def get_pgp_fingerprints(self) -> dict[KeySlot, str]:
        session = self.detect()
        return {
            slot: info.fingerprint
            for slot, info in session.slots.items()
            if info.fingerprint
        }

    # Private key operations

    def sign(self, data: str, pin: Optional[str] = None,
             public_key: Optional[str] = None) -> TokenResult:
        """
        Make an armored detached signature with the token's signature key.

        Args:
            data: Text to sign
            pin: Token user PIN; None lets the tool report that one is needed
            public_key: Armored public block imported when the keyring lacks it

        Returns:
            TokenResult with the signature as output on success
        """
        with self._lock:
            fingerprint, failure = self._prepare(KeySlot.SIGNATURE, public_key)
            if failure is not None:
                return failure
            logger.info(f"Signing {len(data)} bytes with hardware key {fingerprint}")
            if self.settings.sign_script:
                return self._run_sign_script(fingerprint, data, pin)
            return self.keyring.sign(fingerprint, data, pin)

    def decrypt(self, data: str, pin: Optional[str] = None,
                public_key: Optional[str] = None) -> TokenResult:
        """Decrypt an armored message with the token's decryption key."""
        with self._lock:
            fingerprint, failure = self._prepare(KeySlot.DECRYPTION, public_key)
            if failure is not None:
                return failure
            logger.info(f"Decrypting {len(data)} bytes with hardware key {fingerprint}")
            return self.keyring.decrypt(data, pin)

    def _prepare(
        self, slot: KeySlot, public_key: Optional[str]
    ) -> tuple[Optional[str], Optional[TokenResult]]:
        """Detection, PIN counter and keyring checks shared by sign and decrypt."""
        session = self.detect()
        if not session.detected:
            return None, TokenResult(
                TokenStatus.HARDWARE_ABSENT,
                error="No hardware token detected",
                hardware_detected=False,
            )
        fingerprint = session.fingerprint(slot)
        if not session.configured or not fingerprint:
            return None, TokenResult(
                TokenStatus.HARDWARE_MISCONFIGURED,
                error=f"Hardware token has no {slot.name.lower()} key",
            )
        if session.pin_tries_remaining == 0:
            return fingerprint, TokenResult(
                TokenStatus.PIN_BLOCKED,
                error="PIN is blocked; reset the token with the admin PIN or reset code",
            )
        if not self._ensure_in_keyring(fingerprint, public_key):
            return fingerprint, TokenResult(
                TokenStatus.KEYRING_MISSING_KEY, error=MISSING_PUBLIC_KEY_MESSAGE
            )
        return fingerprint, None

    def _ensure_in_keyring(self, fingerprint: str, public_key: Optional[str]) -> bool:
        if self.keyring.has_public_key(fingerprint):
            return True
        if public_key:
            logger.info(f"Importing public key for {fingerprint} into keyring")
            self.keyring.import_key(public_key)
            if self.keyring.has_public_key(fingerprint):
                return True
        logger.info("Fetching public key from the card's URL")
        self.keyring.fetch_card_keys()
        return self.keyring.has_public_key(fingerprint)

    def _run_sign_script(self, fingerprint: str, data: str, pin: Optional[str]) -> TokenResult:
        with WorkArea() as area:
            input_file = area.write("message.txt", data)
            output_file = area.file("signature.asc")
            env = {"MAILPGP_SIGNING_KEY": fingerprint}
            if pin:
                env["PIN_FILE"] = str(area.write_secret("pin", pin))
                env["PINENTRY_USER_DATA"] = pin
            result = self.runner.run(
                [str(self.settings.sign_script), str(input_file), str(output_file)],
                env=env,
                timeout=self.settings.token_timeout,
            )
            output = (
                output_file.read_text(encoding="utf-8", errors="replace")
                if output_file.exists() else None
            )
        return classify(result, output, pin_supplied=bool(pin))

    # Key export

    def export_public_keys(self) -> dict[KeySlot, str]:
        """
        Armored public blocks for each populated slot.

        Keys missing from the keyring are fetched from the card's URL first.

        Raises:
            HardwareNotDetected: if no token is connected
            HardwareMisconfigured: if the token has no OpenPGP keys
        """
        with self._lock:
            session = self.detect()
            if not session.detected:
                raise HardwareNotDetected("No hardware token detected")
            fingerprints = {
                slot: info.fingerprint
                for slot, info in session.slots.items()
                if info.fingerprint
            }
            if not session.configured or not fingerprints:
                raise HardwareMisconfigured("Hardware token has no OpenPGP keys")

            if not all(self.keyring.has_public_key(fp) for fp in fingerprints.values()):
                self.keyring.fetch_card_keys()

            exported = {}
            for slot, fingerprint in fingerprints.items():
                armored = self.keyring.export_public_key(fingerprint)
                if armored:
                    exported[slot] = armored
                else:
                    logger.warning(f"Could not export {slot.name.lower()} key {fingerprint}")
            return exported
