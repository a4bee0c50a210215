"""
Token Key Management

Helpers around a hardware token's public keys: keyring presence checks,
keyserver import and upload, export to a file, syncing the token's keys
into the key store at startup, and a self-test of token functions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import ExternalToolFailure, InvalidKeyBlock, PGPError, PublicKeyNotFound
from .hardware import HardwareTokenBridge, KeySlot
from .key_store import KeyStore
from .keyring import GpgKeyring
from .openpgp import canonical_fingerprint
from .outcomes import SelfTestReport


logger = logging.getLogger(__name__)

UPLOAD_KEYSERVER = "keys.openpgp.org"


@dataclass
class SyncReport:
    """What sync_token_keys() changed."""
    imported: list[str] = field(default_factory=list)
    default: Optional[str] = None
    errors: list[str] = field(default_factory=list)


class TokenManager:
    """Public key housekeeping for the hardware token."""

    def __init__(self, store: KeyStore, bridge: HardwareTokenBridge, keyring: GpgKeyring):
        self.store = store
        self.bridge = bridge
        self.keyring = keyring

    def check_public_key(self, fingerprint: str) -> bool:
        return self.keyring.has_public_key(canonical_fingerprint(fingerprint))

    def import_from_keyservers(self, fingerprint: str) -> str:
        """
        Receive a key from the configured keyservers, in order.

        Returns:
            The keyserver that supplied the key

        Raises:
            PublicKeyNotFound: if no keyserver had it
        """
        fingerprint = canonical_fingerprint(fingerprint)
        for keyserver in self.keyring.settings.keyservers:
            logger.info(f"Trying keyserver {keyserver} for {fingerprint}")
            if self.keyring.recv_keys(fingerprint, keyserver) and self.keyring.has_public_key(fingerprint):
                logger.info(f"Imported {fingerprint} from {keyserver}")
                return keyserver
        raise PublicKeyNotFound(fingerprint, f"Failed to import {fingerprint} from keyservers")

    def export_public_key_to_file(self, fingerprint: str, path: Path) -> Path:
        fingerprint = canonical_fingerprint(fingerprint)
        if not self.keyring.export_to_file(fingerprint, path):
            raise PublicKeyNotFound(fingerprint)
        logger.info(f"Exported {fingerprint} to {path}")
        return path

    def upload_to_keyserver(self, fingerprint: str, keyserver: str = UPLOAD_KEYSERVER) -> None:
        fingerprint = canonical_fingerprint(fingerprint)
        result = self.keyring.send_keys(fingerprint, keyserver)
        if not result.ok:
            raise ExternalToolFailure(f"Upload to {keyserver} failed", result.stderr)
        logger.info(f"Uploaded {fingerprint} to {keyserver}")

    def sync_token_keys(self) -> SyncReport:
        """
        Bring the key store in line with a connected token.

        With an empty store, the token's public keys are imported, marked as
        hardware-origin and the signature key made default. With keys but no
        default, the first key becomes default.
        """
        report = SyncReport()
        records = self.store.list_keys()

        if records:
            if not any(r.is_default for r in records):
                self.store.set_default_key(records[0].fingerprint)
                report.default = records[0].fingerprint
                logger.info(f"No default key set, using {report.default}")
            return report

        if not self.bridge.has_pgp_keys():
            logger.debug("No configured hardware token, nothing to sync")
            return report

        try:
            exported = self.bridge.export_public_keys()
        except PGPError as e:
            logger.warning(f"Could not export token keys: {e}")
            report.errors.append(str(e))
            return report

        for slot in (KeySlot.SIGNATURE, KeySlot.DECRYPTION, KeySlot.AUTHENTICATION):
            armored = exported.get(slot)
            if not armored:
                continue
            try:
                fingerprint = self.store.import_public_key(armored)
            except InvalidKeyBlock as e:
                report.errors.append(f"{slot.name.lower()}: {e}")
                continue
            self.store.mark_as_hardware_origin(fingerprint)
            if fingerprint not in report.imported:
                report.imported.append(fingerprint)
            if report.default is None:
                self.store.set_default_key(fingerprint)
                report.default = fingerprint

        logger.info(f"Imported {len(report.imported)} key(s) from hardware token")
        return report

    def self_test(self, pin: Optional[str] = None) -> SelfTestReport:
        """Check detection, keyring presence, signing and decryption capability."""
        report = SelfTestReport()
        session = self.bridge.detect()
        report.key_detected = session.detected
        if not session.detected:
            report.messages.append("Hardware token not detected")
            return report

        signature_fp = session.fingerprint(KeySlot.SIGNATURE)
        if signature_fp:
            report.public_key_found = self.keyring.has_public_key(signature_fp)

        if report.public_key_found:
            message = f"Hardware token test message {datetime.now(timezone.utc).isoformat()}"
            report.can_sign = self.bridge.sign(message, pin=pin).is_success

        report.can_encrypt = report.public_key_found
        report.can_decrypt = session.fingerprint(KeySlot.DECRYPTION) is not None
        if report.key_detected and report.public_key_found:
            report.messages.append("Hardware token is fully functional")
        else:
            report.messages.append("Hardware token detected but not fully configured")
        return report
