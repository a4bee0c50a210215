"""
External Keyring Tool

Wraps the gpg command line. Every call goes through the injected
HardwareCommandRunner with ``--batch --yes`` and an explicit timeout.

Private key operations (detached signing and decryption) run inside a
WorkArea: the input goes to a file, the PIN to a 0600 file passed with
``--passphrase-file``, and the result is read back from ``--output``.
A PIN never appears in argv.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import Settings
from .outcomes import TokenResult, classify
from .runner import CommandResult, HardwareCommandRunner, WorkArea


logger = logging.getLogger(__name__)


class GpgKeyring:
    """gpg keyring and card operations."""

    def __init__(self, runner: HardwareCommandRunner, settings: Settings):
        self.runner = runner
        self.settings = settings

    def _run(
        self,
        args: list[str],
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
        batch: bool = True,
    ) -> CommandResult:
        cmd = [self.settings.gpg_binary]
        if batch:
            cmd += ["--batch", "--yes"]
        return self.runner.run(
            cmd + args,
            input_text=input_text,
            timeout=timeout or self.settings.tool_timeout,
        )

    # Queries

    def has_public_key(self, fingerprint: str) -> bool:
        return self._run(["--list-keys", fingerprint]).ok

    def has_secret_key(self, fingerprint: str) -> bool:
        return self._run(["--list-secret-keys", fingerprint]).ok

    def export_public_key(self, fingerprint: str) -> Optional[str]:
        """Armored public block from the keyring, None when absent."""
        result = self._run(["--armor", "--export", fingerprint])
        if not result.ok or "BEGIN PGP PUBLIC KEY BLOCK" not in result.stdout:
            logger.debug(f"Keyring has no public key for {fingerprint}")
            return None
        return result.stdout

    def card_status(self) -> CommandResult:
        return self._run(["--card-status"])

    # Mutations

    def import_key(self, armored: str) -> bool:
        with WorkArea() as area:
            key_file = area.write("import.asc", armored)
            result = self._run(["--import", str(key_file)])
        if not result.ok:
            logger.warning(f"gpg --import failed: {result.stderr.strip()}")
        return result.ok

    def fetch_card_keys(self) -> bool:
        """Run the card-edit ``fetch`` command to pull keys from the card's URL."""
        result = self._run(
            ["--command-fd", "0", "--card-edit"],
            input_text="fetch\nquit\n",
            batch=False,
        )
        return result.ok

    def export_to_file(self, fingerprint: str, path: Path) -> bool:
        result = self._run(["--armor", "--export", "--output", str(path), fingerprint])
        return result.ok and path.exists()

    def recv_keys(self, fingerprint: str, keyserver: str) -> bool:
        result = self._run(
            ["--keyserver", keyserver, "--recv-keys", fingerprint],
            timeout=self.settings.keyserver_timeout,
        )
        if not result.ok:
            logger.info(f"{keyserver} did not return {fingerprint}: {result.stderr.strip()}")
        return result.ok

    def send_keys(self, fingerprint: str, keyserver: str) -> CommandResult:
        return self._run(["--keyserver", keyserver, "--send-keys", fingerprint])

    # Private key operations

    def sign(self, fingerprint: str, data: str, pin: Optional[str] = None) -> TokenResult:
        """Armored detached signature made by the key (or card) holding fingerprint."""
        return self._private_operation(
            ["--local-user", fingerprint, "--armor", "--detach-sign"], data, pin
        )

    def decrypt(self, data: str, pin: Optional[str] = None) -> TokenResult:
        return self._private_operation(["--decrypt"], data, pin)

    def _private_operation(self, op_args: list[str], data: str, pin: Optional[str]) -> TokenResult:
        with WorkArea() as area:
            input_file = area.write("input.txt", data)
            output_file = area.file("output.txt")
            args = ["--status-fd", "2"]
            if pin:
                pin_file = area.write_secret("pin", pin)
                args += ["--pinentry-mode", "loopback", "--passphrase-file", str(pin_file)]
            else:
                args += ["--pinentry-mode", "error"]
            args += op_args + ["--output", str(output_file), str(input_file)]

            result = self._run(args, timeout=self.settings.token_timeout)
            output = (
                output_file.read_text(encoding="utf-8", errors="replace")
                if output_file.exists() else None
            )
        return classify(result, output, pin_supplied=bool(pin))
