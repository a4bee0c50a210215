"""
Command Line Entry Point for mailpgp

Key management, message encryption/decryption/signing and hardware
token housekeeping from the command line. Passphrases and PINs are
always read with getpass, never from arguments.
"""

import argparse
import getpass
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .config import Settings
from .discovery import KeyDiscovery
from .engine import CryptoEngine
from .errors import (
    ExternalToolFailure,
    PassphraseIncorrect,
    PGPError,
    PinIncorrect,
    PinRequired,
)
from .hardware import HardwareTokenBridge
from .key_store import KeyStore
from .keyring import GpgKeyring
from .outcomes import SignStatus
from .runner import HardwareCommandRunner, SubprocessRunner
from .token_manager import TokenManager


logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_SECRET_ATTEMPTS = 3


@dataclass
class Services:
    """Wired components for one CLI invocation."""
    settings: Settings
    store: KeyStore
    keyring: GpgKeyring
    bridge: HardwareTokenBridge
    discovery: KeyDiscovery
    engine: CryptoEngine
    tokens: TokenManager


def build_services(settings: Settings, runner: Optional[HardwareCommandRunner] = None) -> Services:
    """Construct every component, sharing one runner."""
    runner = runner or SubprocessRunner()
    store = KeyStore(settings)
    keyring = GpgKeyring(runner, settings)
    bridge = HardwareTokenBridge(runner, keyring, settings)
    discovery = KeyDiscovery(store, keyring)
    engine = CryptoEngine(store, bridge, discovery)
    tokens = TokenManager(store, bridge, keyring)
    return Services(settings, store, keyring, bridge, discovery, engine, tokens)


def _read_input(path: Optional[str]) -> str:
    if path and path != "-":
        return Path(path).read_text(encoding="utf-8")
    return sys.stdin.read()


def _with_secret(operation: Callable[[Optional[str]], T], prompt: str) -> T:
    """
    Run operation without a secret first, prompting when one is needed.

    PinBlocked is never retried.
    """
    secret = None
    attempts = 0
    while True:
        try:
            return operation(secret)
        except (PinRequired, PinIncorrect, PassphraseIncorrect) as e:
            if attempts >= MAX_SECRET_ATTEMPTS:
                raise
            if secret is not None:
                print(f"{e}", file=sys.stderr)
            secret = getpass.getpass(prompt)
            attempts += 1


# Commands

def cmd_generate(services: Services, args: argparse.Namespace) -> int:
    passphrase = getpass.getpass("New passphrase: ")
    if passphrase != getpass.getpass("Repeat passphrase: "):
        print("Passphrases do not match", file=sys.stderr)
        return 1
    record = services.store.generate_key_pair(args.name, args.email, passphrase)
    print(record.fingerprint)
    return 0


def cmd_import(services: Services, args: argparse.Namespace) -> int:
    print(services.store.import_public_key(_read_input(args.file)))
    return 0


def cmd_list(services: Services, args: argparse.Namespace) -> int:
    for record in services.store.list_keys():
        flags = []
        if record.is_default:
            flags.append("default")
        if record.has_private_key:
            flags.append("private")
        if record.from_hardware_token:
            flags.append("hardware")
        print(f"{record.fingerprint}  {record.name} <{record.email}>  [{', '.join(flags)}]")
    for contact in services.store.list_contacts():
        key_state = "key" if contact.has_public_key else "no key"
        print(f"contact  {contact.name} <{contact.email}>  [{key_state}]")
    return 0


def cmd_set_default(services: Services, args: argparse.Namespace) -> int:
    services.store.set_default_key(args.fingerprint)
    return 0


def cmd_mark_hardware(services: Services, args: argparse.Namespace) -> int:
    services.store.mark_as_hardware_origin(args.fingerprint)
    return 0


def cmd_delete(services: Services, args: argparse.Namespace) -> int:
    services.store.delete_key(args.fingerprint)
    return 0


def cmd_add_contact(services: Services, args: argparse.Namespace) -> int:
    public_key = Path(args.key).read_text(encoding="utf-8") if args.key else None
    result = services.discovery.add_contact(args.email, args.name, public_key)
    print(result if isinstance(result, str) else result.email)
    return 0


def cmd_encrypt(services: Services, args: argparse.Namespace) -> int:
    plaintext = _read_input(args.file)
    passphrase = ""
    if not args.no_sign and services.store.get_default_key_pair() is not None:
        passphrase = getpass.getpass("Passphrase for signing key: ")
    armored = services.engine.encrypt_message(
        plaintext,
        args.recipient,
        sign=not args.no_sign,
        attach_public_key=not args.no_attach,
        passphrase=passphrase,
    )
    sys.stdout.write(armored)
    return 0


def cmd_decrypt(services: Services, args: argparse.Namespace) -> int:
    ciphertext = _read_input(args.file)
    message = _with_secret(
        lambda secret: services.engine.decrypt_and_verify(ciphertext, secret),
        "Passphrase or PIN: ",
    )
    sys.stdout.write(message.text)
    if message.signature_verified:
        print(f"\nGood signature from {message.signer_fingerprint}", file=sys.stderr)
    return 0


def cmd_sign(services: Services, args: argparse.Namespace) -> int:
    plaintext = _read_input(args.file)

    def attempt(secret: Optional[str]):
        outcome = services.engine.sign_message(plaintext, secret)
        outcome.raise_for_error()
        return outcome

    outcome = _with_secret(attempt, "Passphrase or PIN: ")
    if outcome.status == SignStatus.FALLBACK:
        print("Warning: hardware signing failed, message is NOT signed", file=sys.stderr)
    sys.stdout.write(outcome.signed_message)
    return 0


def cmd_detect(services: Services, args: argparse.Namespace) -> int:
    session = services.bridge.detect()
    print(f"State: {session.state.value}")
    if not session.detected:
        return 1
    for label, value in (
        ("Detected via", session.method),
        ("Device type", session.device_type),
        ("Serial number", session.serial),
        ("Firmware version", session.firmware_version),
        ("OpenPGP version", session.openpgp_version),
        ("PIN tries remaining", session.pin_tries_remaining),
        ("Public key URL", session.public_key_url),
    ):
        if value is not None:
            print(f"{label}: {value}")
    for slot, info in session.slots.items():
        print(f"{slot.name.title()} key: {info.fingerprint or '[none]'} "
              f"(touch: {info.touch_policy or 'unknown'})")
    return 0


def cmd_sync_token(services: Services, args: argparse.Namespace) -> int:
    report = services.tokens.sync_token_keys()
    for fingerprint in report.imported:
        print(f"Imported {fingerprint}")
    if report.default:
        print(f"Default key: {report.default}")
    for error in report.errors:
        print(f"Error: {error}", file=sys.stderr)
    return 1 if report.errors else 0


def cmd_extract_key(services: Services, args: argparse.Namespace) -> int:
    text = _read_input(args.file)
    extracted = services.discovery.extract_public_key_from_message(text)
    if extracted is None:
        print("No public key found in message", file=sys.stderr)
        return 1
    print(f"{extracted.fingerprint}  {extracted.name} <{extracted.email}>")
    if args.do_import:
        services.store.import_public_key(extracted.armored)
    return 0


def cmd_fetch_key(services: Services, args: argparse.Namespace) -> int:
    keyserver = services.tokens.import_from_keyservers(args.fingerprint)
    print(f"Imported {args.fingerprint} from {keyserver}")
    return 0


def cmd_upload_key(services: Services, args: argparse.Namespace) -> int:
    services.tokens.upload_to_keyserver(args.fingerprint)
    return 0


def cmd_export_key(services: Services, args: argparse.Namespace) -> int:
    print(services.tokens.export_public_key_to_file(args.fingerprint, Path(args.path)))
    return 0


def cmd_self_test(services: Services, args: argparse.Namespace) -> int:
    report = services.tokens.self_test()
    for label, value in (
        ("Key detected", report.key_detected),
        ("Public key found", report.public_key_found),
        ("Can sign", report.can_sign),
        ("Can encrypt", report.can_encrypt),
        ("Can decrypt", report.can_decrypt),
    ):
        print(f"{label}: {'yes' if value else 'no'}")
    for message in report.messages:
        print(message)
    return 0 if report.key_detected and report.public_key_found else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailpgp",
        description="mailpgp - OpenPGP keys and hardware tokens for secure mail",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s generate --name "Alice" --email alice@example.com
  %(prog)s encrypt -r 0123ABCD... message.txt
  %(prog)s decrypt message.asc
  %(prog)s -v detect          # Verbose output
  %(prog)s -vv sign note.txt  # Debug output
        """
    )
    parser.add_argument(
        '--verbose', '-v',
        action='count',
        default=0,
        help='Increase verbosity (use -vv for debug)'
    )
    parser.add_argument(
        '--home',
        type=Path,
        default=None,
        help='Key store directory (default: $MAILPGP_HOME or ~/.mailpgp)'
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("generate", help="Generate a new key pair")
    p.add_argument("--name", required=True)
    p.add_argument("--email", required=True)
    p.set_defaults(func=cmd_generate)

    p = sub.add_parser("import", help="Import an armored public key")
    p.add_argument("file", nargs="?", help="Key file (default: stdin)")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("list", help="List stored keys and contacts")
    p.set_defaults(func=cmd_list)

    for name, func, help_text in (
        ("set-default", cmd_set_default, "Make a key the default"),
        ("mark-hardware", cmd_mark_hardware, "Mark a key as living on a hardware token"),
        ("delete", cmd_delete, "Delete a key"),
        ("fetch-key", cmd_fetch_key, "Receive a key from the keyservers into gpg"),
        ("upload-key", cmd_upload_key, "Upload a key from gpg to keys.openpgp.org"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("fingerprint")
        p.set_defaults(func=func)

    p = sub.add_parser("export-key", help="Export a key from gpg to a file")
    p.add_argument("fingerprint")
    p.add_argument("path")
    p.set_defaults(func=cmd_export_key)

    p = sub.add_parser("add-contact", help="Add a contact, optionally with a public key")
    p.add_argument("email")
    p.add_argument("--name")
    p.add_argument("--key", help="Armored public key file")
    p.set_defaults(func=cmd_add_contact)

    p = sub.add_parser("encrypt", help="Encrypt a message")
    p.add_argument("-r", "--recipient", action="append", default=[],
                   help="Recipient fingerprint (repeatable)")
    p.add_argument("--no-sign", action="store_true", help="Do not sign the message")
    p.add_argument("--no-attach", action="store_true", help="Do not append the sender's public key")
    p.add_argument("file", nargs="?", help="Message file (default: stdin)")
    p.set_defaults(func=cmd_encrypt)

    for name, func, help_text in (
        ("decrypt", cmd_decrypt, "Decrypt a message"),
        ("sign", cmd_sign, "Sign a message with the default key"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("file", nargs="?", help="Message file (default: stdin)")
        p.set_defaults(func=func)

    p = sub.add_parser("extract-key", help="Find a public key embedded in a message")
    p.add_argument("file", nargs="?", help="Message file (default: stdin)")
    p.add_argument("--import", dest="do_import", action="store_true",
                   help="Import the key into the store")
    p.set_defaults(func=cmd_extract_key)

    p = sub.add_parser("detect", help="Detect a hardware token")
    p.set_defaults(func=cmd_detect)

    p = sub.add_parser("sync-token", help="Import hardware token keys into the store")
    p.set_defaults(func=cmd_sync_token)

    p = sub.add_parser("self-test", help="Test hardware token functions")
    p.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None, runner: Optional[HardwareCommandRunner] = None) -> int:
    """Main entry point with argument parsing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Set log level based on verbosity
    if args.verbose >= 2:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.verbose >= 1:
        logging.getLogger().setLevel(logging.INFO)
    else:
        logging.getLogger().setLevel(logging.WARNING)

    services = build_services(Settings.from_env(args.home), runner)
    try:
        return args.func(services, args)
    except ExternalToolFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.diagnostic:
            logger.info(f"Tool output: {e.diagnostic}")
        return 1
    except PGPError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
