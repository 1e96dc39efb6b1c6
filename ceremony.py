import argparse
import getpass
import logging
import sys

from ceremony_crypto import (
    CeremonyError,
    TokenManager,
    decrypt_file as module_decrypt_file,
    encrypt_file as module_encrypt_file,
    resolve_module_path,
)
from ceremony_crypto.config import PKCS11_LIB_ENV

log = logging.getLogger('ceremony')


def _configure_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )


def _read_pin(slot_id):
    return getpass.getpass(f"Enter PIN for the token in slot {slot_id}: ")


def _list_tokens(module):
    tokens = module.list_tokens()
    if not tokens:
        print("No tokens found")
    for token in tokens:
        print(token)


def _list_keys(module, slot_id):
    with module.session(slot_id, pin=_read_pin(slot_id)) as session:
        labels = session.list_private_key_labels()
    if not labels:
        print(f"No private keys found in slot {slot_id}")
    for label in labels:
        print(label)


def _encrypt_file_cli(module, slot_id, label, file_path, output_path=None):
    with module.session(slot_id, pin=_read_pin(slot_id)) as session:
        _, public_key = session.find_key_pair(label)
        out = module_encrypt_file(session, public_key, file_path, output_path)
    print(f"File '{file_path}' successfully encrypted to '{out}'")


def _decrypt_file_cli(module, slot_id, label, file_path, output_path=None):
    with module.session(slot_id, pin=_read_pin(slot_id)) as session:
        private_key, _ = session.find_key_pair(label)
        out = module_decrypt_file(session, private_key, file_path, output_path)
    print(f"File '{file_path}' successfully decrypted to '{out}'")


def build_parser():
    parser = argparse.ArgumentParser(description="Hardware token hybrid RSA/AES-GCM file encryption")

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument('-e', '--encrypt', action='store_true', help='Encrypt file with a token key pair')
    action_group.add_argument('-d', '--decrypt', action='store_true', help='Decrypt file with a token key pair')
    action_group.add_argument('--list-tokens', action='store_true', help='List slots with a token present')
    action_group.add_argument('--list-keys', action='store_true', help='List private key labels on a token')

    parser.add_argument('file', nargs='?', help='File to encrypt or decrypt')
    parser.add_argument('-o', '--output', help='Output file for encrypted/decrypted content')

    parser.add_argument('-m', '--module', help=f'PKCS#11 module path (default: ${PKCS11_LIB_ENV} or auto-detect)')
    parser.add_argument('-s', '--slot', type=int, help='Slot id of the token')
    parser.add_argument('-l', '--label', help='Label of the key pair on the token')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Parameter validation
    if args.encrypt or args.decrypt:
        if not args.file:
            parser.error("-e or -d requires a file to encrypt or decrypt.")
        if args.slot is None or not args.label:
            parser.error("-e or -d requires --slot and --label.")
    if args.list_keys and args.slot is None:
        parser.error("--list-keys requires --slot.")
    if not (args.encrypt or args.decrypt or args.list_tokens or args.list_keys):
        parser.print_help()
        return 0

    _configure_logging(args.verbose)

    manager = TokenManager()
    try:
        module = manager.initialize(resolve_module_path(args.module))
        if args.list_tokens:
            _list_tokens(module)
        elif args.list_keys:
            _list_keys(module, args.slot)
        elif args.encrypt:
            _encrypt_file_cli(module, args.slot, args.label, args.file, args.output)
        elif args.decrypt:
            _decrypt_file_cli(module, args.slot, args.label, args.file, args.output)
    except (CeremonyError, OSError) as e:
        log.debug("operation failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        manager.finalize()
    return 0


if __name__ == '__main__':
    sys.exit(main())
