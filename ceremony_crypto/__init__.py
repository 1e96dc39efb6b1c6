"""
Hardware-token hybrid encryption.

High-level API:
- initialize(module_path) -> CryptographicModule
- module.list_tokens() -> [TokenDescriptor]
- module.session(slot_id, pin) -> TokenSession (context manager; closes on exit)
- session.find_key_pair(label) -> KeyPair(private, public)
- session.list_private_key_labels() -> [str]
- encrypt_bytes(session, public_key, data) -> bytes
- decrypt_bytes(session, private_key, blob) -> bytes
- encrypt_file(session, public_key, input_path, output_path=None) -> output_path
- decrypt_file(session, private_key, input_path, output_path=None) -> output_path

Failures raise subclasses of CeremonyError (see ceremony_crypto.errors).
"""

from .config import DEFAULT_PKCS11_LIB, find_pkcs11_module, resolve_module_path
from .errors import (
    AmbiguousKeyError,
    AuthenticationError,
    AuthenticationTagError,
    CeremonyError,
    DecryptionError,
    FormatError,
    KeyNotFoundError,
    ModuleFinalizedError,
    ModuleInitError,
    ModuleLoadError,
    ObjectSearchError,
    PinLockedError,
    SessionClosedError,
    SessionOpenError,
    SessionStateError,
    SlotListError,
    UnwrapError,
    WrapError,
)
from .file_crypto import (
    EncryptedContainer,
    decrypt_bytes,
    decrypt_file,
    encrypt_bytes,
    encrypt_container,
    encrypt_file,
)
from .token_session import (
    CryptographicModule,
    KeyHandle,
    KeyPair,
    SessionState,
    TokenDescriptor,
    TokenManager,
    TokenSession,
    initialize,
)

__all__ = [
    "DEFAULT_PKCS11_LIB",
    "find_pkcs11_module",
    "resolve_module_path",
    "initialize",
    "TokenManager",
    "CryptographicModule",
    "TokenDescriptor",
    "TokenSession",
    "SessionState",
    "KeyHandle",
    "KeyPair",
    "EncryptedContainer",
    "encrypt_container",
    "encrypt_bytes",
    "decrypt_bytes",
    "encrypt_file",
    "decrypt_file",
    "CeremonyError",
    "ModuleLoadError",
    "ModuleInitError",
    "ModuleFinalizedError",
    "SlotListError",
    "SessionOpenError",
    "SessionStateError",
    "SessionClosedError",
    "AuthenticationError",
    "PinLockedError",
    "KeyNotFoundError",
    "AmbiguousKeyError",
    "ObjectSearchError",
    "WrapError",
    "UnwrapError",
    "DecryptionError",
    "FormatError",
    "AuthenticationTagError",
]
