"""Hybrid token-RSA + local AES-256-GCM encryption.

Container layout (little-endian):

    [4-byte wrapped_len][wrapped AES key][12-byte nonce][ciphertext][16-byte tag]

The 32-byte AES key is fresh per container and wrapped by the token with
RSA PKCS#1 v1.5; only the wrapped form is ever stored. All symmetric work is
local. The private key is only ever used in place, through
``TokenSession.unwrap``.
"""

import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import determine_chunk_size
from .errors import AuthenticationTagError, FormatError, UnwrapError
from .token_session import KeyHandle, TokenSession

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
LENGTH_SIZE = 4
MAX_WRAPPED_LEN = 0xFFFFFFFF

log = logging.getLogger(__name__)


def min_container_size(wrapped_len: int) -> int:
    return LENGTH_SIZE + wrapped_len + NONCE_SIZE + TAG_SIZE


def _zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


@dataclass(frozen=True)
class EncryptedContainer:
    """Parsed form of an encrypted blob. ``ciphertext`` ends with the GCM tag."""

    wrapped_key: bytes
    nonce: bytes
    ciphertext: bytes

    def __post_init__(self):
        if len(self.wrapped_key) > MAX_WRAPPED_LEN:
            raise FormatError(f"wrapped key of {len(self.wrapped_key)} bytes does not fit the length prefix")
        if len(self.nonce) != NONCE_SIZE:
            raise FormatError(f"nonce must be {NONCE_SIZE} bytes, got {len(self.nonce)}")
        if len(self.ciphertext) < TAG_SIZE:
            raise FormatError(f"ciphertext must hold at least the {TAG_SIZE}-byte tag, got {len(self.ciphertext)}")

    @property
    def tag(self) -> bytes:
        return self.ciphertext[-TAG_SIZE:]

    def to_bytes(self) -> bytes:
        out = bytearray()
        out += len(self.wrapped_key).to_bytes(LENGTH_SIZE, 'little')
        out += self.wrapped_key
        out += self.nonce
        out += self.ciphertext
        return bytes(out)

    @classmethod
    def parse(cls, blob: bytes) -> 'EncryptedContainer':
        if not isinstance(blob, (bytes, bytearray, memoryview)):
            raise TypeError("blob must be bytes")
        blob = bytes(blob)
        if len(blob) < LENGTH_SIZE:
            raise FormatError("container too small to hold the wrapped key length")

        wrapped_len = int.from_bytes(blob[:LENGTH_SIZE], 'little')
        if len(blob) < min_container_size(wrapped_len):
            raise FormatError(
                f"container truncated: {len(blob)} bytes, need at least {min_container_size(wrapped_len)}"
            )

        idx = LENGTH_SIZE
        wrapped_key = blob[idx:idx + wrapped_len]
        idx += wrapped_len
        nonce = blob[idx:idx + NONCE_SIZE]
        idx += NONCE_SIZE
        return cls(wrapped_key=wrapped_key, nonce=nonce, ciphertext=blob[idx:])


def _unwrap_key(session: TokenSession, private_key: KeyHandle, wrapped_key: bytes) -> bytearray:
    aes_key = bytearray(session.unwrap(private_key, wrapped_key))
    if len(aes_key) != KEY_SIZE:
        _zero(aes_key)
        raise UnwrapError(
            f"unwrapped key is {len(aes_key)} bytes, expected {KEY_SIZE} (wrong private key?)"
        )
    return aes_key


# --- Bytes API ---

def encrypt_container(session: TokenSession, public_key: KeyHandle, data: bytes) -> EncryptedContainer:
    """Encrypt ``data`` under a fresh AES-256 key wrapped by ``public_key``.

    The session must already be authenticated if the token requires it;
    nothing here logs in.
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError("data must be bytes")

    aes_key = bytearray(os.urandom(KEY_SIZE))
    try:
        wrapped_key = session.wrap(public_key, bytes(aes_key))
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(aes_key), modes.GCM(nonce)).encryptor()
        ciphertext = encryptor.update(bytes(data)) + encryptor.finalize()
    finally:
        _zero(aes_key)

    return EncryptedContainer(wrapped_key=wrapped_key, nonce=nonce, ciphertext=ciphertext + encryptor.tag)


def encrypt_bytes(session: TokenSession, public_key: KeyHandle, data: bytes) -> bytes:
    """Encrypt raw bytes and return the serialized container."""
    return encrypt_container(session, public_key, data).to_bytes()


def decrypt_bytes(
    session: TokenSession,
    private_key: KeyHandle,
    blob: Union[bytes, EncryptedContainer],
) -> bytes:
    """Decrypt a container produced by :func:`encrypt_bytes`.

    Raises FormatError for truncated input, UnwrapError when the token rejects
    the wrapped key and AuthenticationTagError when GCM verification fails.
    A wrong private key can produce either of the last two.
    """
    container = blob if isinstance(blob, EncryptedContainer) else EncryptedContainer.parse(blob)
    aes_key = _unwrap_key(session, private_key, container.wrapped_key)
    try:
        decryptor = Cipher(algorithms.AES(aes_key), modes.GCM(container.nonce, container.tag)).decryptor()
        return decryptor.update(container.ciphertext[:-TAG_SIZE]) + decryptor.finalize()
    except InvalidTag as exc:
        raise AuthenticationTagError("authentication tag mismatch (wrong key or corrupted data)") from exc
    finally:
        _zero(aes_key)


# --- File API ---

def encrypt_file(
    session: TokenSession,
    public_key: KeyHandle,
    input_path: str,
    output_path: Optional[str] = None,
    *,
    chunk_size: Optional[int] = None,
) -> str:
    if output_path is None:
        output_path = f"{input_path}.enc"
    if os.path.exists(output_path):
        raise FileExistsError(f"Output file '{output_path}' already exists")

    chunk_size = chunk_size or determine_chunk_size(os.path.getsize(input_path))

    aes_key = bytearray(os.urandom(KEY_SIZE))
    tmp_path = f"{output_path}.tmp"
    try:
        wrapped_key = session.wrap(public_key, bytes(aes_key))
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(aes_key), modes.GCM(nonce)).encryptor()

        with open(input_path, 'rb') as f_in, open(tmp_path, 'wb') as f_out:
            f_out.write(len(wrapped_key).to_bytes(LENGTH_SIZE, 'little'))
            f_out.write(wrapped_key)
            f_out.write(nonce)

            while True:
                chunk = f_in.read(chunk_size)
                if not chunk:
                    break
                f_out.write(encryptor.update(chunk))

            f_out.write(encryptor.finalize())
            f_out.write(encryptor.tag)

        os.replace(tmp_path, output_path)
        log.info("encrypted %s -> %s", input_path, output_path)
        return output_path
    finally:
        _zero(aes_key)
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def _read_exact(f_in: BinaryIO, size: int) -> bytes:
    data = f_in.read(size)
    if len(data) != size:
        raise FormatError("encrypted file is corrupted or incomplete")
    return data


def decrypt_file(
    session: TokenSession,
    private_key: KeyHandle,
    input_path: str,
    output_path: Optional[str] = None,
    *,
    chunk_size: Optional[int] = None,
) -> str:
    """Decrypt ``input_path``; the output only appears once the tag verifies."""
    file_size = os.path.getsize(input_path)
    chunk_size = chunk_size or determine_chunk_size(file_size)

    if output_path is None:
        output_path = input_path[:-4] if input_path.endswith('.enc') else f"{input_path}.dec"
    if os.path.exists(output_path):
        raise FileExistsError(f"Output file '{output_path}' already exists")

    tmp_path = f"{output_path}.tmp"
    try:
        with open(input_path, 'rb') as f_in:
            wrapped_len = int.from_bytes(_read_exact(f_in, LENGTH_SIZE), 'little')
            if file_size < min_container_size(wrapped_len):
                raise FormatError(
                    f"encrypted file truncated: {file_size} bytes, need at least {min_container_size(wrapped_len)}"
                )
            wrapped_key = _read_exact(f_in, wrapped_len)
            nonce = _read_exact(f_in, NONCE_SIZE)

            aes_key = _unwrap_key(session, private_key, wrapped_key)
            try:
                decryptor = Cipher(algorithms.AES(aes_key), modes.GCM(nonce)).decryptor()
                data_size = file_size - min_container_size(wrapped_len)
                with open(tmp_path, 'wb') as f_out:
                    bytes_read = 0
                    while bytes_read < data_size:
                        chunk = f_in.read(min(chunk_size, data_size - bytes_read))
                        if not chunk:
                            break
                        f_out.write(decryptor.update(chunk))
                        bytes_read += len(chunk)

                    tag = _read_exact(f_in, TAG_SIZE)
                    try:
                        f_out.write(decryptor.finalize_with_tag(tag))
                    except InvalidTag as exc:
                        raise AuthenticationTagError(
                            "authentication tag mismatch (wrong key or corrupted data)"
                        ) from exc
            finally:
                _zero(aes_key)

        os.replace(tmp_path, output_path)
        log.info("decrypted %s -> %s", input_path, output_path)
        return output_path
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
