"""PKCS#11 module, session and key lookup lifecycle on top of python-pkcs11.

Ownership runs strictly top-down:

- ``CryptographicModule`` wraps one loaded and initialized ``pkcs11.lib``;
- ``TokenSession`` is one read/write serial session on a slot of that module;
- ``KeyHandle`` is a key object resolved inside one session.

Finalizing a module closes every session it opened and runs C_Finalize, and
a closed session rejects every further call. python-pkcs11 logs in while
opening a session, so ``TokenSession.login`` opens an authenticated native
session on the same slot and swaps it in; ``logout`` does the reverse.
"""

import enum
import logging
import os
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Callable, Iterator, List, NamedTuple, Optional

import pkcs11
from pkcs11 import Attribute, Mechanism, ObjectClass
from pkcs11.exceptions import PKCS11Error, PinLocked, UserAlreadyLoggedIn

from .errors import (
    AmbiguousKeyError,
    AuthenticationError,
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

# Cap on private keys returned by list_private_key_labels()
MAX_KEY_LABELS = 100

# token-side wrap/unwrap mechanism
WRAP_MECHANISM = Mechanism.RSA_PKCS

_HALVES = {
    ObjectClass.PRIVATE_KEY: 'private',
    ObjectClass.PUBLIC_KEY: 'public',
}

log = logging.getLogger(__name__)


def _describe(exc: Exception) -> str:
    details = str(exc).strip()
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


def _is_load_failure(exc: PKCS11Error) -> bool:
    # dlopen/dlsym failures come back as the bare base class, not a CKR_* subclass
    return type(exc) is PKCS11Error and 'while loading' in str(exc)


def _text(value: Any) -> str:
    # token info fields are blank-padded and may come back as bytes
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('utf-8', errors='replace')
    return str(value or '').strip()


@dataclass(frozen=True)
class TokenDescriptor:
    """Snapshot of a slot with a token inserted."""

    slot_id: int
    label: str
    serial: str
    manufacturer_id: str = ''
    model: str = ''

    def __str__(self) -> str:
        return f"Slot {self.slot_id}: {self.label} (S/N: {self.serial})"


class SessionState(enum.Enum):
    OPENED = 'opened'
    AUTHENTICATED = 'authenticated'
    CLOSED = 'closed'


@dataclass(frozen=True, eq=False)
class KeyHandle:
    """A key object on the token, usable only through the session that found it.

    Handles carry no key material. They cannot be pickled or copied.
    """

    object_class: ObjectClass
    label: str
    session: 'TokenSession' = field(repr=False)
    native: Any = field(repr=False)

    @property
    def half(self) -> str:
        return _HALVES[self.object_class]

    def __reduce__(self):
        raise TypeError("key handles are bound to their session and cannot be serialized or copied")


class KeyPair(NamedTuple):
    private: KeyHandle
    public: KeyHandle


class TokenSession:
    """One read/write serial session on a single slot.

    Use as a context manager to guarantee ``close()`` on every exit path.
    """

    def __init__(self, module: 'CryptographicModule', slot_id: int, token: Any, native: Any):
        self.module = module
        self.slot_id = slot_id
        self._token = token
        self._native = native
        self.state = SessionState.OPENED

    def __enter__(self) -> 'TokenSession':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<TokenSession slot={self.slot_id} state={self.state.value}>"

    @property
    def authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def _require_open(self):
        if self.state is SessionState.CLOSED:
            raise SessionClosedError(f"session on slot {self.slot_id} is closed")
        return self._native

    def _close_native(self, native: Any) -> None:
        try:
            native.close()
        except PKCS11Error as exc:
            log.warning("closing native session on slot %s failed: %s", self.slot_id, _describe(exc))

    def _swap(self, native: Any) -> None:
        previous, self._native = self._native, native
        self._close_native(previous)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, pin: str) -> None:
        """Authenticate as the normal user.

        Not retried; each failure counts against the token's PIN lockout
        counter.
        """
        self._require_open()
        if self.state is SessionState.AUTHENTICATED:
            raise SessionStateError(f"session on slot {self.slot_id} is already authenticated")

        # a failed C_Login leaves python-pkcs11's freshly opened handle behind;
        # C_Finalize in CryptographicModule.finalize() releases it
        try:
            native = self._token.open(user_pin=pin, rw=True)
        except UserAlreadyLoggedIn as exc:
            # login state is token-wide; this PIN was never checked
            raise AuthenticationError(
                f"token on slot {self.slot_id} is already logged in through another session"
            ) from exc
        except PinLocked as exc:
            raise PinLockedError(f"user PIN is locked on slot {self.slot_id}") from exc
        except PKCS11Error as exc:
            raise AuthenticationError(f"login failed on slot {self.slot_id}: {_describe(exc)}") from exc

        self._swap(native)
        self.state = SessionState.AUTHENTICATED
        log.info("logged in to slot %s", self.slot_id)

    def logout(self) -> None:
        """De-authenticate. A no-op when the session never logged in."""
        self._require_open()
        if self.state is not SessionState.AUTHENTICATED:
            return

        try:
            native = self._open_unauthenticated()
        except SessionOpenError:
            # nothing left to fall back to; closing still logs out
            self.close()
            raise

        # closing the authenticated session runs C_Logout before C_CloseSession
        self._swap(native)
        self.state = SessionState.OPENED
        log.info("logged out of slot %s", self.slot_id)

    def _open_unauthenticated(self):
        try:
            return self._token.open(rw=True)
        except PKCS11Error as exc:
            raise SessionOpenError(f"cannot reopen session on slot {self.slot_id}: {_describe(exc)}") from exc

    def close(self) -> None:
        """Release the session. Safe to call repeatedly."""
        if self.state is SessionState.CLOSED:
            return
        native, self._native = self._native, None
        self.state = SessionState.CLOSED
        self.module._forget(self)
        self._close_native(native)
        log.debug("closed session on slot %s", self.slot_id)

    # ------------------------------------------------------------------
    # Object lookup
    # ------------------------------------------------------------------

    @contextmanager
    def _search(self, template: dict) -> Iterator[Iterator[Any]]:
        native = self._require_open()
        try:
            # closing the generator exits its SearchIter, which runs C_FindObjectsFinal
            with closing(native.get_objects(template)) as search:
                yield search
        except PKCS11Error as exc:
            raise ObjectSearchError(f"object search failed on slot {self.slot_id}: {_describe(exc)}") from exc

    def _find_one(self, object_class: ObjectClass, label: str) -> KeyHandle:
        half = _HALVES[object_class]
        with self._search({Attribute.CLASS: object_class, Attribute.LABEL: label}) as search:
            found = list(islice(search, 2))
        if not found:
            raise KeyNotFoundError(label, half)
        if len(found) > 1:
            raise AmbiguousKeyError(label, half)
        return KeyHandle(object_class, label, self, found[0])

    def find_key_pair(self, label: str) -> KeyPair:
        """Resolve exactly one private and one public key sharing ``label``."""
        private = self._find_one(ObjectClass.PRIVATE_KEY, label)
        public = self._find_one(ObjectClass.PUBLIC_KEY, label)
        log.debug("resolved key pair '%s' on slot %s", label, self.slot_id)
        return KeyPair(private, public)

    def list_private_key_labels(self, limit: int = MAX_KEY_LABELS) -> List[str]:
        with self._search({Attribute.CLASS: ObjectClass.PRIVATE_KEY}) as search:
            found = list(islice(search, limit))

        labels = []
        for obj in found:
            try:
                labels.append(_text(obj[Attribute.LABEL]))
            except PKCS11Error as exc:
                log.warning("skipping private key with unreadable label on slot %s: %s",
                            self.slot_id, _describe(exc))
        return labels

    # ------------------------------------------------------------------
    # Token-side asymmetric primitive
    # ------------------------------------------------------------------

    def _check_handle(self, handle: KeyHandle, object_class: ObjectClass) -> None:
        self._require_open()
        if handle.session is not self:
            raise SessionStateError(f"key handle '{handle.label}' belongs to a different session")
        if handle.object_class != object_class:
            raise ValueError(f"expected a {_HALVES[object_class]} key, got a {handle.half} key")

    def wrap(self, public_key: KeyHandle, data: bytes) -> bytes:
        """Encrypt ``data`` on the token with RSA PKCS#1 v1.5."""
        self._check_handle(public_key, ObjectClass.PUBLIC_KEY)
        try:
            return public_key.native.encrypt(data, mechanism=WRAP_MECHANISM)
        except PKCS11Error as exc:
            raise WrapError(f"token refused to wrap with '{public_key.label}': {_describe(exc)}") from exc

    def unwrap(self, private_key: KeyHandle, data: bytes) -> bytes:
        """Decrypt ``data`` on the token with RSA PKCS#1 v1.5. The private key stays on the token."""
        self._check_handle(private_key, ObjectClass.PRIVATE_KEY)
        try:
            return private_key.native.decrypt(data, mechanism=WRAP_MECHANISM)
        except PKCS11Error as exc:
            raise UnwrapError(
                f"token refused to unwrap with '{private_key.label}' (wrong key or token?): {_describe(exc)}"
            ) from exc


class CryptographicModule:
    """A loaded and initialized PKCS#11 module."""

    def __init__(self, path: str, native: Any):
        self.path = path
        self._native = native
        self._sessions: List[TokenSession] = []

    def __enter__(self) -> 'CryptographicModule':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.finalize()

    def __repr__(self) -> str:
        state = 'finalized' if self.finalized else 'live'
        return f"<CryptographicModule {self.path} {state}>"

    @property
    def finalized(self) -> bool:
        return self._native is None

    def _require_live(self):
        if self._native is None:
            raise ModuleFinalizedError(f"PKCS#11 module {self.path} has been finalized")
        return self._native

    def _forget(self, session: TokenSession) -> None:
        if session in self._sessions:
            self._sessions.remove(session)

    def list_tokens(self) -> List[TokenDescriptor]:
        """Best-effort list of slots with a token present."""
        native = self._require_live()
        try:
            slots = native.get_slots(token_present=True)
        except PKCS11Error as exc:
            raise SlotListError(f"failed to list slots: {_describe(exc)}") from exc

        tokens = []
        for slot in slots:
            try:
                token = slot.get_token()
                descriptor = TokenDescriptor(
                    slot_id=slot.slot_id,
                    label=_text(token.label),
                    serial=_text(token.serial),
                    manufacturer_id=_text(token.manufacturer_id),
                    model=_text(token.model),
                )
            except PKCS11Error as exc:
                log.debug("skipping slot %s: %s", slot.slot_id, _describe(exc))
                continue
            tokens.append(descriptor)
        return tokens

    def open_session(self, slot_id: int) -> TokenSession:
        native = self._require_live()
        try:
            slots = native.get_slots()
        except PKCS11Error as exc:
            raise SessionOpenError(f"failed to list slots: {_describe(exc)}") from exc

        slot = next((s for s in slots if s.slot_id == slot_id), None)
        if slot is None:
            raise SessionOpenError(f"no slot with id {slot_id}")

        try:
            token = slot.get_token()
            handle = token.open(rw=True)
        except PKCS11Error as exc:
            raise SessionOpenError(f"cannot open session on slot {slot_id}: {_describe(exc)}") from exc

        session = TokenSession(self, slot_id, token, handle)
        self._sessions.append(session)
        log.debug("opened session on slot %s", slot_id)
        return session

    @contextmanager
    def session(self, slot_id: int, pin: Optional[str] = None) -> Iterator[TokenSession]:
        """Open a session, optionally log in, and always close it afterwards.

        Closing an authenticated session logs it out first.
        """
        session = self.open_session(slot_id)
        try:
            if pin is not None:
                session.login(pin)
            yield session
        finally:
            session.close()

    def finalize(self) -> None:
        """Close every open session and release the module. Idempotent."""
        if self._native is None:
            return
        for session in list(self._sessions):
            session.close()
        native, self._native = self._native, None
        try:
            # C_Finalize; pkcs11.lib(path) re-initializes the cached library on next use
            native.finalize()
        except PKCS11Error as exc:
            log.warning("C_Finalize on PKCS#11 module %s failed: %s", self.path, _describe(exc))
        log.info("finalized PKCS#11 module %s", self.path)


def initialize(module_path: str, loader: Optional[Callable[[str], Any]] = None) -> CryptographicModule:
    """Load the PKCS#11 module at ``module_path`` and run C_Initialize.

    ``loader`` defaults to :func:`pkcs11.lib`, which caches one library per
    path. Use :class:`TokenManager` to keep a single live module per path.
    """
    loader = loader or pkcs11.lib
    path = os.path.expanduser(module_path or '')
    if not path or not os.path.isfile(path):
        raise ModuleLoadError(f"PKCS#11 module not found at: {module_path!r}")

    try:
        native = loader(path)
    except PKCS11Error as exc:
        if _is_load_failure(exc):
            raise ModuleLoadError(f"failed to load PKCS#11 module {path}: {_describe(exc)}") from exc
        raise ModuleInitError(f"failed to initialize PKCS#11 module {path}: {_describe(exc)}") from exc
    except OSError as exc:
        raise ModuleLoadError(f"failed to load PKCS#11 module {path}: {_describe(exc)}") from exc

    log.info("initialized PKCS#11 module %s", path)
    return CryptographicModule(path, native)


class TokenManager:
    """Owns at most one live CryptographicModule at a time."""

    def __init__(self, loader: Optional[Callable[[str], Any]] = None):
        self._loader = loader
        self.module: Optional[CryptographicModule] = None

    def __enter__(self) -> 'TokenManager':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.finalize()

    def initialize(self, module_path: str) -> CryptographicModule:
        """Initialize ``module_path``, finalizing a different module first."""
        path = os.path.expanduser(module_path or '')
        current = self.module
        if current is not None and not current.finalized:
            if current.path == path:
                return current
            log.info("switching PKCS#11 module from %s to %s", current.path, path)
            current.finalize()
        self.module = initialize(path, loader=self._loader)
        return self.module

    def finalize(self) -> None:
        if self.module is not None:
            self.module.finalize()

    def require_module(self) -> CryptographicModule:
        if self.module is None:
            raise ModuleFinalizedError("no PKCS#11 module has been initialized")
        self.module._require_live()
        return self.module
