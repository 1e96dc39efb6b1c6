"""
Shared fixtures: an in-memory stand-in for a python-pkcs11 library.

The fake mirrors the parts of the python-pkcs11 surface ceremony_crypto
touches (lib.get_slots, Slot.get_token, Token.open, Session.get_objects,
Session.close, object attribute reads, encrypt/decrypt) and performs real
RSA PKCS#1 v1.5 operations with `cryptography`, so the hybrid containers
produced in tests are genuine.
"""

import pytest
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from pkcs11 import Attribute, Mechanism, ObjectClass
from pkcs11 import exceptions as p11

from ceremony_crypto.token_session import initialize

USER_PIN = "123456"
KEY_LABEL = "ceremony-key-1"
OTHER_LABEL = "ceremony-key-2"


# ==============================================================================
# Fake python-pkcs11 objects
# ==============================================================================

class FakeSearch:
    """Stands in for python-pkcs11's SearchIter operation context."""

    def __init__(self, objects, fail_with=None):
        self._objects = iter(objects)
        self._fail_with = fail_with
        self.finalized = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        # C_FindObjectsFinal
        self.finalized = True

    def __iter__(self):
        return self

    def __next__(self):
        if self._fail_with is not None:
            raise self._fail_with
        return next(self._objects)


class FakeKeyObject:
    def __init__(self, object_class, label, rsa_key, private, label_error=None):
        self.attrs = {
            Attribute.CLASS: object_class,
            Attribute.LABEL: label,
            Attribute.PRIVATE: private,
        }
        self.rsa_key = rsa_key
        self.label_error = label_error

    def __getitem__(self, key):
        if key == Attribute.LABEL and self.label_error is not None:
            raise self.label_error
        try:
            return self.attrs[key]
        except KeyError:
            raise p11.AttributeTypeInvalid()

    def encrypt(self, data, mechanism=None):
        assert mechanism == Mechanism.RSA_PKCS
        if len(data) > self.rsa_key.key_size // 8 - 11:
            raise p11.DataLenRange()
        return self.rsa_key.encrypt(bytes(data), padding.PKCS1v15())

    def decrypt(self, data, mechanism=None):
        assert mechanism == Mechanism.RSA_PKCS
        try:
            return self.rsa_key.decrypt(bytes(data), padding.PKCS1v15())
        except ValueError as exc:
            raise p11.EncryptedDataInvalid() from exc


class FakeNativeSession:
    def __init__(self, token, logged_in):
        self.token = token
        self.logged_in = logged_in
        self.closed = False

    def get_objects(self, template):
        # a generator around the search context, as in python-pkcs11
        if self.closed:
            raise p11.SessionHandleInvalid()
        with self._start_search(template) as search:
            yield from search

    def _start_search(self, template):
        if self.token.search_error is not None:
            search = FakeSearch([], fail_with=self.token.search_error)
        else:
            visible = [
                obj for obj in self.token.objects
                if (not obj.attrs[Attribute.PRIVATE] or self.token.logged_in)
                and all(obj.attrs.get(k) == v for k, v in template.items())
            ]
            search = FakeSearch(visible)
        self.token.searches.append(search)
        return search

    def close(self):
        self.closed = True
        if self.logged_in:
            # C_Logout is token-wide
            self.token.logged_in = False


class FakeToken:
    def __init__(self, label, serial, pin=USER_PIN, locked=False):
        self.label = label
        self.serial = serial
        self.manufacturer_id = "Fake HSM Inc."
        self.model = "FakeHSM v1"
        self.pin = pin
        self.locked = locked
        self.logged_in = False
        self.objects = []
        self.sessions = []
        self.searches = []
        self.search_error = None
        self.login_attempts = 0

    def add_key_pair(self, label, rsa_key, private=True, public=True):
        if private:
            self.objects.append(FakeKeyObject(ObjectClass.PRIVATE_KEY, label, rsa_key, private=True))
        if public:
            self.objects.append(FakeKeyObject(ObjectClass.PUBLIC_KEY, label, rsa_key.public_key(), private=False))

    def open(self, rw=False, user_pin=None, so_pin=None):
        assert rw, "ceremony_crypto always opens read/write sessions"
        logged_in = False
        if user_pin is not None:
            self.login_attempts += 1
            if self.logged_in:
                raise p11.UserAlreadyLoggedIn()
            if self.locked:
                raise p11.PinLocked()
            if user_pin != self.pin:
                raise p11.PinIncorrect()
            self.logged_in = logged_in = True
        session = FakeNativeSession(self, logged_in)
        self.sessions.append(session)
        return session


class FakeSlot:
    def __init__(self, slot_id, token=None, info_error=None):
        self.slot_id = slot_id
        self.token = token
        self.info_error = info_error

    def get_token(self):
        if self.info_error is not None:
            raise self.info_error
        if self.token is None:
            raise p11.TokenNotPresent()
        return self.token


class FakeLib:
    def __init__(self, slots):
        self.slots = slots
        self.slot_error = None
        self.finalize_error = None
        self.initialized = True
        self.calls = []

    def finalize(self):
        self.calls.append("C_Finalize")
        if self.finalize_error is not None:
            raise self.finalize_error
        self.initialized = False
        # C_Finalize implicitly closes every session on every token
        for slot in self.slots:
            if slot.token is not None:
                slot.token.logged_in = False

    def get_slots(self, token_present=False):
        if self.slot_error is not None:
            raise self.slot_error
        return [s for s in self.slots if not token_present or s.token is not None]


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture(scope="session")
def rsa_keys():
    """Two 2048-bit RSA keys; generated once per test run."""
    return [
        rsa.generate_private_key(public_exponent=65537, key_size=2048)
        for _ in range(2)
    ]


@pytest.fixture
def token(rsa_keys):
    tok = FakeToken(label="ceremony-token", serial=b"0001A2B3C4D5    ")
    tok.add_key_pair(KEY_LABEL, rsa_keys[0])
    tok.add_key_pair(OTHER_LABEL, rsa_keys[1])
    return tok


@pytest.fixture
def fake_lib(token, rsa_keys):
    other = FakeToken(label="backup-token", serial="BACKUP-42")
    other.add_key_pair("backup-key", rsa_keys[1])
    return FakeLib([
        FakeSlot(0, token),
        FakeSlot(1, other),
        FakeSlot(2),
    ])


@pytest.fixture
def module_path(tmp_path):
    path = tmp_path / "libfakepkcs11.so"
    path.write_bytes(b"\x7fELF")
    return str(path)


@pytest.fixture
def module(fake_lib, module_path):
    mod = initialize(module_path, loader=lambda path: fake_lib)
    yield mod
    mod.finalize()


@pytest.fixture
def session(module):
    """Authenticated session on slot 0."""
    sess = module.open_session(0)
    sess.login(USER_PIN)
    yield sess
    sess.close()


@pytest.fixture
def key_pair(session):
    return session.find_key_pair(KEY_LABEL)
