"""
Exceptions raised by ceremony_crypto.

Everything derives from CeremonyError so callers can catch the whole family,
while each kind stays distinguishable. Native causes (pkcs11.exceptions.*,
cryptography.exceptions.InvalidTag) are chained via ``raise ... from``.
"""


class CeremonyError(Exception):
    # general container for errors
    pass


class ModuleLoadError(CeremonyError):
    # path does not resolve to a loadable PKCS#11 module
    pass


class ModuleInitError(CeremonyError):
    # module loaded but C_Initialize was rejected
    pass


class ModuleFinalizedError(CeremonyError):
    # module used after finalize()
    pass


class SlotListError(CeremonyError):
    # the slot list itself could not be read
    pass


class SessionOpenError(CeremonyError):
    # no token in slot, unknown slot, slot busy
    pass


class SessionStateError(CeremonyError):
    # operation not valid in the session's current state
    pass


class SessionClosedError(SessionStateError):
    # session was closed (directly or by module finalize)
    pass


class AuthenticationError(CeremonyError):
    # login rejected: wrong PIN, lockout, token removed mid-login
    pass


class PinLockedError(AuthenticationError):
    # token reports the user PIN as locked
    pass


class KeyNotFoundError(CeremonyError):
    """No key object of the requested class carries the label."""

    def __init__(self, label: str, half: str, message: str = None):
        self.label = label
        self.half = half
        super().__init__(message or f"{half} key with label '{label}' not found")


class AmbiguousKeyError(KeyNotFoundError):
    """More than one key object of the requested class carries the label."""

    def __init__(self, label: str, half: str):
        super().__init__(label, half, f"more than one {half} key with label '{label}'")


class ObjectSearchError(CeremonyError):
    # the token failed the object search itself (C_FindObjects*)
    pass


class WrapError(CeremonyError):
    # token refused to encrypt the symmetric key
    pass


class FormatError(CeremonyError):
    # container is truncated or malformed
    pass


class DecryptionError(CeremonyError):
    """Base for the two failures a wrong key can produce.

    A wrong private key shows up either as an unwrap rejection or, when the
    token hands back plausible garbage, as a GCM tag mismatch. Authenticated
    encryption cannot tell a wrong key from corrupted ciphertext beyond which
    step failed.
    """


class UnwrapError(DecryptionError):
    # token refused to decrypt the wrapped key, or returned a bad-length key
    pass


class AuthenticationTagError(DecryptionError):
    # AES-GCM tag did not verify
    pass
