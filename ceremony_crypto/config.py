"""PKCS#11 module path resolution and streaming defaults."""

import logging
import os
import sys
from typing import Dict, List, Optional

DEFAULT_PKCS11_LIB = '/usr/lib/softhsm/libsofthsm2.so'
PKCS11_LIB_ENV = 'PKCS11_LIB_PATH'

DEFAULT_CHUNK_SIZE = 64 * 1024

log = logging.getLogger(__name__)


def _windows_candidates() -> List[str]:
    system32 = os.path.join(os.environ.get('SystemRoot', 'C:\\Windows'), 'System32')
    program_files = os.environ.get('ProgramFiles', 'C:\\Program Files')
    return [
        os.path.join(system32, 'opensc-pkcs11.dll'),
        os.path.join(program_files, 'Yubico', 'Yubico PIV Tool', 'bin', 'lib', 'libykcs11.dll'),
    ]


CANDIDATE_PATHS: Dict[str, List[str]] = {
    'linux': [
        # SoftHSM
        '/usr/lib/x86_64-linux-gnu/softhsm/libsofthsm2.so',
        '/usr/lib/softhsm/libsofthsm2.so',
        # OpenSC
        '/usr/lib/x86_64-linux-gnu/opensc-pkcs11.so',
        # Yubico
        '/usr/lib/x86_64-linux-gnu/libykcs11.so',
    ],
    'darwin': [
        '/usr/local/lib/opensc-pkcs11.so',
        '/usr/local/lib/libykcs11.dylib',
        '/opt/homebrew/lib/libykcs11.dylib',
    ],
}


def _platform_candidates(platform: Optional[str] = None) -> List[str]:
    platform = platform or sys.platform
    if platform.startswith('win'):
        return _windows_candidates()
    if platform.startswith('linux'):
        return CANDIDATE_PATHS['linux']
    return CANDIDATE_PATHS.get(platform, [])


def find_pkcs11_module(platform: Optional[str] = None) -> Optional[str]:
    """Return the first well-known PKCS#11 module present on this machine.

    Falls back to ``$PKCS11_LIB_PATH`` when nothing is found, and to None
    when that is unset too.
    """
    for path in _platform_candidates(platform):
        if os.path.isfile(path):
            log.debug("auto-detected PKCS#11 module at %s", path)
            return path
    return os.environ.get(PKCS11_LIB_ENV) or None


def resolve_module_path(explicit: Optional[str] = None, platform: Optional[str] = None) -> str:
    """Pick the module path: explicit > environment > auto-detect > default."""
    path = explicit or os.environ.get(PKCS11_LIB_ENV) or find_pkcs11_module(platform) or DEFAULT_PKCS11_LIB
    return os.path.expanduser(path)


def determine_chunk_size(file_size: int) -> int:
    if file_size <= 10 * 1024 * 1024:
        return DEFAULT_CHUNK_SIZE
    if file_size <= 100 * 1024 * 1024:
        return 256 * 1024
    return 1024 * 1024
