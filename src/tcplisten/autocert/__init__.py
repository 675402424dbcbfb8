"""Automatic issuance and renewal of TLS certificates from an ACME
certificate authority for an allow-list of hostnames.
"""

from .acme import (
    ACMEIssuer,
    LETS_ENCRYPT_DIRECTORY_URL,
    LETS_ENCRYPT_STAGING_DIRECTORY_URL,
)
from .cache import Cache, DirCache, MemoryCache
from .issuer import CertificateIssuer, ChallengeStore
from .manager import (
    ACCOUNT_KEY_CACHE_KEY,
    DEFAULT_RENEW_BEFORE,
    CertificateManager,
    HostPolicy,
)

__all__ = (
    "ACCOUNT_KEY_CACHE_KEY",
    "ACMEIssuer",
    "Cache",
    "CertificateIssuer",
    "CertificateManager",
    "ChallengeStore",
    "DEFAULT_RENEW_BEFORE",
    "DirCache",
    "HostPolicy",
    "LETS_ENCRYPT_DIRECTORY_URL",
    "LETS_ENCRYPT_STAGING_DIRECTORY_URL",
    "MemoryCache",
)
