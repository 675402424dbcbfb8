"""TLS termination for listeners: configuration assembled from listener
options, certificate selection and the TLS-terminating listener itself.
"""

from .config import (
    ACME_TLS_ALPN_PROTOCOL,
    CertificateRecord,
    CertificateSelector,
    ClientAuthPolicy,
    TLSConfiguration,
    TrustPool,
)
from .hello import ClientHello, parse_client_hello, read_client_hello
from .listener import TLSListener, TLSStream

__all__ = (
    "ACME_TLS_ALPN_PROTOCOL",
    "CertificateRecord",
    "CertificateSelector",
    "ClientAuthPolicy",
    "ClientHello",
    "TLSConfiguration",
    "TLSListener",
    "TLSStream",
    "TrustPool",
    "parse_client_hello",
    "read_client_hello",
)
