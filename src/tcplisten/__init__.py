"""Ready-to-accept TCP listeners with production socket tuning and optional
TLS termination, using static certificates or certificates obtained
automatically from an ACME certificate authority.

Listeners are created with `open_listener()` from a bind address and a list
of options::

    listener = await open_listener(":8443", tls("cert.pem", "key.pem"), http2())
    await serve_listener(handler, listener)
"""

from .errors import (
    CertificateError,
    CertificateIssuanceError,
    CertificateUnavailableError,
    ConfigurationError,
    HostNotAllowedError,
    ListenerClosedError,
    ListenerError,
    RegistrationError,
    UnknownClientAuthPolicyError,
)
from .listener import TCPListener, open_listener
from .options import (
    Configuration,
    Option,
    alpn,
    apply_options,
    automatic_certificates,
    fast_open,
    http2,
    naggle,
    tls,
    tls_client_auth,
)
from .server import serve_listener
from .settings import ListenerSettings
from .tls import ClientAuthPolicy, TLSConfiguration, TLSListener
from .version import __version__

__all__ = (
    "CertificateError",
    "CertificateIssuanceError",
    "CertificateUnavailableError",
    "ClientAuthPolicy",
    "Configuration",
    "ConfigurationError",
    "HostNotAllowedError",
    "ListenerClosedError",
    "ListenerError",
    "ListenerSettings",
    "Option",
    "RegistrationError",
    "TCPListener",
    "TLSConfiguration",
    "TLSListener",
    "UnknownClientAuthPolicyError",
    "alpn",
    "apply_options",
    "automatic_certificates",
    "fast_open",
    "http2",
    "naggle",
    "open_listener",
    "serve_listener",
    "tls",
    "tls_client_auth",
    "__version__",
)
