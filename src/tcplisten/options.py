"""Options that configure the listeners created by `open_listener()`.

Each option is a named mutation that is applied to a fresh Configuration_
object. Options are applied in the order they were given; the first option
that fails aborts the construction of the listener.
"""

from __future__ import annotations

import ssl

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional, Tuple, Union

from .autocert.cache import DirCache
from .autocert.issuer import CertificateIssuer
from .autocert.manager import DEFAULT_RENEW_BEFORE, CertificateManager
from .errors import ConfigurationError
from .tls.config import (
    CertificateRecord,
    ClientAuthPolicy,
    TLSConfiguration,
    TrustPool,
)

__all__ = (
    "Configuration",
    "DEFAULT_CACHE_DIR",
    "Option",
    "alpn",
    "apply_options",
    "automatic_certificates",
    "fast_open",
    "http2",
    "naggle",
    "tls",
    "tls_client_auth",
)


DEFAULT_CACHE_DIR = "."
"""Directory used to cache automatically issued certificates when no
directory is given.
"""


@dataclass
class Configuration:
    """Settings accumulated by listener options while constructing a
    listener.

    A fresh configuration is created for each listener; it is discarded
    after the listener has been constructed.
    """

    naggle: bool = False
    """Whether Nagle's algorithm stays enabled on accepted connections."""

    fast_open: bool = False
    """Whether TCP fast open is enabled on the listening socket."""

    tls: Optional[TLSConfiguration] = None
    """TLS settings; the listener terminates TLS if and only if this is not
    ``None``.
    """

    @property
    def tls_enabled(self) -> bool:
        return self.tls is not None

    def ensure_tls(self) -> TLSConfiguration:
        """Returns the TLS settings of the configuration, creating them if
        needed.
        """
        if self.tls is None:
            self.tls = TLSConfiguration()
        return self.tls


class Option:
    """A named, parameterized mutation of a listener Configuration_.

    Options are created by the factory functions of this module, e.g.,
    `tls()` or `fast_open()`.
    """

    name: str
    """The name of the option."""

    arguments: Tuple[Any, ...]
    """The arguments that the option was created with."""

    def __init__(
        self,
        name: str,
        func: Callable[[Configuration], None],
        arguments: Tuple[Any, ...] = (),
    ):
        """Constructor.

        Parameters:
            name: the name of the option
            func: function that applies the option to a configuration
            arguments: the arguments that the option was created with
        """
        self.name = name
        self.arguments = tuple(arguments)
        self._func = func

    def __repr__(self) -> str:
        args = ", ".join(repr(arg) for arg in self.arguments)
        return f"{self.name}({args})"

    def apply(self, config: Configuration) -> None:
        """Applies the option to the given configuration.

        Raises:
            ConfigurationError: if the inputs of the option are invalid
        """
        self._func(config)


def apply_options(config: Configuration, options: Iterable[Option]) -> Configuration:
    """Applies the given options to a configuration in the order they were
    given, stopping at the first option that fails.

    Returns:
        the configuration itself

    Raises:
        ConfigurationError: the error of the first option that failed
    """
    for option in options:
        option.apply(config)
    return config


def fast_open() -> Option:
    """Enables TCP fast open on the listening socket. Ignored on platforms
    that do not support it.
    """

    def apply(config: Configuration) -> None:
        config.fast_open = True

    return Option("fast_open", apply)


def naggle() -> Option:
    """Keeps Nagle's algorithm enabled on accepted connections, effectively
    turning off ``TCP_NODELAY``. This might be useful together with TCP fast
    open, to allow sending data along with the acknowledgment.
    """

    def apply(config: Configuration) -> None:
        config.naggle = True

    return Option("naggle", apply)


def tls(cert_file: str, key_file: str) -> Option:
    """Configures TLS with a certificate chain and a private key loaded from
    the given files. May be used multiple times to add more certificates;
    the certificate is selected by the server name requested by the client,
    and the first one is used when none of them matches.
    """

    def apply(config: Configuration) -> None:
        try:
            record = CertificateRecord.load(cert_file, key_file)
        except (OSError, ssl.SSLError, ValueError) as ex:
            raise ConfigurationError(f"listener: cert/key failed: {ex}") from ex
        config.ensure_tls().certificates.append(record)

    return Option("tls", apply, (cert_file, key_file))


def tls_client_auth(
    ca_cert_file: str, policy: Union[ClientAuthPolicy, str]
) -> Option:
    """Configures TLS client certificate authentication.

    Parameters:
        ca_cert_file: file holding the PEM-encoded certificates of the trusted
            certificate authorities. Entries that cannot be parsed are
            ignored.
        policy: the client authentication policy, or its name
    """

    def apply(config: Configuration) -> None:
        client_auth = ClientAuthPolicy.from_string(policy)
        try:
            trust_pool = TrustPool.load(ca_cert_file, client_auth)
        except OSError as ex:
            raise ConfigurationError(f"listener: ca cert: {ex}") from ex
        config.ensure_tls().trust_pool = trust_pool

    return Option("tls_client_auth", apply, (ca_cert_file, policy))


def alpn(protocol: str) -> Option:
    """Offers the given application protocol to TLS clients with ALPN.

    Protocols are offered in the order they were added; adding the same
    protocol again has no effect.
    """

    def apply(config: Configuration) -> None:
        protocols = config.ensure_tls().alpn_protocols
        if protocol not in protocols:
            protocols.append(protocol)

    return Option("alpn", apply, (protocol,))


def http2() -> Option:
    """Offers HTTP/2 (``h2``) to TLS clients. Useful only together with a
    certificate, static or automatic.
    """
    option = alpn("h2")
    option.name = "http2"
    option.arguments = ()
    return option


def automatic_certificates(
    cache_dir: str = "",
    email: str = "",
    *hosts: str,
    issuer: Optional[CertificateIssuer] = None,
    renew_before: Optional[timedelta] = None,
) -> Option:
    """Configures automatic TLS certificates obtained from an ACME certificate
    authority, Let's Encrypt by default.

    By using this option with the default issuer you accept the terms of
    service of Let's Encrypt.

    Parameters:
        cache_dir: directory where the obtained certificates and the account
            key are cached so they can be reused when the process restarts.
            Defaults to the current directory.
        email: optional contact address to register the account with. The
            account is registered eagerly when the listener is created if it
            is given, and certificates are obtained anonymously otherwise.
        hosts: the hostnames that certificates may be obtained for
        issuer: the object that talks to the certificate authority
        renew_before: certificates are refreshed when they expire within
            this period
    """

    def apply(config: Configuration) -> None:
        allowed = [host for host in hosts if host and host.strip()]
        if not allowed:
            raise ConfigurationError("listener: no hosts configured")

        try:
            manager = CertificateManager(
                DirCache(cache_dir or DEFAULT_CACHE_DIR),
                allowed,
                email=email or None,
                issuer=issuer,
                renew_before=renew_before or DEFAULT_RENEW_BEFORE,
            )
        except ValueError as ex:
            raise ConfigurationError(f"listener: {ex}") from ex

        tls_config = config.ensure_tls()
        if tls_config.resolver is not None:
            tls_config.resolver.close()
        tls_config.resolver = manager

    return Option("automatic_certificates", apply, (cache_dir, email, *hosts))
