"""TLS configuration assembled from listener options, and the selection of
the server certificate for incoming connections.
"""

from __future__ import annotations

import logging
import ssl

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from trio import to_thread
from typing import Dict, List, Optional, Tuple, Union, TYPE_CHECKING

from ..errors import CertificateUnavailableError, UnknownClientAuthPolicyError
from .hello import ClientHello
from .pem import (
    certificate_expiry,
    certificate_names,
    load_cert_chain_from_pem,
    load_certificates,
    match_hostname,
    normalize_hostname,
)

if TYPE_CHECKING:
    from ..autocert.manager import CertificateManager

__all__ = (
    "ACME_TLS_ALPN_PROTOCOL",
    "CertificateRecord",
    "CertificateSelector",
    "ClientAuthPolicy",
    "TLSConfiguration",
    "TrustPool",
)


ACME_TLS_ALPN_PROTOCOL = "acme-tls/1"
"""ALPN protocol identifier used by ACME certificate authorities to perform
TLS-ALPN-01 domain validation.
"""

log = logging.getLogger(__name__.rpartition(".")[0])


class ClientAuthPolicy(Enum):
    """Requirement level for client certificates during the TLS handshake."""

    NONE = "none"
    REQUEST = "request"
    REQUIRE_ANY = "require_any"
    VERIFY_IF_GIVEN = "verify_if_given"
    REQUIRE_AND_VERIFY = "require_and_verify"

    @classmethod
    def from_string(cls, value: Union[str, "ClientAuthPolicy"]) -> "ClientAuthPolicy":
        """Parses a client authentication policy from its string token.

        Both the names of the enum members (e.g., ``verify-if-given``) and
        the traditional long tokens (e.g., ``VerifyClientCertIfGiven``) are
        accepted, case-insensitively.

        Raises:
            UnknownClientAuthPolicyError: if the token is not known
        """
        if isinstance(value, cls):
            return value

        token = str(value).lower()
        for char in "-_ ":
            token = token.replace(char, "")

        policy = _CLIENT_AUTH_POLICY_TOKENS.get(token)
        if policy is None:
            raise UnknownClientAuthPolicyError(str(value))
        return policy

    @property
    def verify_mode(self) -> ssl.VerifyMode:
        """The verification mode of the ``ssl`` module corresponding to this
        policy.

        OpenSSL always verifies a presented client certificate against the
        trust pool, so policies that request or require a certificate
        without verifying it are mapped to their verifying counterparts.
        """
        if self is ClientAuthPolicy.NONE:
            return ssl.CERT_NONE
        elif self in (ClientAuthPolicy.REQUEST, ClientAuthPolicy.VERIFY_IF_GIVEN):
            return ssl.CERT_OPTIONAL
        else:
            return ssl.CERT_REQUIRED


_CLIENT_AUTH_POLICY_TOKENS = {
    "none": ClientAuthPolicy.NONE,
    "noclientcert": ClientAuthPolicy.NONE,
    "request": ClientAuthPolicy.REQUEST,
    "requestany": ClientAuthPolicy.REQUEST,
    "requestclientcert": ClientAuthPolicy.REQUEST,
    "requireany": ClientAuthPolicy.REQUIRE_ANY,
    "requireanyclientcert": ClientAuthPolicy.REQUIRE_ANY,
    "verifyifgiven": ClientAuthPolicy.VERIFY_IF_GIVEN,
    "verifyclientcertifgiven": ClientAuthPolicy.VERIFY_IF_GIVEN,
    "requireandverify": ClientAuthPolicy.REQUIRE_AND_VERIFY,
    "requireandverifyclientcert": ClientAuthPolicy.REQUIRE_AND_VERIFY,
}


@dataclass(frozen=True)
class CertificateRecord:
    """A certificate chain and its private key, loaded into memory."""

    chain_pem: bytes
    """The PEM-encoded certificate chain, leaf certificate first."""

    key_pem: bytes
    """The PEM-encoded private key of the leaf certificate."""

    names: Tuple[str, ...] = ()
    """The DNS names that the leaf certificate is valid for."""

    not_after: Optional[datetime] = None
    """The expiry date of the leaf certificate."""

    not_before: Optional[datetime] = None
    """The start of the validity period of the leaf certificate."""

    @classmethod
    def from_pem(cls, chain_pem: bytes, key_pem: bytes) -> "CertificateRecord":
        """Creates a certificate record from a PEM-encoded certificate chain
        and private key, validating that they can be used by a TLS server.

        Raises:
            ssl.SSLError: if the certificate or the key is invalid or they do
                not match each other
            ValueError: if the chain contains no certificate
        """
        certificates = load_certificates(chain_pem)
        if not certificates:
            raise ValueError("no certificate found in certificate chain")

        load_cert_chain_from_pem(
            ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER), chain_pem, key_pem
        )

        leaf = certificates[0]
        return cls(
            chain_pem=chain_pem,
            key_pem=key_pem,
            names=certificate_names(leaf),
            not_after=certificate_expiry(leaf),
            not_before=leaf.not_valid_before_utc,
        )

    @classmethod
    def load(cls, cert_file: str, key_file: str) -> "CertificateRecord":
        """Loads a certificate chain and its private key from the given
        files.

        Raises:
            OSError: if one of the files cannot be read
            ssl.SSLError: if the certificate or the key is invalid
            ValueError: if the certificate file contains no certificate
        """
        with open(cert_file, "rb") as fp:
            chain_pem = fp.read()
        with open(key_file, "rb") as fp:
            key_pem = fp.read()
        return cls.from_pem(chain_pem, key_pem)

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """Returns whether the certificate expires within the given number of
        seconds from now. Zero checks whether it has expired already.
        """
        if self.not_after is None:
            return False
        now = now or datetime.now(self.not_after.tzinfo)
        return (self.not_after - now).total_seconds() <= seconds

    @property
    def lifetime(self) -> Optional[timedelta]:
        """The length of the validity period of the certificate, or ``None``
        if it is not known.
        """
        if self.not_before is None or self.not_after is None:
            return None
        return self.not_after - self.not_before

    def matches(self, hostname: str) -> bool:
        """Returns whether the certificate is valid for the given normalized
        hostname.
        """
        return match_hostname(self.names, hostname)

    def to_context(self, config: "TLSConfiguration") -> ssl.SSLContext:
        """Creates a server-side SSL context presenting this certificate,
        using the settings of the given TLS configuration.
        """
        return config.create_context(self)


@dataclass(frozen=True)
class TrustPool:
    """Set of trusted root certificates used to verify client certificates,
    together with the client authentication policy.
    """

    certificates: Tuple[x509.Certificate, ...] = ()
    policy: ClientAuthPolicy = ClientAuthPolicy.NONE

    @classmethod
    def from_pem(
        cls, data: bytes, policy: ClientAuthPolicy = ClientAuthPolicy.NONE
    ) -> "TrustPool":
        """Creates a trust pool from a PEM-encoded CA bundle. Entries that
        cannot be parsed are skipped.
        """
        return cls(certificates=tuple(load_certificates(data)), policy=policy)

    @classmethod
    def load(
        cls, path: str, policy: ClientAuthPolicy = ClientAuthPolicy.NONE
    ) -> "TrustPool":
        """Creates a trust pool from a PEM-encoded CA bundle file.

        Raises:
            OSError: if the file cannot be read
        """
        with open(path, "rb") as fp:
            return cls.from_pem(fp.read(), policy)

    @property
    def cadata(self) -> str:
        """The certificates of the pool in PEM format, concatenated."""
        return "".join(
            cert.public_bytes(Encoding.PEM).decode("ascii")
            for cert in self.certificates
        )

    def apply_to(self, context: ssl.SSLContext) -> None:
        """Configures client certificate verification on the given SSL
        context.
        """
        if self.certificates:
            context.load_verify_locations(cadata=self.cadata)
        context.verify_mode = self.policy.verify_mode


@dataclass
class TLSConfiguration:
    """TLS settings accumulated by listener options.

    A listener terminates TLS if and only if its configuration has a
    TLS configuration object.
    """

    certificates: List[CertificateRecord] = field(default_factory=list)
    """Statically loaded certificates, in the order they were added."""

    trust_pool: Optional[TrustPool] = None
    """Trusted roots and policy for client certificate authentication."""

    alpn_protocols: List[str] = field(default_factory=list)
    """Application protocols offered to clients, in order of preference."""

    resolver: Optional[CertificateManager] = None
    """Manager that obtains certificates for hostnames on demand; consulted
    only when no static certificate matches the requested hostname.
    """

    minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2

    def create_context(
        self,
        certificate: Optional[CertificateRecord] = None,
        *,
        alpn_protocols: Optional[List[str]] = None,
        verify_clients: bool = True,
    ) -> ssl.SSLContext:
        """Creates a server-side SSL context from this configuration.

        Parameters:
            certificate: the certificate that the context should present
            alpn_protocols: the application protocols to offer; ``None``
                means to use the ones from the configuration
            verify_clients: whether to apply the client authentication
                settings of the configuration

        Returns:
            the newly created SSL context
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = self.minimum_version

        if certificate is not None:
            load_cert_chain_from_pem(
                context, certificate.chain_pem, certificate.key_pem
            )

        if verify_clients and self.trust_pool is not None:
            self.trust_pool.apply_to(context)

        protocols = self.alpn_protocols if alpn_protocols is None else alpn_protocols
        if protocols:
            context.set_alpn_protocols(protocols)

        return context

    def create_selector(self) -> "CertificateSelector":
        """Assembles the SSL contexts of the statically loaded certificates
        and returns an object that selects the appropriate context for each
        incoming connection.
        """
        return CertificateSelector(self)


class CertificateSelector:
    """Selects the SSL context to use for an incoming TLS connection based on
    the server name and the application protocols in its ClientHello.

    The order of precedence is: ACME TLS-ALPN-01 challenge certificates,
    static certificates matching the server name, the certificate resolver
    (if the client sent a server name), and finally the first static
    certificate.
    """

    _dynamic: Dict[str, Tuple[CertificateRecord, ssl.SSLContext]]
    _static: List[Tuple[CertificateRecord, ssl.SSLContext]]

    def __init__(self, config: TLSConfiguration):
        """Constructor.

        Parameters:
            config: the TLS configuration to assemble
        """
        self._config = config
        self._static = [
            (record, record.to_context(config)) for record in config.certificates
        ]
        self._dynamic = {}

    @property
    def config(self) -> TLSConfiguration:
        return self._config

    @property
    def default_context(self) -> Optional[ssl.SSLContext]:
        """The context of the first static certificate, if any."""
        return self._static[0][1] if self._static else None

    async def select_context(self, hello: Optional[ClientHello]) -> ssl.SSLContext:
        """Selects the SSL context to use for a connection.

        Parameters:
            hello: the ClientHello received from the client, or ``None`` if it
                could not be parsed

        Returns:
            the SSL context to complete the handshake with

        Raises:
            CertificateError: if no certificate can be presented to the client
        """
        name = None
        if hello is not None and hello.server_name:
            try:
                name = normalize_hostname(hello.server_name)
            except ValueError:
                name = None

        resolver = self._config.resolver

        if name and resolver and ACME_TLS_ALPN_PROTOCOL in hello.alpn_protocols:
            challenge = resolver.get_challenge_certificate(name)
            if challenge is not None:
                return await to_thread.run_sync(
                    self._create_challenge_context, challenge
                )

        if name:
            for record, context in self._static:
                if record.matches(name):
                    return context

        if name and resolver:
            record = await resolver.get_certificate(name)
            return await self._get_dynamic_context(name, record)

        if self._static:
            return self._static[0][1]

        raise CertificateUnavailableError(name or "")

    def _create_challenge_context(self, record: CertificateRecord) -> ssl.SSLContext:
        return self._config.create_context(
            record, alpn_protocols=[ACME_TLS_ALPN_PROTOCOL], verify_clients=False
        )

    async def _get_dynamic_context(
        self, name: str, record: CertificateRecord
    ) -> ssl.SSLContext:
        entry = self._dynamic.get(name)
        if entry is not None and entry[0] is record:
            return entry[1]

        context = await to_thread.run_sync(record.to_context, self._config)
        self._dynamic[name] = record, context
        log.debug(f"Loaded certificate for {name!r} into a new SSL context")
        return context
