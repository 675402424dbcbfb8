"""Manager that obtains TLS certificates for an allow-list of hostnames on
demand, caches them and refreshes them before they expire.
"""

import logging
import ssl

from blinker import Signal
from datetime import datetime, timedelta, timezone
from trio import Lock, to_thread
from typing import Dict, FrozenSet, Iterable, Optional

from ..concurrency import Future, FutureCancelled
from ..errors import (
    CacheMiss,
    CertificateError,
    CertificateIssuanceError,
    HostNotAllowedError,
    ListenerClosedError,
    RegistrationError,
)
from ..tls.config import CertificateRecord
from ..tls.pem import normalize_hostname, private_key_to_pem, split_pem_blocks
from .acme import ACMEIssuer
from .cache import Cache
from .crypto import (
    create_csr,
    generate_account_key,
    generate_certificate_key,
    load_private_key,
)
from .issuer import CertificateIssuer, ChallengeStore

__all__ = (
    "ACCOUNT_KEY_CACHE_KEY",
    "DEFAULT_RENEW_BEFORE",
    "CertificateManager",
    "HostPolicy",
)


ACCOUNT_KEY_CACHE_KEY = "acme_account+key"
"""Name of the cache entry that holds the private key of the account."""

DEFAULT_RENEW_BEFORE = timedelta(days=30)
"""Certificates are refreshed when they expire within this period."""

REFRESH_RETRY_INTERVAL = timedelta(hours=1)
"""Minimum time between two failed attempts to refresh a certificate that
is still valid.
"""

RENEWAL_LIFETIME_FRACTION = 1 / 3
"""Certificates are refreshed no earlier than when this fraction of their
lifetime remains, even if it is shorter than the renewal period of the
manager.
"""

log = logging.getLogger(__name__.rpartition(".")[0])


class HostPolicy:
    """Immutable allow-list of the hostnames for which certificates may be
    obtained.
    """

    _hosts: FrozenSet[str]

    def __init__(self, hosts: Iterable[str]):
        """Constructor.

        Parameters:
            hosts: the allowed hostnames; empty entries are ignored

        Raises:
            ValueError: if one of the hostnames cannot be normalized
        """
        self._hosts = frozenset(
            normalize_hostname(host) for host in hosts if host and host.strip()
        )

    def __bool__(self) -> bool:
        return bool(self._hosts)

    def __contains__(self, hostname: str) -> bool:
        try:
            return normalize_hostname(hostname) in self._hosts
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._hosts)

    @property
    def hosts(self) -> FrozenSet[str]:
        """The normalized allowed hostnames."""
        return self._hosts

    def check(self, hostname: str) -> str:
        """Checks whether a certificate may be obtained for the given
        hostname.

        Returns:
            the normalized hostname

        Raises:
            HostNotAllowedError: if the hostname is not on the allow-list
        """
        try:
            name = normalize_hostname(hostname)
        except ValueError:
            raise HostNotAllowedError(hostname) from None

        if name not in self._hosts:
            raise HostNotAllowedError(name)

        return name


def parse_cached_certificate(data: bytes) -> CertificateRecord:
    """Parses a certificate cache entry consisting of a private key followed
    by the certificate chain, all in PEM format.

    Raises:
        ValueError: if the entry has no private key or no certificate
        ssl.SSLError: if the key does not match the certificate
    """
    key_pem = b""
    chain = []
    for label, block in split_pem_blocks(data):
        if label.endswith("PRIVATE KEY"):
            if not key_pem:
                key_pem = block
        elif label == "CERTIFICATE":
            chain.append(block)

    if not key_pem:
        raise ValueError("no private key in cache entry")

    return CertificateRecord.from_pem(b"".join(chain), key_pem)


def format_cached_certificate(record: CertificateRecord) -> bytes:
    """Formats a certificate record as a certificate cache entry."""
    key_pem = record.key_pem
    if not key_pem.endswith(b"\n"):
        key_pem += b"\n"
    return key_pem + record.chain_pem


class CertificateManager:
    """Obtains certificates for the hostnames of an allow-list on demand.

    Certificates are kept in memory and in a persistent cache. A certificate
    is requested from the certificate authority when the first TLS handshake
    for its hostname arrives and there is no usable certificate in the
    cache, and again when it gets close to its expiry. Concurrent handshakes
    for the same hostname share a single request.
    """

    certificate_issued = Signal(
        doc="""\
        Signal sent after a new certificate was obtained for a hostname.

        Parameters:
            hostname (str): the hostname of the certificate
            certificate (CertificateRecord): the new certificate
        """
    )

    issuance_failed = Signal(
        doc="""\
        Signal sent when obtaining a certificate for a hostname failed.

        Parameters:
            hostname (str): the hostname of the certificate
            error (Exception): the error that happened
        """
    )

    _account_key: Optional[object]
    _certificates: Dict[str, CertificateRecord]
    _pending: Dict[str, Future[CertificateRecord]]
    _retry_after: Dict[str, datetime]

    def __init__(
        self,
        cache: Cache,
        hosts: Iterable[str],
        *,
        email: Optional[str] = None,
        issuer: Optional[CertificateIssuer] = None,
        renew_before: timedelta = DEFAULT_RENEW_BEFORE,
    ):
        """Constructor.

        Parameters:
            cache: the cache to store certificates and the account key in
            hosts: the hostnames that certificates may be obtained for
            email: contact address to register the account with; the account
                is registered without a contact address if omitted
            issuer: the object that performs the exchange with the
                certificate authority. Defaults to an ACME issuer that uses
                the Let's Encrypt production directory.
            renew_before: certificates are refreshed when they expire within
                this period

        Raises:
            ValueError: if no hostnames were given
        """
        self.host_policy = HostPolicy(hosts)
        if not self.host_policy:
            raise ValueError("no hosts configured")

        if issuer is None:
            issuer = ACMEIssuer()

        self.cache = cache
        self.email = email or None
        self.issuer = issuer
        self.renew_before = renew_before
        self.challenges = ChallengeStore()

        self._account_key = None
        self._account_lock = Lock()
        self._certificates = {}
        self._closed = False
        self._pending = {}
        self._registered = False
        self._retry_after = {}

    @property
    def closed(self) -> bool:
        """Whether the manager has been closed."""
        return self._closed

    @property
    def registered(self) -> bool:
        """Whether the account has been registered with the certificate
        authority.
        """
        return self._registered

    def close(self) -> None:
        """Closes the manager. Subsequent certificate requests fail with
        ListenerClosedError_; requests in progress are allowed to finish.
        """
        self._closed = True

    async def prepare(self) -> None:
        """Performs the steps that must succeed before the listener using this
        manager starts accepting connections.

        The account is registered eagerly if a contact address was given so
        that registration errors surface when the listener is created.

        Raises:
            RegistrationError: if the registration failed
        """
        if self.email:
            await self.register()

    async def register(self) -> None:
        """Registers the account with the certificate authority unless it has
        been registered already. The private key of the account is loaded from
        the cache or created and stored in the cache if it does not exist yet.

        Raises:
            RegistrationError: if the registration failed
        """
        async with self._account_lock:
            if self._registered:
                return

            try:
                key = await self._load_or_create_account_key()
                await to_thread.run_sync(self.issuer.register, key, self.email)
            except Exception as ex:
                raise RegistrationError(f"account registration failed: {ex}") from ex

            self._account_key = key
            self._registered = True
            log.info("Registered account with the certificate authority")

    def get_challenge_certificate(self, hostname: str) -> Optional[CertificateRecord]:
        """Returns the TLS-ALPN-01 challenge certificate for the given
        normalized hostname if a validation is in progress for it.
        """
        return self.challenges.get(hostname)

    async def get_certificate(self, hostname: str) -> CertificateRecord:
        """Returns a valid certificate for the given hostname, obtaining one
        from the cache or from the certificate authority if needed.

        Raises:
            HostNotAllowedError: if the hostname is not on the allow-list; the
                cache and the certificate authority are not consulted in this
                case
            CertificateIssuanceError: if no certificate could be obtained
            ListenerClosedError: if the manager has been closed
        """
        if self._closed:
            raise ListenerClosedError("certificate manager is closed")

        name = self.host_policy.check(hostname)

        while True:
            record = self._certificates.get(name)
            if record is not None and not self._needs_refresh(name, record):
                return record

            future = self._pending.get(name)
            if future is None:
                future = self._pending[name] = Future()
                try:
                    await future.call(self._obtain_certificate, name)
                finally:
                    del self._pending[name]

            try:
                return await future.wait()
            except FutureCancelled:
                # the task that was obtaining the certificate was cancelled
                continue

    def _get_renewal_window(self, record: CertificateRecord) -> timedelta:
        """Returns the period before the expiry of the given certificate in
        which the manager attempts to refresh it.

        Short-lived certificates would otherwise fall in the renewal period of
        the manager as soon as they are issued.
        """
        lifetime = record.lifetime
        if lifetime is None:
            return self.renew_before
        return min(self.renew_before, lifetime * RENEWAL_LIFETIME_FRACTION)

    def _needs_refresh(self, name: str, record: CertificateRecord) -> bool:
        if record.expires_within(0):
            return True

        window = self._get_renewal_window(record)
        if not record.expires_within(window.total_seconds()):
            return False

        retry_after = self._retry_after.get(name)
        return retry_after is None or datetime.now(timezone.utc) >= retry_after

    async def _obtain_certificate(self, name: str) -> CertificateRecord:
        current = self._certificates.get(name)
        if current is None:
            current = await self._load_certificate_from_cache(name)
            if current is not None:
                self._certificates[name] = current
                if not self._needs_refresh(name, current):
                    return current

        try:
            record = await self._issue_certificate(name)
        except ListenerClosedError:
            raise
        except Exception as ex:
            self.issuance_failed.send(self, hostname=name, error=ex)

            if current is not None and not current.expires_within(0):
                log.warning(
                    f"Failed to refresh certificate of {name!r}, "
                    f"keeping the current one: {ex}"
                )
                self._retry_after[name] = (
                    datetime.now(timezone.utc) + REFRESH_RETRY_INTERVAL
                )
                return current

            log.error(f"Failed to obtain certificate for {name!r}: {ex}")
            if isinstance(ex, CertificateError):
                raise
            raise CertificateIssuanceError(
                f"failed to obtain certificate for {name!r}: {ex}"
            ) from ex

        self._certificates[name] = record
        self._retry_after.pop(name, None)
        return record

    async def _load_certificate_from_cache(
        self, name: str
    ) -> Optional[CertificateRecord]:
        try:
            data = await self.cache.get(name)
        except CacheMiss:
            return None
        except OSError as ex:
            log.warning(f"Ignoring unreadable cached certificate of {name!r}: {ex}")
            return None

        try:
            record = await to_thread.run_sync(parse_cached_certificate, data)
        except (ValueError, ssl.SSLError) as ex:
            log.warning(f"Ignoring invalid cached certificate of {name!r}: {ex}")
            return None

        if record.expires_within(0) or not record.matches(name):
            return None

        return record

    async def _issue_certificate(self, name: str) -> CertificateRecord:
        if self._closed:
            raise ListenerClosedError("certificate manager is closed")

        await self.register()

        key = generate_certificate_key()
        csr_pem = create_csr(key, name)

        log.info(f"Requesting certificate for {name!r}")
        chain_pem = await to_thread.run_sync(
            self.issuer.issue, self._account_key, name, csr_pem, self.challenges
        )
        record = await to_thread.run_sync(
            CertificateRecord.from_pem, chain_pem, private_key_to_pem(key)
        )

        try:
            await self.cache.put(name, format_cached_certificate(record))
        except OSError as ex:
            log.error(f"Failed to store certificate of {name!r} in the cache: {ex}")

        log.info(f"Obtained certificate for {name!r}, valid until {record.not_after}")

        self.certificate_issued.send(self, hostname=name, certificate=record)
        return record

    async def _load_or_create_account_key(self):
        try:
            data = await self.cache.get(ACCOUNT_KEY_CACHE_KEY)
        except CacheMiss:
            key = generate_account_key()
            await self.cache.put(ACCOUNT_KEY_CACHE_KEY, private_key_to_pem(key))
            log.info("Created new account key")
            return key
        else:
            return load_private_key(data)
