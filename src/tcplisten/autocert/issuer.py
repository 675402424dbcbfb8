"""Interface of the collaborator that obtains certificates from a certificate
authority, and the store of pending domain validation challenges that it
shares with the TLS listener.
"""

from abc import ABCMeta, abstractmethod
from threading import Lock
from typing import Dict, Optional

from ..tls.config import CertificateRecord
from .crypto import create_tls_alpn_challenge_certificate

__all__ = ("CertificateIssuer", "ChallengeStore")


class ChallengeStore:
    """Store of the TLS-ALPN-01 challenge certificates that are currently
    being validated by the certificate authority, keyed by hostname.

    The store is written from worker threads running the issuance exchange
    and read from the Trio thread that selects certificates for incoming
    connections, so all access is guarded by a lock.
    """

    _items: Dict[str, CertificateRecord]

    def __init__(self):
        self._items = {}
        self._lock = Lock()

    def __contains__(self, hostname: str) -> bool:
        with self._lock:
            return hostname in self._items

    def add(self, hostname: str, key_authorization: str) -> CertificateRecord:
        """Creates and stores the challenge certificate for the given hostname
        and key authorization.

        Returns:
            the newly created challenge certificate
        """
        record = create_tls_alpn_challenge_certificate(hostname, key_authorization)
        with self._lock:
            self._items[hostname] = record
        return record

    def get(self, hostname: str) -> Optional[CertificateRecord]:
        """Returns the pending challenge certificate for the given hostname, if
        any.
        """
        with self._lock:
            return self._items.get(hostname)

    def remove(self, hostname: str) -> None:
        """Removes the pending challenge certificate of the given hostname."""
        with self._lock:
            self._items.pop(hostname, None)


class CertificateIssuer(metaclass=ABCMeta):
    """Interface specification for objects that obtain certificates from a
    certificate authority.

    The methods of this interface are blocking; the certificate manager calls
    them from worker threads.
    """

    @abstractmethod
    def register(self, account_key, email: Optional[str]) -> None:
        """Registers the account identified by the given key with the
        certificate authority, or looks up the existing registration.

        Parameters:
            account_key: the private key of the account
            email: optional contact address of the account
        """
        raise NotImplementedError

    @abstractmethod
    def issue(
        self, account_key, hostname: str, csr_pem: bytes, challenges: ChallengeStore
    ) -> bytes:
        """Obtains a certificate for the given hostname.

        Parameters:
            account_key: the private key of the account
            hostname: the hostname to obtain the certificate for
            csr_pem: the PEM-encoded certificate signing request
            challenges: store where challenge certificates must be published
                while the certificate authority validates the hostname

        Returns:
            the PEM-encoded certificate chain, leaf certificate first
        """
        raise NotImplementedError
