"""Certificate issuer that talks to an ACME certificate authority (e.g.,
Let's Encrypt) and proves control over hostnames with the TLS-ALPN-01
challenge.
"""

import josepy as jose
import logging

from acme import client, errors, messages
from acme.challenges import (
    Challenge,
    ChallengeResponse,
    KeyAuthorizationChallenge,
    KeyAuthorizationChallengeResponse,
)
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional, Tuple

from ..errors import CertificateIssuanceError
from ..version import __version__
from .issuer import CertificateIssuer, ChallengeStore

__all__ = (
    "ACMEIssuer",
    "LETS_ENCRYPT_DIRECTORY_URL",
    "LETS_ENCRYPT_STAGING_DIRECTORY_URL",
    "TLSALPN01",
    "TLSALPN01Response",
)


LETS_ENCRYPT_DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_STAGING_DIRECTORY_URL = (
    "https://acme-staging-v02.api.letsencrypt.org/directory"
)

log = logging.getLogger(__name__.rpartition(".")[0])


@ChallengeResponse.register
class TLSALPN01Response(KeyAuthorizationChallengeResponse):
    """Response to an ACME TLS-ALPN-01 challenge (RFC 8737)."""

    typ = "tls-alpn-01"


@Challenge.register
class TLSALPN01(KeyAuthorizationChallenge):
    """ACME TLS-ALPN-01 challenge (RFC 8737).

    The challenge is answered by presenting a self-signed certificate that
    carries the digest of the key authorization to clients offering the
    ``acme-tls/1`` application protocol; see `ChallengeStore`.
    """

    response_cls = TLSALPN01Response
    typ = response_cls.typ

    def validation(self, account_key, **kwargs) -> str:
        """Returns the key authorization that the challenge certificate must
        carry.
        """
        return self.key_authorization(account_key)


class ACMEIssuer(CertificateIssuer):
    """Certificate issuer implementing the ACME protocol with the `acme`
    client library.

    The client is created and the account is registered on first use; the
    same client is reused for all subsequent orders.
    """

    _client: Optional[Tuple[client.ClientV2, jose.JWK]]

    def __init__(
        self,
        directory_url: str = LETS_ENCRYPT_DIRECTORY_URL,
        *,
        user_agent: Optional[str] = None,
        timeout: float = 90,
    ):
        """Constructor.

        Parameters:
            directory_url: URL of the directory of the certificate authority
            user_agent: the user agent to send with the requests
            timeout: maximum number of seconds to wait for an order to be
                validated and finalized
        """
        self.directory_url = directory_url
        self.user_agent = user_agent or f"tcplisten/{__version__}"
        self.timeout = timeout

        self._client = None
        self._lock = Lock()

    def register(self, account_key, email: Optional[str]) -> None:
        self._get_client(account_key, email)

    def issue(
        self, account_key, hostname: str, csr_pem: bytes, challenges: ChallengeStore
    ) -> bytes:
        acme_client, jwk = self._get_client(account_key, None)

        order = acme_client.new_order(csr_pem)
        try:
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue

                challenge = self._find_tls_alpn_challenge(authz)
                challenges.add(hostname, challenge.chall.key_authorization(jwk))
                log.debug(f"Answering TLS-ALPN-01 challenge for {hostname!r}")
                acme_client.answer_challenge(challenge, challenge.chall.response(jwk))

            deadline = datetime.now() + timedelta(seconds=self.timeout)
            order = acme_client.poll_and_finalize(order, deadline=deadline)
        finally:
            challenges.remove(hostname)

        return order.fullchain_pem.encode("ascii")

    def _get_client(
        self, account_key, email: Optional[str]
    ) -> Tuple[client.ClientV2, jose.JWK]:
        with self._lock:
            if self._client is None:
                self._client = self._create_client(account_key, email)
            return self._client

    def _create_client(
        self, account_key, email: Optional[str]
    ) -> Tuple[client.ClientV2, jose.JWK]:
        jwk = jose.JWKRSA(key=account_key)
        net = client.ClientNetwork(jwk, user_agent=self.user_agent)
        directory = client.ClientV2.get_directory(self.directory_url, net)
        acme_client = client.ClientV2(directory, net=net)

        registration = messages.NewRegistration.from_data(
            email=email, terms_of_service_agreed=True
        )
        try:
            acme_client.new_account(registration)
        except errors.ConflictError as ex:
            # account already exists for this key
            acme_client.query_registration(
                messages.RegistrationResource(
                    uri=ex.location, body=messages.Registration()
                )
            )

        return acme_client, jwk

    @staticmethod
    def _find_tls_alpn_challenge(authz: messages.AuthorizationResource):
        for challenge in authz.body.challenges:
            if isinstance(challenge.chall, TLSALPN01):
                return challenge

        raise CertificateIssuanceError(
            f"no TLS-ALPN-01 challenge offered for {authz.body.identifier.value!r}"
        )
