"""Exceptions raised while constructing or operating listeners."""

__all__ = (
    "CacheMiss",
    "CertificateError",
    "CertificateIssuanceError",
    "CertificateUnavailableError",
    "ConfigurationError",
    "HostNotAllowedError",
    "ListenerClosedError",
    "ListenerError",
    "RegistrationError",
    "UnknownClientAuthPolicyError",
)


class ListenerError(RuntimeError):
    """Base class for listener-related errors."""

    pass


class ConfigurationError(ListenerError):
    """Error thrown by a listener option when its inputs are invalid, e.g.,
    a certificate file cannot be read or no hostnames were supplied.
    """

    pass


class UnknownClientAuthPolicyError(ConfigurationError):
    """Exception thrown when trying to parse an unknown client authentication
    policy token.
    """

    def __init__(self, token: str):
        """Constructor.

        Parameters:
            token: the policy token that the user tried to use
        """
        super().__init__(f"Unknown client authentication policy: {token!r}")
        self.token = token


class CertificateError(ListenerError):
    """Base class for errors related to selecting or obtaining a certificate
    for an incoming TLS connection.
    """

    pass


class HostNotAllowedError(CertificateError):
    """Error thrown when a certificate is requested for a hostname that is not
    on the allow-list of the automatic certificate manager.
    """

    def __init__(self, hostname: str):
        super().__init__(f"Host not allowed: {hostname!r}")
        self.hostname = hostname


class CertificateUnavailableError(CertificateError):
    """Error thrown when there is no certificate that could be presented for
    an incoming TLS connection.
    """

    def __init__(self, hostname: str = ""):
        super().__init__(
            f"No certificate available for {hostname!r}"
            if hostname
            else "No certificate available"
        )
        self.hostname = hostname


class CertificateIssuanceError(CertificateError):
    """Error thrown when the certificate authority failed to issue a
    certificate for a hostname.
    """

    pass


class RegistrationError(ListenerError):
    """Error thrown when the account registration with the certificate
    authority failed.
    """

    pass


class ListenerClosedError(ListenerError):
    """Error thrown when an operation is attempted on a listener or a
    certificate manager that has already been closed.
    """

    pass


class CacheMiss(KeyError):
    """Exception thrown by certificate caches when the requested key does not
    exist in the cache.
    """

    pass
