"""Flat settings record for listeners that can be filled from a configuration
file or from command line arguments, and turned into listener options.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Sequence, Union

from .listener import open_listener
from .options import (
    Option,
    automatic_certificates,
    fast_open,
    http2,
    naggle,
    tls,
    tls_client_auth,
)

__all__ = ("ListenerSettings",)


def _parse_bool(value: Union[bool, int, str]) -> bool:
    if isinstance(value, str):
        value = value.strip().lower()
        if value in ("1", "yes", "true", "on"):
            return True
        elif value in ("", "0", "no", "false", "off"):
            return False
        raise ValueError(f"invalid boolean value: {value!r}")
    return bool(value)


def _parse_hosts(value: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    return [host.strip() for host in value if host and host.strip()]


@dataclass
class ListenerSettings:
    """Settings of a listener in a flat form, suitable for configuration files
    and command line tools.

    Use `options()` to convert the settings into the options accepted by
    `open_listener()`.
    """

    listen_addr: str = ""
    """Address in ``[host]:port`` format to listen on."""

    naggle: bool = False
    """Whether to keep Nagle's algorithm enabled."""

    fast_open: bool = False
    """Whether to enable TCP fast open."""

    tls: bool = False
    """Whether to enable TLS with the certificate and key files below."""

    tls_ca_cert_file: str = "cacert.pem"
    """CA certificate bundle for client authentication."""

    tls_client_auth: str = ""
    """Client authentication policy; client authentication is disabled if
    empty.
    """

    tls_cert_file: str = "cert.pem"
    """Certificate chain of the server."""

    tls_key_file: str = "key.pem"
    """Private key of the server."""

    http2: bool = False
    """Whether to offer HTTP/2 to TLS clients."""

    letsencrypt: bool = False
    """Whether to obtain certificates automatically from Let's Encrypt."""

    letsencrypt_cache_dir: str = "letsencrypt.cache"
    """Directory where automatically obtained certificates are cached."""

    letsencrypt_email: str = ""
    """Optional contact address to register with Let's Encrypt."""

    letsencrypt_hosts: str = ""
    """Comma-separated list of hostnames to obtain certificates for."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListenerSettings":
        """Creates a settings object from a dictionary.

        Keys may use dashes or underscores (e.g., ``listen-addr`` or
        ``listen_addr``). Boolean settings accept the usual string
        representations; the list of hosts may also be given as a list.

        Raises:
            ValueError: if the dictionary contains an unknown key or an invalid
                boolean value
        """
        types = {field.name: field.type for field in fields(cls)}
        kwds: Dict[str, Any] = {}
        for key, value in data.items():
            name = key.replace("-", "_").lower()
            if name not in types:
                raise ValueError(f"unknown listener setting: {key!r}")

            if name == "letsencrypt_hosts":
                value = ",".join(_parse_hosts(value))
            elif types[name] in (bool, "bool"):
                value = _parse_bool(value)
            else:
                value = str(value)

            kwds[name] = value

        return cls(**kwds)

    @property
    def hosts(self) -> List[str]:
        """The hostnames to obtain certificates for, as a list."""
        return _parse_hosts(self.letsencrypt_hosts)

    def options(self) -> List[Option]:
        """Returns the listener options corresponding to these settings."""
        result = []
        if self.naggle:
            result.append(naggle())
        if self.fast_open:
            result.append(fast_open())
        if self.tls:
            result.append(tls(self.tls_cert_file, self.tls_key_file))
        if self.tls_client_auth:
            result.append(tls_client_auth(self.tls_ca_cert_file, self.tls_client_auth))
        if self.letsencrypt:
            result.append(
                automatic_certificates(
                    self.letsencrypt_cache_dir, self.letsencrypt_email, *self.hosts
                )
            )
        if self.http2:
            result.append(http2())
        return result

    async def open(self, **kwds):
        """Creates a listener according to these settings.

        Keyword arguments are forwarded to `open_listener()`.
        """
        return await open_listener(self.listen_addr, *self.options(), **kwds)
