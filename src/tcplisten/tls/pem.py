"""Helper functions for handling PEM-encoded certificates and keys."""

import os
import re
import ssl

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID
from datetime import datetime
from tempfile import NamedTemporaryFile
from typing import List, Sequence, Tuple

__all__ = (
    "certificate_expiry",
    "certificate_names",
    "load_cert_chain_from_pem",
    "load_certificates",
    "match_hostname",
    "normalize_hostname",
    "private_key_to_pem",
    "split_pem_blocks",
)


_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n.*?-----END \1-----\r?\n?", re.DOTALL
)


def split_pem_blocks(data: bytes) -> List[Tuple[str, bytes]]:
    """Splits a PEM bundle into its blocks.

    Returns:
        the label (e.g., ``CERTIFICATE`` or ``PRIVATE KEY``) and the full
        encoded block for each block found in the input, in order. Garbage
        between blocks is ignored.
    """
    return [
        (match.group(1).decode("ascii"), match.group(0))
        for match in _PEM_BLOCK.finditer(data)
    ]


def load_certificates(data: bytes) -> List[x509.Certificate]:
    """Parses all the certificates from a PEM bundle, silently skipping
    blocks that cannot be parsed.
    """
    result = []
    for label, block in split_pem_blocks(data):
        if label != "CERTIFICATE":
            continue
        try:
            result.append(x509.load_pem_x509_certificate(block))
        except ValueError:
            continue
    return result


def normalize_hostname(name: str) -> str:
    """Returns the canonical form of a hostname: lowercase ASCII (IDNA) form
    without the trailing dot.

    Raises:
        ValueError: if the hostname is empty or cannot be encoded
    """
    name = name.strip().rstrip(".")
    if not name:
        raise ValueError("empty hostname")
    if name.isascii():
        return name.lower()
    try:
        return name.encode("idna").decode("ascii").lower()
    except UnicodeError as ex:
        raise ValueError(f"invalid hostname: {name!r}") from ex


def certificate_names(cert: x509.Certificate) -> Tuple[str, ...]:
    """Returns the DNS names that the given certificate is valid for.

    The subject alternative names are used if present; the common name of
    the subject is used otherwise.
    """
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        names = [
            attr.value
            for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        ]
    else:
        names = san.value.get_values_for_type(x509.DNSName)

    return tuple(str(name).lower().rstrip(".") for name in names)


def certificate_expiry(cert: x509.Certificate) -> datetime:
    """Returns the timezone-aware expiry date of a certificate."""
    return cert.not_valid_after_utc


def match_hostname(patterns: Sequence[str], name: str) -> bool:
    """Returns whether the given (normalized) hostname matches any of the
    given certificate name patterns.

    Wildcards are accepted only as the entire leftmost label and match
    exactly one label.
    """
    for pattern in patterns:
        if pattern == name:
            return True
        if pattern.startswith("*."):
            _, sep, parent = name.partition(".")
            if sep and parent == pattern[2:]:
                return True
    return False


def private_key_to_pem(key) -> bytes:
    """Serializes a private key into unencrypted PKCS#8 PEM format."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_cert_chain_from_pem(
    context: ssl.SSLContext, chain_pem: bytes, key_pem: bytes
) -> None:
    """Loads a certificate chain and the corresponding private key into an
    SSL context from memory.

    The ``ssl`` module can load certificates from files only, so the
    material is written to a private temporary file that is removed right
    after loading.

    Raises:
        ssl.SSLError: if the certificate or the key is invalid or they do not
            match each other
    """
    with NamedTemporaryFile(suffix=".pem", delete=False) as fp:
        try:
            fp.write(key_pem)
            fp.write(b"\n")
            fp.write(chain_pem)
            fp.close()
            context.load_cert_chain(fp.name)
        finally:
            os.unlink(fp.name)
