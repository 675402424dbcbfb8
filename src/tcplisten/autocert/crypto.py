"""Cryptographic helpers for automatic certificate issuance: key generation,
certificate signing requests and ACME TLS-ALPN-01 challenge certificates.
"""

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID, ObjectIdentifier
from datetime import datetime, timedelta, timezone
from hashlib import sha256

from ..tls.config import CertificateRecord
from ..tls.pem import private_key_to_pem

__all__ = (
    "ACME_IDENTIFIER_OID",
    "create_csr",
    "create_tls_alpn_challenge_certificate",
    "generate_account_key",
    "generate_certificate_key",
    "load_private_key",
)


ACME_IDENTIFIER_OID = ObjectIdentifier("1.3.6.1.5.5.7.1.31")
"""Object identifier of the ``id-pe-acmeIdentifier`` certificate extension
(RFC 8737).
"""


def generate_account_key() -> rsa.RSAPrivateKey:
    """Generates a new private key for the account with the certificate
    authority.
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def generate_certificate_key() -> ec.EllipticCurvePrivateKey:
    """Generates a new private key for a TLS certificate."""
    return ec.generate_private_key(ec.SECP256R1())


def load_private_key(data: bytes):
    """Loads an unencrypted PEM-encoded private key.

    Raises:
        ValueError: if the data is not a valid private key
    """
    return serialization.load_pem_private_key(data, password=None)


def create_csr(key, hostname: str) -> bytes:
    """Creates a PEM-encoded certificate signing request for a single
    hostname.
    """
    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False
        )
    )
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


def create_tls_alpn_challenge_certificate(
    hostname: str, key_authorization: str
) -> CertificateRecord:
    """Creates the self-signed certificate that answers an ACME TLS-ALPN-01
    challenge for the given hostname.

    Parameters:
        hostname: the hostname being validated
        key_authorization: the key authorization of the challenge

    Returns:
        the challenge certificate and its private key
    """
    key = generate_certificate_key()
    digest = sha256(key_authorization.encode("ascii")).digest()
    # DER encoding of an OCTET STRING holding the digest
    extension_value = bytes([0x04, len(digest)]) + digest

    now = datetime.now(timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=7))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False
        )
        .add_extension(
            x509.UnrecognizedExtension(ACME_IDENTIFIER_OID, extension_value),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )

    return CertificateRecord(
        chain_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=private_key_to_pem(key),
        names=(hostname,),
        not_after=cert.not_valid_after_utc,
        not_before=cert.not_valid_before_utc,
    )
