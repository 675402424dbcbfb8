from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from datetime import datetime, timedelta, timezone
from pytest import fixture
from threading import Event, Lock
from typing import List, Optional, Sequence, Tuple

import ssl

from tcplisten.autocert import CertificateIssuer


class CertificateAuthority:
    """Minimal certificate authority for issuing test certificates."""

    def __init__(self, name: str = "tcplisten test CA"):
        self.key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
        now = datetime.now(timezone.utc)
        self.certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(self.key.public_key()),
                critical=False,
            )
            .sign(self.key, hashes.SHA256())
        )

    @property
    def cert_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def client_context(self) -> ssl.SSLContext:
        """Returns a client-side SSL context that trusts this CA."""
        return ssl.create_default_context(cadata=self.cert_pem.decode("ascii"))

    def issue(
        self,
        names: Sequence[str],
        *,
        valid_for: timedelta = timedelta(days=90),
        client: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[bytes, bytes]:
        """Issues a certificate for the given DNS names.

        Returns:
            the PEM-encoded certificate and the PEM-encoded private key
        """
        key = ec.generate_private_key(ec.SECP256R1())
        now = now or datetime.now(timezone.utc)
        usage = (
            ExtendedKeyUsageOID.CLIENT_AUTH
            if client
            else ExtendedKeyUsageOID.SERVER_AUTH
        )
        builder = (
            x509.CertificateBuilder()
            .subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])
            )
            .issuer_name(self.certificate.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + valid_for)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
                critical=False,
            )
            .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(
                    self.key.public_key()
                ),
                critical=False,
            )
        )
        cert = builder.sign(self.key, hashes.SHA256())
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return cert.public_bytes(serialization.Encoding.PEM), key_pem

    def sign_csr(
        self, csr_pem: bytes, *, valid_for: timedelta = timedelta(days=90)
    ) -> bytes:
        """Signs a certificate signing request and returns the PEM-encoded
        certificate chain.
        """
        csr = x509.load_pem_x509_csr(csr_pem)
        names = csr.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value.get_values_for_type(x509.DNSName)
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.certificate.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + valid_for)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
                critical=False,
            )
            .sign(self.key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM) + self.cert_pem


class FakeIssuer(CertificateIssuer):
    """Certificate issuer that signs certificates with the test CA instead of
    talking to a real certificate authority.
    """

    def __init__(self, ca: CertificateAuthority):
        self.ca = ca
        self.error: Optional[Exception] = None
        self.registration_error: Optional[Exception] = None
        self.gate: Optional[Event] = None
        self.issued: List[str] = []
        self.registrations: List[Optional[str]] = []
        self.valid_for = timedelta(days=90)
        self._lock = Lock()

    def register(self, account_key, email):
        if self.registration_error:
            raise self.registration_error
        with self._lock:
            self.registrations.append(email)

    def issue(self, account_key, hostname, csr_pem, challenges):
        with self._lock:
            self.issued.append(hostname)
        if self.gate is not None:
            self.gate.wait(10)
        if self.error:
            raise self.error
        return self.ca.sign_csr(csr_pem, valid_for=self.valid_for)


@fixture(scope="session")
def ca() -> CertificateAuthority:
    return CertificateAuthority()


@fixture
def cert_files(tmp_path, ca):
    """Certificate and key files for ``localhost`` and ``www.example.com``."""
    cert_pem, key_pem = ca.issue(["localhost", "www.example.com"])
    cert_file = tmp_path / "cert.pem"
    key_file = tmp_path / "key.pem"
    cert_file.write_bytes(cert_pem)
    key_file.write_bytes(key_pem)
    return str(cert_file), str(key_file)


@fixture
def ca_file(tmp_path, ca):
    """CA bundle with the test CA and some garbage that cannot be parsed."""
    path = tmp_path / "cacert.pem"
    path.write_bytes(
        ca.cert_pem
        + b"-----BEGIN CERTIFICATE-----\nbm90IGEgY2VydGlmaWNhdGU=\n"
        + b"-----END CERTIFICATE-----\n"
    )
    return str(path)


@fixture
def garbage_file(tmp_path):
    path = tmp_path / "garbage.pem"
    path.write_bytes(b"this is not a certificate\n")
    return str(path)


@fixture
def issuer(ca) -> FakeIssuer:
    return FakeIssuer(ca)
