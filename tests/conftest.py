"""
Shared test fixtures.

Certificates are self-signed on the fly with cryptography so expiry
arithmetic can be tested against real PEM data.
"""
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certkeeper.challenges import EmbeddedHTTPServer
from certkeeper.settings import AcmeSettings
from certkeeper.storage import Certificate, CertificatePaths


def build_certificate(expires_in: timedelta, domain: str = "example.test") -> Certificate:
    """Self-sign a certificate for domain expiring expires_in from now."""
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + expires_in)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return Certificate(
        fullchain_pem=cert.public_bytes(serialization.Encoding.PEM),
        private_key_pem=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )


@pytest.fixture
def make_certificate():
    return build_certificate


@pytest.fixture
def cert_paths(tmp_path):
    return CertificatePaths(
        fullchain_path=tmp_path / "tls" / "fullchain.pem",
        key_path=tmp_path / "tls" / "privkey.pem",
    )


@pytest.fixture
def acme_settings(tmp_path):
    return AcmeSettings(
        enabled=True,
        certificate_directory=str(tmp_path / "tls"),
        account_key_path=str(tmp_path / "tls" / "acme_account.key"),
        certificate_domains=["example.test"],
        directory_endpoint="https://acme.test/directory",
        challenge_handler="manual",
        self_check_timeout=0.05,
        self_check_interval=0.01,
    )


@pytest.fixture(autouse=True)
def reset_challenge_listener():
    """Make sure a failed test never leaves the listener slot taken."""
    yield
    EmbeddedHTTPServer._listening = None
