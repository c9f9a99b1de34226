"""
ACME account key storage.

The account key authenticates every request to the certificate authority.
It is created once, on the first certificate request, and never rotated.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from josepy import JWKRSA

from .errors import AccountKeyGenerationError, CertificateIOError


logger = logging.getLogger(__name__)


@dataclass
class AccountKey:
    """PEM-encoded ACME account private key."""

    private_key_pem: bytes

    def load(self) -> rsa.RSAPrivateKey:
        """Parse the PEM into an RSA private key."""
        try:
            key = serialization.load_pem_private_key(self.private_key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise CertificateIOError(f"Cannot load account key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CertificateIOError(
                f"Unsupported account key type: {type(key).__name__} (RSA required)"
            )
        return key

    def jwk(self) -> JWKRSA:
        return JWKRSA(key=self.load())


class AccountKeyStore:
    """Loads the account key, creating it on first use."""

    def __init__(self, key_size: int = 4096):
        self.key_size = key_size

    def ensure(self, path: Path) -> AccountKey:
        """
        Load the account key at path, generating and saving one if absent.

        Raises:
            AccountKeyGenerationError: If a new key can't be generated
            CertificateIOError: If the key file can't be written, read or parsed
        """
        path = Path(path)
        if not path.exists():
            self._create(path)

        try:
            account_key = AccountKey(private_key_pem=path.read_bytes())
        except OSError as e:
            raise CertificateIOError(f"Failed to read account key file {path}: {e}") from e

        # Fail here rather than half way through the ACME exchange
        account_key.load()
        logger.info("[ACME-ACCOUNT] Loaded ACME account key from %s", path)
        return account_key

    def _create(self, path: Path) -> None:
        try:
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.key_size,
            )
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (ValueError, TypeError) as e:
            raise AccountKeyGenerationError(f"Failed to generate account key: {e}") from e

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Owner-only from the moment the file exists
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key_pem)
            os.chmod(path, 0o600)
        except OSError as e:
            raise CertificateIOError(f"Failed to create account key file {path}: {e}") from e

        logger.info("[ACME-ACCOUNT] Created and saved new ACME account key at %s", path)
