"""
Certificate storage.

Reads and writes the full-chain certificate and private key file pair,
and reports whether the pair is present, absent or half-present.
"""
import enum
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import NamedTuple, Optional

from cryptography import x509

from .errors import CertificateIOError


logger = logging.getLogger(__name__)


class CertificatePaths(NamedTuple):
    """Location of the certificate file pair."""

    fullchain_path: Path
    key_path: Path


class ExistenceState(enum.Enum):
    BOTH_PRESENT = "both_present"
    NEITHER_PRESENT = "neither_present"
    INCONSISTENT = "inconsistent"


@dataclass
class Existence:
    """Result of locating the certificate file pair."""

    state: ExistenceState
    # Only set for INCONSISTENT
    present_path: Optional[Path] = None
    missing_path: Optional[Path] = None


@dataclass
class Certificate:
    """A PEM full chain and its private key."""

    fullchain_pem: bytes
    private_key_pem: bytes

    @property
    def is_usable(self) -> bool:
        return bool(self.fullchain_pem) and bool(self.private_key_pem)

    @property
    def leaf(self) -> x509.Certificate:
        """The first certificate of the chain."""
        # load_pem_x509_certificate only looks at the first PEM block
        return x509.load_pem_x509_certificate(self.fullchain_pem)

    @property
    def expiry(self) -> datetime:
        """Expiry of the leaf certificate (naive UTC)."""
        return self.leaf.not_valid_after_utc.replace(tzinfo=None)


class CertificateStore:
    """Manages the certificate file pair on disk."""

    def locate(self, paths: CertificatePaths) -> Existence:
        """Partition the file pair by existence."""
        present = [path for path in paths if path.exists()]
        if len(present) == len(paths):
            return Existence(ExistenceState.BOTH_PRESENT)
        if not present:
            return Existence(ExistenceState.NEITHER_PRESENT)

        missing = [path for path in paths if path not in present]
        return Existence(
            ExistenceState.INCONSISTENT,
            present_path=present[0],
            missing_path=missing[0],
        )

    def read(self, paths: CertificatePaths) -> Certificate:
        """
        Load the certificate pair from disk.

        Raises:
            CertificateIOError: If either file can't be read or is empty
        """
        try:
            certificate = Certificate(
                fullchain_pem=paths.fullchain_path.read_bytes(),
                private_key_pem=paths.key_path.read_bytes(),
            )
        except OSError as e:
            raise CertificateIOError(f"Failed to read certificate files: {e}") from e

        if not certificate.is_usable:
            raise CertificateIOError(
                f"Certificate files are empty: {paths.fullchain_path}, {paths.key_path}"
            )
        return certificate

    def write(self, paths: CertificatePaths, certificate: Certificate) -> bool:
        """
        Save the certificate pair to disk, chain first.

        A failure part way through leaves whatever is on disk in place.

        Returns:
            True if both files were fully written, False otherwise
        """
        try:
            paths.fullchain_path.parent.mkdir(parents=True, exist_ok=True)
            paths.key_path.parent.mkdir(parents=True, exist_ok=True)

            self._write_all(paths.fullchain_path, certificate.fullchain_pem, 0o640)
            self._write_all(paths.key_path, certificate.private_key_pem, 0o600)
        except OSError as e:
            logger.error(
                "[ACME-STORAGE] Failed to write certificate files %s, %s: %s",
                paths.fullchain_path, paths.key_path, e,
            )
            return False

        logger.info("[ACME-STORAGE] Certificate saved to %s", paths.fullchain_path)
        return True

    def _write_all(self, path: Path, data: bytes, mode: int) -> None:
        with open(path, "wb") as f:
            written = f.write(data)
        if written != len(data):
            raise OSError(f"Short write to {path}: {written} of {len(data)} bytes")
        os.chmod(path, mode)
