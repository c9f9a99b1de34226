"""
ACME certificate automation settings.

Read-only view of the configuration the host supplies: certificate file
locations, the account key path, the domains to certify, the CA directory
endpoint and which challenge responder to use.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Literal

from pydantic import BaseModel, field_validator

from .storage import CertificatePaths


logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
ACME_CONFIG_FILE = CONFIG_DIR / "acme_settings.json"
TLS_DIR = CONFIG_DIR / "tls"

# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"


class AcmeSettings(BaseModel):
    """Certificate automation configuration."""

    # Master enable/disable
    enabled: bool = False

    # Certificate file pair
    certificate_directory: str = str(TLS_DIR)
    certificate_filename: str = "fullchain.pem"
    certificate_key_filename: str = "privkey.pem"

    # ACME account
    account_key_path: str = str(TLS_DIR / "acme_account.key")
    acme_email: str = ""  # Contact email, omitted from registration when empty
    directory_endpoint: str = LETSENCRYPT_PRODUCTION

    # Domains covered by the certificate (first one becomes the CN)
    certificate_domains: list[str] = []

    # Challenge responder: "server" binds port 80 itself, "files" writes
    # into an external web server's document root, "manual" only logs
    challenge_handler: Literal["server", "files", "manual"] = "server"
    challenge_host: str = "0.0.0.0"
    challenge_port: int = 80
    challenge_root: str = ""

    # Key type for the issued certificate
    key_type: Literal["rsa", "ec"] = "ec"

    # Self-check polling (seconds)
    self_check_timeout: float = 120.0
    self_check_interval: float = 1.0

    @field_validator("certificate_domains")
    @classmethod
    def validate_domains(cls, v: list[str]) -> list[str]:
        """Normalise domains and convert them to their ASCII (ACE) form."""
        domains = []
        for domain in v:
            domain = domain.strip().lower()
            # Remove protocol if accidentally included
            if domain.startswith("http://"):
                domain = domain[7:]
            elif domain.startswith("https://"):
                domain = domain[8:]
            domain = domain.rstrip("/")
            if not domain:
                continue
            try:
                domain = domain.encode("idna").decode("ascii")
            except UnicodeError as e:
                raise ValueError(f"Invalid domain name {domain!r}: {e}") from e
            if domain not in domains:
                domains.append(domain)
        return domains

    @field_validator("acme_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate email format."""
        if v:
            v = v.strip().lower()
        return v

    def certificate_paths(self) -> CertificatePaths:
        """Get the (fullchain, key) file pair."""
        directory = Path(self.certificate_directory)
        return CertificatePaths(
            fullchain_path=directory / self.certificate_filename,
            key_path=directory / self.certificate_key_filename,
        )


# In-memory cache of ACME settings
_cached_acme_settings: Optional[AcmeSettings] = None


def load_acme_settings(config_file: Optional[Path] = None) -> AcmeSettings:
    """Load ACME settings from file or return defaults."""
    global _cached_acme_settings

    if _cached_acme_settings is not None:
        return _cached_acme_settings

    config_file = config_file or ACME_CONFIG_FILE
    logger.info("[ACME-SETTINGS] Loading ACME settings from %s", config_file)

    if config_file.exists():
        try:
            data = json.loads(config_file.read_text())
            _cached_acme_settings = AcmeSettings(**data)
            logger.info(
                "[ACME-SETTINGS] Loaded ACME settings, enabled: %s, domains: %s",
                _cached_acme_settings.enabled,
                _cached_acme_settings.certificate_domains,
            )
            return _cached_acme_settings
        except Exception as e:
            logger.error("[ACME-SETTINGS] Failed to load ACME settings: %s", e)

    logger.info("[ACME-SETTINGS] Using default ACME settings (no usable config file)")
    _cached_acme_settings = AcmeSettings()
    return _cached_acme_settings


def clear_acme_settings_cache() -> None:
    """Clear the cached ACME settings (forces reload)."""
    global _cached_acme_settings
    _cached_acme_settings = None
    logger.info("[ACME-SETTINGS] ACME settings cache cleared")


def get_acme_settings() -> AcmeSettings:
    """Get the current ACME settings."""
    return load_acme_settings()
