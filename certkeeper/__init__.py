"""
ACME certificate automation.

Keeps a TLS certificate file pair valid for a long-running asyncio
server:
- Obtains a certificate via ACME HTTP-01 when none exists or it expired
- Embedded, filesystem and manual challenge responders
- Self-check of challenge URLs before validation
- Renewal at two thirds of the remaining validity
"""

from .settings import (
    AcmeSettings,
    get_acme_settings,
    clear_acme_settings_cache,
)
from .storage import Certificate, CertificatePaths, CertificateStore
from .account import AccountKey, AccountKeyStore
from .acme_client import AcmeClient, Challenge, Order
from .challenges import (
    ChallengeResponder,
    EmbeddedHTTPServer,
    FilesystemWriter,
    ManualPrompt,
    get_challenge_responder,
)
from .selfcheck import SelfCheckCoordinator
from .renewal import RenewalScheduler
from .orchestrator import AcmeOrchestrator, State, start_acme_if_configured

__all__ = [
    "AcmeSettings",
    "get_acme_settings",
    "clear_acme_settings_cache",
    "Certificate",
    "CertificatePaths",
    "CertificateStore",
    "AccountKey",
    "AccountKeyStore",
    "AcmeClient",
    "Challenge",
    "Order",
    "ChallengeResponder",
    "EmbeddedHTTPServer",
    "FilesystemWriter",
    "ManualPrompt",
    "get_challenge_responder",
    "SelfCheckCoordinator",
    "RenewalScheduler",
    "AcmeOrchestrator",
    "State",
    "start_acme_if_configured",
]
