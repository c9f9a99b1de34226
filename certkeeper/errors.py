"""
Error kinds raised by the certificate automation subsystem.

None of these are allowed to escape the orchestrator: each one ends the
current certificate cycle and is logged where it is caught.
"""
from typing import Optional


class AcmeError(Exception):
    """Base class for certificate automation errors."""

    pass


class ConfigurationError(AcmeError):
    """Settings are incomplete or contradict the files on disk."""

    pass


class ConfigurationInconsistencyError(ConfigurationError):
    """Only one file of the certificate pair exists."""

    def __init__(self, present_path, missing_path):
        self.present_path = present_path
        self.missing_path = missing_path
        super().__init__(
            f"Certificate file {missing_path} is missing while {present_path} exists"
        )


class CertificateIOError(AcmeError):
    """Reading or writing a key or certificate file failed."""

    pass


class AccountKeyGenerationError(AcmeError):
    """A new ACME account key could not be generated."""

    pass


class AuthorityProtocolError(AcmeError):
    """The certificate authority rejected a request or returned garbage."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SelfCheckTimeoutError(AcmeError):
    """A challenge URL was not reachable within its time budget."""

    pass


class PersistError(AcmeError):
    """A certificate was issued but could not be written to disk."""

    pass


class ChallengeServerError(AcmeError):
    """The embedded HTTP-01 listener could not be bound."""

    pass
