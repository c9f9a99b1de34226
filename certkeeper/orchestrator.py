"""
Certificate lifecycle orchestration.

Decides at startup (and on every renewal) whether the certificate on
disk is usable, runs the ACME exchange when it isn't, persists the
result and arms the next renewal. Every failure ends the current cycle
with a log entry; nothing escapes to the host process.
"""
import asyncio
import enum
import logging
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from .account import AccountKey, AccountKeyStore
from .acme_client import AcmeClient
from .challenges import ChallengeResponder, get_challenge_responder
from .errors import (
    AcmeError,
    ConfigurationError,
    ConfigurationInconsistencyError,
    PersistError,
)
from .renewal import RenewalScheduler, renewal_delay
from .selfcheck import SelfCheckCoordinator
from .settings import AcmeSettings, get_acme_settings
from .storage import Certificate, CertificatePaths, CertificateStore, ExistenceState


logger = logging.getLogger(__name__)


class State(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    CREATING_ACCOUNT = "creating_account"
    ORDERING_CERTIFICATE = "ordering_certificate"
    CHALLENGES_PUBLISHED = "challenges_published"
    SELF_CHECKING = "self_checking"
    FINALIZING = "finalizing"
    CERTIFICATE_READY = "certificate_ready"
    PERSISTED = "persisted"
    SCHEDULED = "scheduled"


def default_client_factory(settings: AcmeSettings, account_key: AccountKey) -> AcmeClient:
    return AcmeClient(
        directory_url=settings.directory_endpoint,
        account_key=account_key,
        email=settings.acme_email,
        key_type=settings.key_type,
    )


class AcmeOrchestrator:
    """
    Runs certificate acquisition cycles, one at a time.

    The renewal timer and the active challenge responder belong to this
    instance and are only touched from the event loop it runs on.
    """

    def __init__(
        self,
        settings_provider: Callable[[], AcmeSettings] = get_acme_settings,
        store: Optional[CertificateStore] = None,
        account_keys: Optional[AccountKeyStore] = None,
        self_check: Optional[SelfCheckCoordinator] = None,
        client_factory: Callable[[AcmeSettings, AccountKey], AcmeClient] = default_client_factory,
        responder_factory: Callable[[AcmeSettings], ChallengeResponder] = get_challenge_responder,
    ):
        """
        Args:
            settings_provider: Returns the current settings; called every cycle
            store: Certificate file pair storage
            account_keys: Account key storage
            self_check: Challenge self-check; built from settings when None
            client_factory: Builds the ACME client for a cycle
            responder_factory: Builds the challenge responder for a cycle
        """
        self._settings_provider = settings_provider
        self.store = store or CertificateStore()
        self.account_keys = account_keys or AccountKeyStore()
        self._self_check = self_check
        self._client_factory = client_factory
        self._responder_factory = responder_factory

        self.state = State.IDLE
        self.scheduler = RenewalScheduler(self.run)
        self._responder: Optional[ChallengeResponder] = None
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    def start(self) -> None:
        """Run the first cycle in the background."""
        self._stopped = False
        self._task = asyncio.create_task(self.run())
        logger.info("[ACME] Certificate automation started")

    async def stop(self) -> None:
        """
        Cancel the pending renewal and any cycle in flight, then release the
        challenge responder. No timer is armed after this returns.
        """
        self._stopped = True
        self.scheduler.cancel()

        running = [
            task for task in (self._task, self.scheduler.callback_task)
            if task is not None and not task.done() and task is not asyncio.current_task()
        ]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        await self._close_responder()
        self.state = State.IDLE
        logger.info("[ACME] Certificate automation stopped")

    async def run(self) -> State:
        """
        Run one certificate cycle from scratch.

        Returns immediately if another cycle is already active.

        Returns:
            The state the cycle ended in (SCHEDULED on success, IDLE otherwise),
            or the active cycle's current state when one was already running
        """
        if self._cycle_lock.locked():
            logger.info("[ACME] Certificate cycle already in progress (%s), not starting another", self.state.value)
            return self.state

        async with self._cycle_lock:
            try:
                await self._run_cycle()
            except ConfigurationInconsistencyError as e:
                logger.critical(
                    "[ACME] SSL certificate missing file: %s. Either provide it, or "
                    "remove the other file to generate a new certificate: %s",
                    e.missing_path, e.present_path,
                )
                self.state = State.IDLE
            except AcmeError as e:
                logger.error("[ACME] Certificate cycle failed in state %s: %s", self.state.value, e)
                self.state = State.IDLE
            except Exception as e:
                logger.exception("[ACME] Unexpected error in state %s: %s", self.state.value, e)
                self.state = State.IDLE
            finally:
                await self._close_responder()

        return self.state

    async def _run_cycle(self) -> None:
        settings = self._settings_provider()
        paths = settings.certificate_paths()

        existence = self.store.locate(paths)
        if existence.state is ExistenceState.INCONSISTENT:
            raise ConfigurationInconsistencyError(existence.present_path, existence.missing_path)

        if existence.state is ExistenceState.BOTH_PRESENT:
            certificate = self.store.read(paths)
            self.state = State.CERTIFICATE_READY
            await self._check_expiry(settings, paths, certificate)
        else:
            logger.info("[ACME] No certificate found at %s, requesting one", paths.fullchain_path)
            await self._generate_certificate(settings, paths)

    async def _check_expiry(
        self,
        settings: AcmeSettings,
        paths: CertificatePaths,
        certificate: Certificate,
    ) -> None:
        delay = renewal_delay(certificate.expiry)
        if delay > timedelta(0):
            self._schedule(delay)
        else:
            logger.info("[ACME] Certificate expired on %s, requesting a new one", certificate.expiry)
            await self._generate_certificate(settings, paths)

    async def _generate_certificate(self, settings: AcmeSettings, paths: CertificatePaths) -> None:
        if not settings.certificate_domains:
            raise ConfigurationError("No certificate domains configured")

        self.state = State.INITIALIZING
        account_key = self.account_keys.ensure(Path(settings.account_key_path))
        client = self._client_factory(settings, account_key)
        await client.initialize()

        self.state = State.CREATING_ACCOUNT
        await client.create_account()

        self._responder = self._responder_factory(settings)
        await self._responder.start()

        self.state = State.ORDERING_CERTIFICATE
        order = await client.order_certificate(settings.certificate_domains)

        self_check_urls = {}
        for challenge in order.challenges:
            logger.debug(
                "[ACME] Got challenge: domain %s, location %s",
                challenge.domain, challenge.location_path,
            )
            self._responder.publish(challenge.domain, challenge.location_path, challenge.content)
            self_check_urls[f"http://{challenge.domain}{challenge.location_path}"] = challenge.content
        self.state = State.CHALLENGES_PUBLISHED

        self.state = State.SELF_CHECKING
        await self._get_self_check(settings).check(self_check_urls, expected=self_check_urls)

        self.state = State.FINALIZING
        certificate = await client.retrieve_certificate(order)
        await self._close_responder()

        self.state = State.CERTIFICATE_READY
        logger.info("[ACME] Certificate retrieved, expires on %s", certificate.expiry.isoformat())
        if not self.store.write(paths, certificate):
            raise PersistError(
                f"Failed to write certificate files {paths.fullchain_path}, {paths.key_path}"
            )

        self.state = State.PERSISTED
        self._schedule(renewal_delay(certificate.expiry))

    def _get_self_check(self, settings: AcmeSettings) -> SelfCheckCoordinator:
        if self._self_check is None:
            return SelfCheckCoordinator(
                timeout=settings.self_check_timeout,
                interval=settings.self_check_interval,
            )
        return self._self_check

    def _schedule(self, delay: timedelta) -> None:
        if self._stopped:
            logger.info("[ACME] Automation stopped, not scheduling renewal")
            self.state = State.IDLE
            return
        self.scheduler.arm(delay)
        self.state = State.SCHEDULED

    async def _close_responder(self) -> None:
        responder, self._responder = self._responder, None
        if responder is not None:
            await responder.close()


async def start_acme_if_configured(settings: Optional[AcmeSettings] = None) -> Optional[AcmeOrchestrator]:
    """
    Start certificate automation if it is enabled.

    Called during application startup.
    """
    if settings is None:
        # Ask for the current settings on every cycle
        settings_provider = get_acme_settings
        settings = settings_provider()
    else:
        settings_provider = lambda: settings

    if not settings.enabled:
        logger.debug("[ACME] Certificate automation not enabled")
        return None

    orchestrator = AcmeOrchestrator(settings_provider=settings_provider)
    orchestrator.start()
    return orchestrator
