"""
HTTP-01 challenge responders.

A responder makes each challenge's key authorization available at
http://<domain><location_path>. One responder is selected per
orchestration run from the settings:

- EmbeddedHTTPServer: serves challenges itself on port 80 (aiohttp)
- FilesystemWriter: writes challenge files for an external web server
- ManualPrompt: logs the challenge for an operator to set up by hand
"""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from aiohttp import web

from .errors import ChallengeServerError
from .settings import AcmeSettings


logger = logging.getLogger(__name__)


class ChallengeResponder(ABC):
    """
    Abstract base class for challenge responders.

    Implementations must provide publish(); start() and close() bracket the
    lifetime of one order.
    """

    @abstractmethod
    def publish(self, domain: str, location_path: str, content: bytes) -> None:
        """
        Make a challenge available.

        Args:
            domain: The domain being validated
            location_path: URL path the authority will request
            content: The key authorization to serve
        """
        pass

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


class EmbeddedHTTPServer(ChallengeResponder):
    """
    Standalone HTTP server for ACME HTTP-01 challenges.

    Only one instance may be listening per process. The published set is
    mutated by the orchestrator and read by the request handler, both on
    the event loop thread.
    """

    _listening: Optional["EmbeddedHTTPServer"] = None

    def __init__(self, host: str = "0.0.0.0", port: int = 80):
        """
        Initialize the challenge server.

        Args:
            host: Host to bind to
            port: Port to bind to (usually 80 for HTTP-01)
        """
        self.host = host
        self.port = port
        self._challenges: dict[str, bytes] = {}
        self._runner: Optional[web.AppRunner] = None

    @property
    def published_paths(self) -> list[str]:
        return list(self._challenges)

    def publish(self, domain: str, location_path: str, content: bytes) -> None:
        self._challenges[location_path] = content
        logger.info(
            "[ACME-CHALLENGE] Serving HTTP-01 challenge for %s at %s",
            domain, location_path,
        )

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/{tail:.*}", self._handle_challenge)
        return app

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            ChallengeServerError: If another listener is active or the bind fails
        """
        listening = EmbeddedHTTPServer._listening
        if listening is not None:
            raise ChallengeServerError(
                f"HTTP challenge server already listening on "
                f"{listening.host}:{listening.port}"
            )

        runner = web.AppRunner(self.build_app())
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host, self.port)
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise ChallengeServerError(
                f"Failed to bind HTTP challenge server on {self.host}:{self.port}: {e}"
            ) from e

        self._runner = runner
        EmbeddedHTTPServer._listening = self
        logger.info("[ACME-CHALLENGE] HTTP challenge server started on %s:%s", self.host, self.port)

    async def close(self) -> None:
        """Stop the HTTP challenge server and forget all challenges."""
        self._challenges.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            if EmbeddedHTTPServer._listening is self:
                EmbeddedHTTPServer._listening = None
            logger.info("[ACME-CHALLENGE] HTTP challenge server stopped")

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        content = self._challenges.get(request.path)

        if content is not None:
            logger.info("[ACME-CHALLENGE] Serving challenge response for %s", request.path)
            return web.Response(body=content, content_type="application/octet-stream")

        logger.warning("[ACME-CHALLENGE] Challenge not found for %s", request.path)
        expected = "".join(f"{path}\n" for path in self._challenges)
        return web.Response(
            status=404,
            text=f"Resource not found. Url is {request.path} but expected any of\n{expected}",
        )


class FilesystemWriter(ChallengeResponder):
    """
    Writes challenge files under an external web server's document root.

    Written files are not removed afterwards.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def publish(self, domain: str, location_path: str, content: bytes) -> None:
        target = self.root / location_path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        logger.info("[ACME-CHALLENGE] Wrote HTTP-01 challenge for %s to %s", domain, target)


class ManualPrompt(ChallengeResponder):
    """Asks the operator to publish each challenge by hand."""

    def publish(self, domain: str, location_path: str, content: bytes) -> None:
        logger.warning(
            "[ACME-CHALLENGE] Please manually complete this HTTP challenge:\n"
            "Domain: %s\nLocation: %s\nContent: %s",
            domain, location_path, content.decode("ascii", errors="replace"),
        )


def get_challenge_responder(settings: AcmeSettings) -> ChallengeResponder:
    """
    Get the challenge responder configured in settings.

    Raises:
        ValueError: If the handler is not supported or lacks its document root
    """
    handler = settings.challenge_handler

    if handler == "server":
        return EmbeddedHTTPServer(host=settings.challenge_host, port=settings.challenge_port)
    elif handler == "files":
        if not settings.challenge_root:
            raise ValueError("challenge_root is required for the 'files' challenge handler")
        return FilesystemWriter(Path(settings.challenge_root))
    elif handler == "manual":
        return ManualPrompt()
    else:
        raise ValueError(f"Unsupported challenge handler: {handler}")
