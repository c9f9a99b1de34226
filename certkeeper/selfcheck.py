"""
Challenge self-check.

Before asking the authority to validate, poll every challenge URL over
the public network to confirm it is reachable. The self-check is
advisory: a URL that never answers is logged and the order proceeds, so
the authority's own validation stays the deciding check.
"""
import asyncio
import logging
from typing import Iterable, Mapping, Optional

import httpx

from .errors import SelfCheckTimeoutError


logger = logging.getLogger(__name__)


class SelfCheckCoordinator:
    """Polls a set of challenge URLs concurrently and joins on all of them."""

    def __init__(
        self,
        timeout: float = 120.0,
        interval: float = 1.0,
        request_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Total time budget per URL in seconds
            interval: Delay between attempts in seconds
            request_timeout: Timeout of a single GET in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self.interval = interval
        self.request_timeout = request_timeout
        self._transport = transport

    async def check(
        self,
        urls: Iterable[str],
        expected: Optional[Mapping[str, bytes]] = None,
    ) -> dict[str, bool]:
        """
        Check every URL; returns once all of them have resolved.

        Args:
            urls: Challenge URLs to poll
            expected: Optional url -> content the response body must match

        Returns:
            Dict of url -> whether the URL answered as expected
        """
        urls = list(dict.fromkeys(urls))
        if not urls:
            return {}

        expected = expected or {}
        logger.info("[ACME-SELFCHECK] Checking %s challenge URL(s)", len(urls))

        async with httpx.AsyncClient(
            timeout=self.request_timeout,
            transport=self._transport,
        ) as client:
            results = await asyncio.gather(
                *(self._wait_for_get(client, url, expected.get(url)) for url in urls)
            )

        passed = dict(zip(urls, results))
        logger.info(
            "[ACME-SELFCHECK] Self-check complete: %s of %s reachable",
            sum(passed.values()), len(passed),
        )
        return passed

    async def _wait_for_get(
        self,
        client: httpx.AsyncClient,
        url: str,
        expected_content: Optional[bytes],
    ) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        last_error = "no attempt made"

        while True:
            try:
                resp = await client.get(url, follow_redirects=False)
                if resp.status_code != 200:
                    last_error = f"HTTP {resp.status_code} (expected 200)"
                elif expected_content is not None and resp.content.strip() != expected_content:
                    last_error = "Response does not match expected key authorization"
                else:
                    logger.info("[ACME-SELFCHECK] Challenge reachable: %s", url)
                    return True
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"

            if loop.time() + self.interval > deadline:
                break
            await asyncio.sleep(self.interval)

        error = SelfCheckTimeoutError(
            f"Challenge self-check failed for {url} after {self.timeout}s: {last_error}"
        )
        logger.warning("[ACME-SELFCHECK] %s", error)
        return False
