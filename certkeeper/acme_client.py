"""
ACME client for automated certificate issuance.

Implements the subset of the ACME protocol (RFC 8555) needed to obtain a
certificate with HTTP-01 challenges: directory discovery, account
registration, ordering, challenge response, finalization and download.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

import httpx
import josepy as jose
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.x509.oid import NameOID

from .account import AccountKey
from .errors import AuthorityProtocolError
from .storage import Certificate


logger = logging.getLogger(__name__)

CHALLENGE_TYPE = "http-01"
BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


@dataclass
class Challenge:
    """A published HTTP-01 challenge."""

    domain: str
    location_path: str
    content: bytes
    # Authority resources used to answer the challenge
    challenge_url: str = ""
    authorization_url: str = ""


@dataclass
class Order:
    """A pending certificate order; never persisted."""

    domains: list[str]
    finalize_url: str
    order_url: str
    challenges: list[Challenge] = field(default_factory=list)


class AcmeClient:
    """
    ACME client for a single account.

    Call initialize() and create_account() before ordering.
    """

    def __init__(
        self,
        directory_url: str,
        account_key: AccountKey,
        email: str = "",
        key_type: Literal["rsa", "ec"] = "ec",
        poll_interval: float = 2.0,
        poll_attempts: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ACME client.

        Args:
            directory_url: The authority's directory endpoint
            account_key: Key that authenticates the account
            email: Contact email for the account (optional)
            key_type: Type of key to generate for certificates (RSA or EC)
            poll_interval: Seconds between authorization/order status polls
            poll_attempts: Polls before giving up
            transport: Optional httpx transport (used by tests)
        """
        self.directory_url = directory_url
        self.account_key = account_key
        self.email = email
        self.key_type = key_type
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._transport = transport

        # Will be populated during initialization
        self.directory: dict = {}
        self.jwk: Optional[jose.JWKRSA] = None
        self.account_url: Optional[str] = None
        self.nonce: Optional[str] = None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    async def initialize(self) -> None:
        """Fetch the authority's directory."""
        try:
            async with self._http() as client:
                resp = await client.get(self.directory_url)
        except httpx.HTTPError as e:
            raise AuthorityProtocolError(f"Failed to fetch ACME directory: {e}") from e

        if resp.status_code >= 400:
            raise AuthorityProtocolError(
                f"Failed to fetch ACME directory: HTTP {resp.status_code}",
                status=resp.status_code,
            )
        self.directory = resp.json()
        self.jwk = self.account_key.jwk()
        logger.info("[ACME-CLIENT] Fetched ACME directory from %s", self.directory_url)

    async def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        try:
            async with self._http() as client:
                resp = await client.head(self.directory["newNonce"])
        except httpx.HTTPError as e:
            raise AuthorityProtocolError(f"Failed to fetch ACME nonce: {e}") from e

        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AuthorityProtocolError("ACME server returned no Replay-Nonce")
        return nonce

    def _sign_request(
        self,
        url: str,
        payload: Optional[dict],
        use_jwk: bool = False,
    ) -> dict:
        """
        Sign a request with the account key.

        Args:
            url: The URL being requested
            payload: The payload to sign (or None for POST-as-GET)
            use_jwk: Include full JWK instead of kid (for registration)
        """
        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = jose.json_util.encode_b64jose(
                json.dumps(payload).encode("utf-8")
            )

        protected = {
            "alg": "RS256",
            "nonce": self.nonce,
            "url": url,
        }

        if use_jwk:
            protected["jwk"] = self.jwk.public_key().to_partial_json()
        else:
            protected["kid"] = self.account_url

        protected_b64 = jose.json_util.encode_b64jose(
            json.dumps(protected).encode("utf-8")
        )

        signature_input = f"{protected_b64}.{payload_b64}".encode("utf-8")
        signature = self.jwk.key.sign(
            signature_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": jose.json_util.encode_b64jose(signature),
        }

    async def _acme_request(
        self,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        """
        Make a signed ACME request, retrying once on a stale nonce.

        Raises:
            AuthorityProtocolError: On transport failure or an error status
        """
        for attempt in range(2):
            if self.nonce is None:
                self.nonce = await self._get_nonce()

            headers = {"Content-Type": "application/jose+json"}
            if accept:
                headers["Accept"] = accept

            signed = self._sign_request(url, payload, use_jwk)
            try:
                async with self._http() as client:
                    resp = await client.post(url, json=signed, headers=headers)
            except httpx.HTTPError as e:
                self.nonce = None
                raise AuthorityProtocolError(f"ACME request to {url} failed: {e}") from e

            self.nonce = resp.headers.get("Replay-Nonce")

            if resp.status_code < 400:
                return resp

            problem = self._problem(resp)
            if problem.get("type") == BAD_NONCE and attempt == 0:
                logger.debug("[ACME-CLIENT] Stale nonce for %s, retrying", url)
                continue
            raise AuthorityProtocolError(
                f"ACME request failed: {resp.status_code} - "
                f"{problem.get('detail') or problem.get('type') or resp.text}",
                status=resp.status_code,
            )

    @staticmethod
    def _problem(resp: httpx.Response) -> dict:
        try:
            problem = resp.json()
        except ValueError:
            return {}
        return problem if isinstance(problem, dict) else {}

    async def create_account(self) -> str:
        """Register or fetch the existing ACME account for the key."""
        payload: dict = {"termsOfServiceAgreed": True}
        if self.email:
            payload["contact"] = [f"mailto:{self.email}"]

        resp = await self._acme_request(
            self.directory["newAccount"],
            payload,
            use_jwk=True,
        )

        self.account_url = resp.headers.get("Location")
        if not self.account_url:
            raise AuthorityProtocolError("ACME server returned no account URL")
        logger.info("[ACME-CLIENT] ACME account registered/retrieved: %s", self.account_url)
        return self.account_url

    def key_authorization(self, token: str) -> str:
        thumbprint = jose.json_util.encode_b64jose(self.jwk.thumbprint())
        return f"{token}.{thumbprint}"

    async def order_certificate(self, domains: Iterable[str]) -> Order:
        """
        Create an order and collect the HTTP-01 challenge of every
        pending authorization.
        """
        domains = list(domains)
        logger.info("[ACME-CLIENT] Creating certificate order for %s", ", ".join(domains))

        resp = await self._acme_request(
            self.directory["newOrder"],
            {"identifiers": [{"type": "dns", "value": domain} for domain in domains]},
        )
        body = resp.json()
        order = Order(
            domains=domains,
            finalize_url=body["finalize"],
            order_url=resp.headers.get("Location", ""),
        )

        for auth_url in body["authorizations"]:
            auth = (await self._acme_request(auth_url)).json()
            if auth["status"] == "valid":
                continue

            challenge = next(
                (ch for ch in auth["challenges"] if ch["type"] == CHALLENGE_TYPE),
                None,
            )
            if not challenge:
                raise AuthorityProtocolError(
                    f"Challenge type {CHALLENGE_TYPE} not available for "
                    f"{auth['identifier']['value']}"
                )

            token = challenge["token"]
            order.challenges.append(Challenge(
                domain=auth["identifier"]["value"],
                location_path=f"/.well-known/acme-challenge/{token}",
                content=self.key_authorization(token).encode("ascii"),
                challenge_url=challenge["url"],
                authorization_url=auth_url,
            ))

        logger.info(
            "[ACME-CLIENT] Ordered certificate: order %s, finalize %s, "
            "%s domain(s), %s challenge(s)",
            order.order_url, order.finalize_url, len(order.domains), len(order.challenges),
        )
        return order

    async def _poll(self, url: str, what: str, waiting: tuple[str, ...]) -> dict:
        """Poll a resource until its status leaves waiting."""
        for _ in range(self.poll_attempts):
            body = (await self._acme_request(url)).json()
            if body["status"] not in waiting:
                return body
            await asyncio.sleep(self.poll_interval)
        raise AuthorityProtocolError(f"{what.capitalize()} timeout: {url}")

    async def _validate(self, challenge: Challenge) -> None:
        logger.info("[ACME-CLIENT] Responding to %s challenge for %s", CHALLENGE_TYPE, challenge.domain)
        await self._acme_request(challenge.challenge_url, {})

        auth = await self._poll(challenge.authorization_url, "authorization", ("pending",))
        if auth["status"] == "valid":
            logger.info("[ACME-CLIENT] Authorization valid for %s", challenge.domain)
            return

        error = {}
        for ch in auth.get("challenges", []):
            if ch["type"] == CHALLENGE_TYPE:
                error = ch.get("error", {})
        raise AuthorityProtocolError(
            f"Challenge failed for {challenge.domain}: "
            f"{error.get('detail', 'Authorization ' + auth['status'])}"
        )

    def _make_csr(self, domains: list[str]) -> tuple[bytes, bytes]:
        """Generate the certificate key and a CSR for domains."""
        if self.key_type == "ec":
            cert_key = ec.generate_private_key(ec.SECP256R1())
        else:
            cert_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=2048,
            )

        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
            )
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
                critical=False,
            )
            .sign(cert_key, hashes.SHA256())
        )

        key_pem = cert_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return csr.public_bytes(serialization.Encoding.DER), key_pem

    async def retrieve_certificate(self, order: Order) -> Certificate:
        """
        Answer the order's challenges, finalize it and download the chain.

        The challenges must already be published.
        """
        for challenge in order.challenges:
            await self._validate(challenge)

        csr_der, key_pem = self._make_csr(order.domains)

        logger.info("[ACME-CLIENT] Finalizing certificate order %s", order.order_url)
        await self._acme_request(
            order.finalize_url,
            {"csr": jose.json_util.encode_b64jose(csr_der)},
        )

        body = await self._poll(order.order_url, "order", ("pending", "ready", "processing"))
        if body["status"] != "valid":
            raise AuthorityProtocolError(f"Order {body['status']}: {order.order_url}")

        resp = await self._acme_request(
            body["certificate"],
            accept="application/pem-certificate-chain",
        )
        if not resp.content:
            raise AuthorityProtocolError("ACME server returned an empty certificate")

        certificate = Certificate(fullchain_pem=resp.content, private_key_pem=key_pem)
        logger.info(
            "[ACME-CLIENT] Certificate retrieved for %s, expires %s",
            ", ".join(order.domains), certificate.expiry.isoformat(),
        )
        return certificate
