"""Drives a certificate order from creation to issuance or a pending http-01 challenge."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Union

from .challenges import ChallengeStrategy, Dns01Strategy, Http01Strategy, OrderAttempt
from .dns_providers import DnsProviderRegistry
from .errors import (
    AcmeServerError,
    ChallengeUnavailable,
    DomainMismatch,
    InvalidDomain,
    InvalidRequest,
    IssuanceInProgress,
    MissingCredentials,
    PendingOrderNotFound,
)
from .finalizer import CertificateFinalizer
from .keys import generate_key_and_csr, is_valid_domain
from .models import (
    ChallengeType,
    DnsConfig,
    IssuedCertificate,
    PendingChallenge,
    PendingOrderRecord,
    VerificationOutcome,
)
from .storage import PendingOrderStore

log = logging.getLogger(__name__)


def normalize_domain(domain: str) -> str:
    """Lowercase and validate a domain name."""
    normalized = (domain or "").strip().lower().rstrip(".")
    if not is_valid_domain(normalized):
        raise InvalidDomain(f"Invalid domain name format: {domain!r}")
    return normalized


def parse_challenge_type(method: Union[str, ChallengeType]) -> ChallengeType:
    try:
        return ChallengeType(method)
    except ValueError:
        raise InvalidRequest(f"Invalid challengeType: {method!r}. Expected 'dns-01' or 'http-01'.")


class DomainLocks:
    """
    One in-process lock per domain.

    A request that finds its domain busy is refused rather than queued, so a
    slow dns-01 validation never blocks a second caller indefinitely. Nobody
    ever waits on a lock, so it is dropped as soon as its holder is done.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, domain: str):
        if domain in self._locks:
            raise IssuanceInProgress(f"Another certificate operation for {domain} is already in progress")
        lock = self._locks[domain] = asyncio.Lock()
        try:
            async with lock:
                yield
        finally:
            del self._locks[domain]


class OrderCoordinator:
    """
    Runs one issuance attempt for a domain.

    dns-01 attempts finish within issue(). http-01 attempts stop after the
    order is created and resume through verify_http_challenge() and
    finalize_http_order(), each called from a separate request.
    """

    def __init__(
        self,
        acme,
        pending_orders: PendingOrderStore,
        providers: DnsProviderRegistry,
        finalizer: CertificateFinalizer,
        dns01: Dns01Strategy,
        http01: Http01Strategy,
        locks: Optional[DomainLocks] = None
    ):
        self.acme = acme
        self.pending_orders = pending_orders
        self.providers = providers
        self.finalizer = finalizer
        self.http01 = http01
        self.strategies: Dict[ChallengeType, ChallengeStrategy] = {
            ChallengeType.DNS01: dns01,
            ChallengeType.HTTP01: http01,
        }
        self.locks = locks or DomainLocks()

    async def issue(
        self,
        domain: str,
        method: Union[str, ChallengeType],
        credentials: Optional[DnsConfig] = None
    ) -> Union[IssuedCertificate, PendingChallenge]:
        """
        Request a certificate for a domain.

        Args:
            domain: Domain name to certify
            method: "dns-01" or "http-01"
            credentials: DNS provider configuration, required for dns-01

        Returns:
            IssuedCertificate for dns-01, PendingChallenge for http-01
        """
        domain = normalize_domain(domain)
        method = parse_challenge_type(method)

        if method == ChallengeType.DNS01:
            if credentials is None or not credentials.provider or not credentials.api_key:
                raise MissingCredentials("Missing dnsConfig (provider and apiKey) for DNS-01 challenge.")
            # Rejects unknown providers before anything reaches the network
            self.providers.get(credentials.provider)
        else:
            credentials = None

        async with self.locks.hold(domain):
            log.info("Requesting certificate for %s using %s", domain, method.value)
            await self.acme.ensure_account()

            private_key_pem, csr_pem = generate_key_and_csr(domain)

            order = await self.acme.create_order(domain)
            log.info("Order created: %s", order["url"])

            try:
                return await self._complete(domain, method, credentials, order, private_key_pem, csr_pem)
            except Exception:
                if method == ChallengeType.HTTP01:
                    self._cleanup_pending(order["url"])
                raise

    async def _complete(
        self,
        domain: str,
        method: ChallengeType,
        credentials: Optional[DnsConfig],
        order: Dict,
        private_key_pem: str,
        csr_pem: str
    ) -> Union[IssuedCertificate, PendingChallenge]:
        authorizations = await self.acme.get_authorizations(order)
        if not authorizations:
            raise AcmeServerError("No authorizations found for the order.")
        authorization = authorizations[0]

        challenge = next(
            (c for c in authorization.get("challenges", []) if c.get("type") == method.value),
            None
        )
        if challenge is None:
            raise ChallengeUnavailable(f"Could not find challenge type {method.value} for domain {domain}")
        log.info("Selected challenge %s (status %s)", challenge["type"], challenge.get("status"))

        attempt = OrderAttempt(
            domain=domain,
            order=order,
            authorization=authorization,
            challenge=challenge,
            key_authorization=self.acme.get_challenge_key_authorization(challenge),
            private_key_pem=private_key_pem,
            csr_pem=csr_pem,
            dns_config=credentials
        )

        pending = await self.strategies[method].initiate(attempt)
        if pending is not None:
            return pending

        return await self.finalizer.finalize(
            order,
            domain,
            private_key_pem,
            csr_pem,
            method,
            dns_config=credentials,
            message=f"Certificate generated successfully for {domain} via automated DNS-01."
        )

    def _cleanup_pending(self, order_url: str) -> None:
        try:
            if self.pending_orders.delete(order_url):
                log.warning("Removed pending order %s after failed initiation", order_url)
        except Exception:
            log.warning("Could not clean up pending order %s", order_url, exc_info=True)

    # ==================== Manual http-01 phases ====================

    def _load_pending(self, order_url: str, domain: str) -> PendingOrderRecord:
        if not order_url or not domain:
            raise InvalidRequest("Missing orderUrl or domain")

        record = self.pending_orders.get(order_url)
        if record is None:
            raise PendingOrderNotFound(
                "Pending order details not found. Verification might have expired or failed previously."
            )
        if record.domain != domain.strip().lower().rstrip("."):
            raise DomainMismatch("Domain mismatch in pending order data.")
        return record

    async def verify_http_challenge(self, order_url: str, challenge_url: str, domain: str) -> VerificationOutcome:
        """Ask the ACME server to check a manually placed http-01 response."""
        if not challenge_url:
            raise InvalidRequest("Missing challengeUrl, orderUrl, or domain")
        record = self._load_pending(order_url, domain)
        if record.challenge_url != challenge_url:
            raise PendingOrderNotFound("Pending order details not found or challenge URL mismatch.")

        await self.acme.ensure_account()
        return await self.http01.verify(record)

    async def finalize_http_order(self, order_url: str, domain: str) -> IssuedCertificate:
        """Issue the certificate for a verified http-01 order."""
        record = self._load_pending(order_url, domain)

        async with self.locks.hold(record.domain):
            await self.acme.ensure_account()
            issued = await self.http01.finalize(record)

        log.info("Finalized and stored certificate for %s, expires %s", record.domain, issued.expires_at.isoformat())
        return issued

    def abandon_http_order(self, order_url: str, domain: str) -> None:
        """Drop a pending http-01 order and stop serving its challenge response."""
        record = self._load_pending(order_url, domain)
        self.http01.discard(record.order_url)
        log.info("Abandoned pending order %s for %s", order_url, record.domain)
