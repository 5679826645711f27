"""Challenge strategies: how an authorization gets satisfied for each challenge type."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from .dns_providers import DnsProviderRegistry
from .errors import ChallengeValidationFailed, MissingCredentials, OrderNotReady
from .finalizer import CertificateFinalizer
from .models import (
    ChallengeType,
    DnsConfig,
    IssuedCertificate,
    PendingChallenge,
    PendingOrderRecord,
    VerificationOutcome,
)
from .propagation import DnsPropagationChecker
from .storage import PendingOrderStore

log = logging.getLogger(__name__)


@dataclass
class OrderAttempt:
    """One issuance attempt after the order and its challenge have been selected."""

    domain: str
    order: Dict
    authorization: Dict
    challenge: Dict
    key_authorization: str
    private_key_pem: str
    csr_pem: str
    dns_config: Optional[DnsConfig] = None


def _problem_detail(resource: Dict) -> Optional[str]:
    error = resource.get("error") or {}
    return error.get("detail")


class ChallengeStrategy(ABC):
    """
    Satisfies the selected challenge of an order.

    initiate() either finishes validation before returning (None) or hands
    back a PendingChallenge when something outside this system has to
    happen first.
    """

    challenge_type: ChallengeType

    @abstractmethod
    async def initiate(self, attempt: OrderAttempt) -> Optional[PendingChallenge]:
        """Start (and, where possible, finish) validation of the attempt's challenge."""


class Dns01Strategy(ChallengeStrategy):
    """Publishes the TXT record through a provider adapter and validates in one call."""

    challenge_type = ChallengeType.DNS01

    def __init__(self, acme, providers: DnsProviderRegistry, propagation: DnsPropagationChecker):
        self.acme = acme
        self.providers = providers
        self.propagation = propagation

    async def initiate(self, attempt: OrderAttempt) -> Optional[PendingChallenge]:
        if attempt.dns_config is None:
            raise MissingCredentials("DNS provider and API key are required for dns-01")
        await self.satisfy(attempt.authorization, attempt.challenge, attempt.key_authorization, attempt.dns_config)
        return None

    async def satisfy(
        self,
        authorization: Dict,
        challenge: Dict,
        key_authorization: str,
        credentials: DnsConfig
    ) -> None:
        """
        Create the TXT record, wait for it to propagate, and have the server validate it.

        The record is removed afterwards whatever the outcome; a failed removal
        is logged and does not replace the validation result.

        Raises:
            ChallengeValidationFailed: If the server reports the challenge as not valid
        """
        domain = authorization["identifier"]["value"]

        if challenge.get("status") == "valid":
            log.info("dns-01 challenge for %s already valid, skipping record creation", domain)
            return

        provider = self.providers.get(credentials.provider)
        record_name = f"_acme-challenge.{domain}"

        try:
            log.info("Creating TXT record %s via %s", record_name, provider.name)
            await provider.create_record(domain, record_name, key_authorization, credentials)

            if not await self.propagation.wait_for_txt(record_name, key_authorization):
                log.warning("Proceeding with validation of %s before propagation was observed", record_name)

            log.info("Notifying ACME server to validate dns-01 challenge for %s", domain)
            await self.acme.complete_challenge(challenge)
            result = await self.acme.wait_for_valid_status(challenge["url"])

            status = result.get("status")
            if status != "valid":
                detail = _problem_detail(result)
                raise ChallengeValidationFailed(
                    f"ACME challenge verification failed for {domain}. Check DNS setup. "
                    f"Details: {detail or 'status ' + str(status)}",
                    detail=detail
                )
            log.info("dns-01 challenge for %s validated", domain)
        finally:
            try:
                await provider.remove_record(domain, record_name, key_authorization, credentials)
            except Exception:
                log.warning("DNS challenge cleanup failed for %s", record_name, exc_info=True)


class Http01Strategy(ChallengeStrategy):
    """
    Manual http-01 flow spread over three independent requests.

    initiate stores the pending order and the response to serve, verify asks
    the server to validate, finalize issues the certificate. Every phase
    works only from what is in the stores.
    """

    challenge_type = ChallengeType.HTTP01

    def __init__(self, acme, pending_orders: PendingOrderStore, finalizer: CertificateFinalizer):
        self.acme = acme
        self.pending_orders = pending_orders
        self.finalizer = finalizer

    async def initiate(self, attempt: OrderAttempt) -> Optional[PendingChallenge]:
        challenge = attempt.challenge
        token = challenge["token"]

        self.pending_orders.save(PendingOrderRecord(
            order_url=attempt.order["url"],
            domain=attempt.domain,
            challenge_type=ChallengeType.HTTP01,
            challenge_url=challenge["url"],
            token=token,
            key_authorization=attempt.key_authorization,
            private_key_pem=attempt.private_key_pem,
            csr_pem=attempt.csr_pem
        ))
        log.info("http-01 order %s for %s pending, token %s", attempt.order["url"], attempt.domain, token)

        return PendingChallenge(
            domain=attempt.domain,
            token=token,
            key_authorization=attempt.key_authorization,
            challenge_url=challenge["url"],
            order_url=attempt.order["url"],
            message=(
                f"HTTP-01 challenge initiated. Please create the file "
                f"'/.well-known/acme-challenge/{token}' on your server for http://{attempt.domain} "
                f"with the provided content, then click 'Verify'."
            )
        )

    async def verify(self, record: PendingOrderRecord) -> VerificationOutcome:
        """
        Ask the server to validate the challenge and wait for the result.

        A challenge that is already valid is reported as such without being
        submitted again; anything else is submitted, so a failed attempt can
        be retried once the file is fixed. A failed validation is returned as
        "invalid"; the pending order is kept either way.
        """
        challenge = await self.acme.get_challenge(record.challenge_url)
        challenge["url"] = record.challenge_url
        status = challenge.get("status")

        if status == "valid":
            return VerificationOutcome(
                status="valid",
                message=f"Challenge already verified for {record.domain}. Ready to finalize."
            )

        log.info("Notifying ACME server to validate http-01 challenge for %s", record.domain)
        await self.acme.complete_challenge(challenge)
        challenge = await self.acme.wait_for_valid_status(record.challenge_url)
        status = challenge.get("status")

        if status == "valid":
            log.info("http-01 verification successful for %s", record.domain)
            return VerificationOutcome(
                status="valid",
                message=f"Challenge successfully verified for {record.domain}. Ready to finalize."
            )

        detail = _problem_detail(challenge)
        log.warning("http-01 verification failed for %s: %s", record.domain, detail or status)
        message = f"Challenge verification failed. Status: {status}."
        if detail:
            message += f" {detail}."
        message += " Please check the file and try again."
        return VerificationOutcome(status="invalid", message=message)

    async def finalize(self, record: PendingOrderRecord) -> IssuedCertificate:
        """
        Finalize a verified order with the stored CSR and persist the certificate.

        Raises:
            OrderNotReady: If the server has not moved the order to 'ready'
        """
        order = await self.acme.get_order(record.order_url)
        status = order.get("status")

        if status == "invalid":
            log.warning("Order %s for %s is invalid, discarding pending state", record.order_url, record.domain)
            self.discard(record.order_url)
            raise OrderNotReady(
                "Cannot finalize order. Status is 'invalid'; request a new certificate.",
                order_status=status
            )

        if status not in ("ready", "valid"):
            raise OrderNotReady(
                f"Cannot finalize order. Status is '{status}', expected 'ready'.",
                order_status=status
            )

        issued = await self.finalizer.finalize(
            order,
            record.domain,
            record.private_key_pem,
            record.csr_pem,
            ChallengeType.HTTP01,
            message=f"Certificate issued successfully for {record.domain} via manual HTTP-01."
        )

        self.discard(record.order_url)
        return issued

    def discard(self, order_url: str) -> None:
        """Remove a pending order and its challenge response, logging any failure."""
        try:
            self.pending_orders.delete(order_url)
        except Exception:
            log.warning("Could not remove pending order %s", order_url, exc_info=True)
