"""Renew certificates with the configuration used to obtain them."""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Union

from .errors import MissingCredentials, UnknownDomain
from .models import CertificateRecord, ChallengeType, IssuedCertificate, PendingChallenge
from .orders import OrderCoordinator, normalize_domain
from .storage import CertificateStore

log = logging.getLogger(__name__)


class RenewalCoordinator:
    """
    Re-runs issuance for a known domain.

    ACME has no renew operation: a renewal is a new order with a new key,
    using the same challenge type (and DNS credentials) as last time. An
    http-01 renewal therefore goes through the full manual flow again.
    """

    def __init__(self, orders: OrderCoordinator, certificates: CertificateStore):
        self.orders = orders
        self.certificates = certificates

    async def renew(self, domain: str) -> Union[IssuedCertificate, PendingChallenge]:
        domain = normalize_domain(domain)

        record = self.certificates.get(domain)
        if record is None:
            raise UnknownDomain(f"No certificate on record for {domain}")

        credentials = None
        if record.challenge_type == ChallengeType.DNS01:
            credentials = record.dns_config
            if credentials is None or not credentials.provider or not credentials.api_key:
                raise MissingCredentials(
                    f"Stored configuration for {domain} has no DNS credentials; issue a new certificate instead.",
                    status_code=500
                )

        log.info("Renewing certificate for %s via %s", domain, record.challenge_type.value)
        return await self.orders.issue(domain, record.challenge_type, credentials)

    def due_for_renewal(self, within_days: int = 30) -> List[CertificateRecord]:
        """Stored certificates expiring within the given number of days, soonest first."""
        cutoff = datetime.now(timezone.utc) + timedelta(days=within_days)
        due = [r for r in self.certificates.list_certificates() if r.expires_at <= cutoff]
        due.sort(key=lambda r: r.expires_at)
        return due
