"""Finalize a validated order, download the certificate and store it."""

import logging
from typing import Dict, Optional

from .keys import read_certificate_expiry
from .models import CertificateRecord, ChallengeType, DnsConfig, IssuedCertificate
from .storage import CertificateStore

log = logging.getLogger(__name__)


class CertificateFinalizer:
    """Last step shared by every challenge type."""

    def __init__(self, acme, certificates: CertificateStore):
        self.acme = acme
        self.certificates = certificates

    async def finalize(
        self,
        order: Dict,
        domain: str,
        private_key_pem: str,
        csr_pem: str,
        challenge_type: ChallengeType,
        dns_config: Optional[DnsConfig] = None,
        message: str = ""
    ) -> IssuedCertificate:
        """
        Submit the CSR, download the chain and persist a CertificateRecord.

        An order that is already valid (finalized by an earlier attempt that
        did not get as far as storing the result) is downloaded directly.
        """
        if order.get("status") == "valid" and order.get("certificate"):
            log.info("Order %s already finalized, downloading certificate", order.get("url"))
            finalized = order
        else:
            log.info("Finalizing order %s for %s", order.get("url"), domain)
            finalized = await self.acme.finalize_order(order, csr_pem)

        certificate_pem = await self.acme.get_certificate(finalized)
        expires_at = read_certificate_expiry(certificate_pem)

        self.certificates.save(CertificateRecord(
            domain=domain,
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
            challenge_type=challenge_type,
            expires_at=expires_at,
            dns_config=dns_config
        ))

        return IssuedCertificate(
            domain=domain,
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
            challenge_type=challenge_type,
            expires_at=expires_at,
            message=message or f"Certificate issued successfully for {domain} via {challenge_type.value}."
        )
