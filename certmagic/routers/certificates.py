"""API endpoints for certificate generation, manual http-01 completion and renewal."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..dependencies import get_certificate_store, get_order_coordinator, get_renewal_coordinator
from ..services.errors import CertMagicError
from ..services.models import DnsConfig
from ..services.orders import OrderCoordinator
from ..services.renewal import RenewalCoordinator
from ..services.storage import CertificateStore

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["certificates"])


class DnsConfigModel(BaseModel):
    provider: str = ""
    apiKey: str = ""


class GenerateRequest(BaseModel):
    """Request model for certificate generation."""
    domain: str
    challengeType: str
    dnsConfig: Optional[DnsConfigModel] = None


class VerifyHttpChallengeRequest(BaseModel):
    challengeUrl: str
    orderUrl: str
    domain: str


class OrderRequest(BaseModel):
    """Identifies a pending http-01 order."""
    orderUrl: str
    domain: str


class RenewRequest(BaseModel):
    domain: str


def _error_response(error: Exception, action: str) -> JSONResponse:
    if isinstance(error, CertMagicError):
        log.warning("%s: %s", action, error.message)
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    log.exception("%s: unexpected error", action)
    return JSONResponse(
        {"error": f"{action}: {error}", "code": "internal_error"},
        status_code=500
    )


@router.post("/generate-certificate")
async def generate_certificate(
    request: GenerateRequest,
    orders: OrderCoordinator = Depends(get_order_coordinator)
):
    """
    Generate a certificate.

    dns-01 runs to completion and returns the issued certificate. http-01
    returns the token and content to publish; finish with
    /verify-http-challenge and /finalize-certificate.
    """
    log.info("Received generation request for %s using %s", request.domain, request.challengeType)
    dns_config = None
    if request.dnsConfig:
        dns_config = DnsConfig(provider=request.dnsConfig.provider, api_key=request.dnsConfig.apiKey)

    try:
        result = await orders.issue(request.domain, request.challengeType, dns_config)
        return result.to_response()
    except Exception as e:
        return _error_response(e, "Failed to generate certificate")


@router.post("/verify-http-challenge")
async def verify_http_challenge(
    request: VerifyHttpChallengeRequest,
    orders: OrderCoordinator = Depends(get_order_coordinator)
):
    """
    Ask the ACME server to validate a manually published http-01 response.

    A failed validation answers 400 with status "invalid" and may be retried.
    """
    log.info("Received http-01 verification request for %s", request.domain)
    try:
        outcome = await orders.verify_http_challenge(request.orderUrl, request.challengeUrl, request.domain)
    except Exception as e:
        return _error_response(e, "Failed to verify HTTP challenge")

    body = {"status": outcome.status, "message": outcome.message}
    if not outcome.is_valid:
        return JSONResponse(body, status_code=400)
    return body


@router.post("/finalize-certificate")
async def finalize_certificate(
    request: OrderRequest,
    orders: OrderCoordinator = Depends(get_order_coordinator)
):
    """Finalize a verified http-01 order and return the issued certificate."""
    log.info("Received finalization request for %s, order %s", request.domain, request.orderUrl)
    try:
        issued = await orders.finalize_http_order(request.orderUrl, request.domain)
        return issued.to_response()
    except Exception as e:
        return _error_response(e, "Failed to finalize certificate")


@router.post("/cancel-http-challenge")
async def cancel_http_challenge(
    request: OrderRequest,
    orders: OrderCoordinator = Depends(get_order_coordinator)
):
    """Abandon a pending http-01 order; its challenge response stops being served."""
    try:
        orders.abandon_http_order(request.orderUrl, request.domain)
    except Exception as e:
        return _error_response(e, "Failed to cancel HTTP challenge")
    return {"status": "cancelled", "message": f"Pending order for {request.domain} cancelled."}


@router.post("/renew-certificate")
async def renew_certificate(
    request: RenewRequest,
    renewals: RenewalCoordinator = Depends(get_renewal_coordinator)
):
    """
    Renew a certificate using the challenge type it was issued with.

    dns-01 renewals reuse the stored DNS credentials; http-01 renewals
    return a new pending challenge.
    """
    log.info("Received renewal request for %s", request.domain)
    try:
        result = await renewals.renew(request.domain)
        return result.to_response()
    except Exception as e:
        return _error_response(e, "Failed to renew certificate")


@router.get("/certificates")
async def list_certificates(certificates: CertificateStore = Depends(get_certificate_store)):
    """List stored certificates (without private keys or credentials)."""
    try:
        records = certificates.list_certificates()
    except Exception as e:
        return _error_response(e, "Failed to list certificates")
    return {"certificates": [r.summary() for r in records]}


@router.get("/certificates/renewal-check")
async def renewal_check(
    days: int = Query(30, ge=0, le=365),
    renewals: RenewalCoordinator = Depends(get_renewal_coordinator)
):
    """
    List certificates expiring within `days`.

    Meant to be polled (e.g. from cron) to decide which domains to renew.
    """
    try:
        due = renewals.due_for_renewal(days)
    except Exception as e:
        return _error_response(e, "Failed to check renewals")
    return {
        "withinDays": days,
        "needsRenewalCount": len(due),
        "needsRenewal": [r.summary() for r in due]
    }
