"""Data records exchanged between the issuance services and the stores."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ChallengeType(str, Enum):
    DNS01 = "dns-01"
    HTTP01 = "http-01"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class DnsConfig:
    """DNS provider identifier plus the credential used to reach its API."""

    provider: str
    api_key: str

    def to_dict(self) -> Dict[str, str]:
        return {"provider": self.provider, "apiKey": self.api_key}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DnsConfig"]:
        if not data:
            return None
        return cls(provider=data.get("provider", ""), api_key=data.get("apiKey", ""))


@dataclass
class PendingChallenge:
    """Instructions returned to the caller when an http-01 order is waiting on them."""

    domain: str
    token: str
    key_authorization: str
    challenge_url: str
    order_url: str
    message: str = ""

    def to_response(self) -> Dict[str, str]:
        return {
            "status": "http-01-pending",
            "domain": self.domain,
            "token": self.token,
            "keyAuthorization": self.key_authorization,
            "challengeUrl": self.challenge_url,
            "orderUrl": self.order_url,
            "message": self.message,
        }


@dataclass
class IssuedCertificate:
    domain: str
    certificate_pem: str
    private_key_pem: str
    challenge_type: ChallengeType
    expires_at: datetime
    message: str = ""

    def to_response(self) -> Dict[str, str]:
        return {
            "status": "issued",
            "domain": self.domain,
            "certificatePem": self.certificate_pem,
            "privateKeyPem": self.private_key_pem,
            "challengeType": self.challenge_type.value,
            "expiresAt": self.expires_at.isoformat(),
            "message": self.message,
        }


@dataclass
class VerificationOutcome:
    status: str  # valid | invalid
    message: str

    @property
    def is_valid(self) -> bool:
        return self.status == "valid"


@dataclass
class PendingOrderRecord:
    """
    Everything needed to resume a manual http-01 order in a later request.

    The order's private key and CSR live here until finalization; they are
    never regenerated, so the issued certificate matches the stored key.
    """

    order_url: str
    domain: str
    challenge_type: ChallengeType
    challenge_url: str
    token: str
    key_authorization: str
    private_key_pem: str
    csr_pem: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, str]:
        return {
            "orderUrl": self.order_url,
            "domain": self.domain,
            "challengeType": self.challenge_type.value,
            "challengeUrl": self.challenge_url,
            "token": self.token,
            "keyAuthorization": self.key_authorization,
            "privateKeyPem": self.private_key_pem,
            "csrPem": self.csr_pem,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingOrderRecord":
        return cls(
            order_url=data["orderUrl"],
            domain=data["domain"],
            challenge_type=ChallengeType(data.get("challengeType", "http-01")),
            challenge_url=data["challengeUrl"],
            token=data["token"],
            key_authorization=data["keyAuthorization"],
            private_key_pem=data["privateKeyPem"],
            csr_pem=data["csrPem"],
            created_at=_parse_timestamp(data["createdAt"]) if data.get("createdAt") else _utcnow(),
        )


@dataclass
class CertificateRecord:
    """Most recent certificate for a domain and how it was obtained."""

    domain: str
    certificate_pem: str
    private_key_pem: str
    challenge_type: ChallengeType
    expires_at: datetime
    dns_config: Optional[DnsConfig] = None
    issued_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "certificatePem": self.certificate_pem,
            "privateKeyPem": self.private_key_pem,
            "challengeType": self.challenge_type.value,
            "dnsConfig": self.dns_config.to_dict() if self.dns_config else None,
            "expiresAt": self.expires_at.isoformat(),
            "issuedAt": self.issued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        return cls(
            domain=data["domain"],
            certificate_pem=data["certificatePem"],
            private_key_pem=data["privateKeyPem"],
            challenge_type=ChallengeType(data["challengeType"]),
            expires_at=_parse_timestamp(data["expiresAt"]),
            dns_config=DnsConfig.from_dict(data.get("dnsConfig")),
            issued_at=_parse_timestamp(data["issuedAt"]) if data.get("issuedAt") else _utcnow(),
        )

    def summary(self) -> Dict[str, Any]:
        """Public view of the record, without key material or credentials."""
        remaining = self.expires_at - _utcnow()
        return {
            "domain": self.domain,
            "challengeType": self.challenge_type.value,
            "dnsProvider": self.dns_config.provider if self.dns_config else None,
            "issuedAt": self.issued_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "daysUntilExpiry": remaining.days,
        }
