"""Key pair, CSR and certificate helpers."""

import re
from datetime import datetime, timezone
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_PEM_CERT = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
    re.DOTALL
)


def is_valid_domain(domain: str) -> bool:
    """
    Check that a name is a plain (non-wildcard) DNS host name.

    Requires at least two labels and an alphabetic top-level label.
    """
    if not domain or len(domain) > 253:
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    if not all(_LABEL.match(label) for label in labels):
        return False
    return labels[-1].isalpha() and len(labels[-1]) >= 2


def generate_private_key() -> Tuple[rsa.RSAPrivateKey, str]:
    """Generate a new RSA key pair and its PKCS#8 PEM encoding."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048
    )

    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode()

    return private_key, private_key_pem


def generate_key_and_csr(domain: str) -> Tuple[str, str]:
    """
    Generate a fresh certificate key and a CSR for a single domain.

    Args:
        domain: Domain name used as CN and the only SAN entry

    Returns:
        Tuple of (private_key_pem, csr_pem)
    """
    key, key_pem = generate_private_key()

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, domain)
        ]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain)]),
            critical=False
        )
        .sign(key, hashes.SHA256())
    )

    csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode()

    return key_pem, csr_pem


def csr_pem_to_der(csr_pem: str) -> bytes:
    csr = x509.load_pem_x509_csr(csr_pem.encode())
    return csr.public_bytes(serialization.Encoding.DER)


def read_certificate_expiry(certificate_pem: str) -> datetime:
    """
    Return the notAfter time of the leaf certificate in a PEM chain.

    The leaf is the first certificate in the chain, as served by ACME.
    """
    match = _PEM_CERT.search(certificate_pem)
    if not match:
        raise ValueError("No PEM certificate found in chain")

    cert = x509.load_pem_x509_certificate(match.group(0).encode())
    expires = cert.not_valid_after_utc
    return expires.astimezone(timezone.utc)
