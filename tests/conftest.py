"""Shared fixtures: an in-memory ACME server stand-in and a wired service container."""

import copy
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from certmagic import dependencies
from certmagic.config import Settings
from certmagic.dependencies import ServiceContainer
from certmagic.main import app
from certmagic.services.dns_providers import DnsProvider, DnsProviderRegistry
from certmagic.services.errors import AcmeServerError


def make_certificate_pem(domain: str, days: int = 90) -> str:
    """Self-signed leaf certificate standing in for an issued chain."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


class FakeAcmeClient:
    """
    Models the ACME client capability against an in-memory server.

    `validate` decides whether a submitted challenge passes. A failed
    challenge leaves its order pending so the challenge can be retried.
    """

    def __init__(self):
        self.calls = []
        self.orders = {}
        self.authorizations = {}
        self.challenges = {}
        self.challenge_order = {}
        self.completed = []
        self.validate = lambda challenge: True
        self.offered_types = ("http-01", "dns-01")
        self.certificate_days = 90
        self._counter = 0

    async def ensure_account(self):
        self.calls.append("ensure_account")
        return "https://acme.test/acct/1"

    async def create_order(self, domain):
        self.calls.append("create_order")
        self._counter += 1
        n = self._counter
        order_url = f"https://acme.test/order/{n}"
        authz_url = f"https://acme.test/authz/{n}"

        challenges = []
        for kind in self.offered_types:
            url = f"https://acme.test/chall/{n}/{kind}"
            challenge = {
                "type": kind,
                "url": url,
                "token": f"tok{n}-{kind.replace('-', '')}",
                "status": "pending",
            }
            self.challenges[url] = challenge
            self.challenge_order[url] = order_url
            challenges.append(challenge)

        self.authorizations[authz_url] = {
            "identifier": {"type": "dns", "value": domain},
            "status": "pending",
            "challenges": challenges,
        }
        self.orders[order_url] = {
            "url": order_url,
            "status": "pending",
            "identifiers": [{"type": "dns", "value": domain}],
            "authorizations": [authz_url],
            "finalize": order_url + "/finalize",
        }
        return copy.deepcopy(self.orders[order_url])

    async def get_order(self, order_url):
        self.calls.append("get_order")
        return copy.deepcopy(self.orders[order_url])

    async def get_authorizations(self, order):
        self.calls.append("get_authorizations")
        result = []
        for url in order["authorizations"]:
            authz = copy.deepcopy(self.authorizations[url])
            authz["challenges"] = [copy.deepcopy(self.challenges[c["url"]]) for c in authz["challenges"]]
            authz["url"] = url
            result.append(authz)
        return result

    def get_challenge_key_authorization(self, challenge):
        if challenge["type"] == "dns-01":
            return f"digest-{challenge['token']}"
        return f"{challenge['token']}.thumbprint"

    async def get_challenge(self, challenge_url):
        self.calls.append("get_challenge")
        return copy.deepcopy(self.challenges[challenge_url])

    async def complete_challenge(self, challenge):
        self.calls.append("complete_challenge")
        stored = self.challenges[challenge["url"]]
        self.completed.append(challenge["url"])
        if self.validate(stored):
            stored["status"] = "valid"
            stored.pop("error", None)
            self.orders[self.challenge_order[challenge["url"]]]["status"] = "ready"
        else:
            stored["status"] = "invalid"
            stored["error"] = {"detail": "Invalid response from validation target"}
        return copy.deepcopy(stored)

    async def wait_for_valid_status(self, resource_url):
        self.calls.append("wait_for_valid_status")
        return copy.deepcopy(self.challenges[resource_url])

    async def finalize_order(self, order, csr_pem):
        self.calls.append("finalize_order")
        stored = self.orders[order["url"]]
        if stored["status"] != "ready":
            raise AcmeServerError("Order is not ready", detail="orderNotReady")
        stored["status"] = "valid"
        stored["certificate"] = order["url"] + "/cert"
        stored["csr"] = csr_pem
        return copy.deepcopy(stored)

    async def get_certificate(self, order):
        self.calls.append("get_certificate")
        domain = order["identifiers"][0]["value"]
        return make_certificate_pem(domain, self.certificate_days)


class FakeDnsProvider(DnsProvider):
    name = "cloudflare"

    def __init__(self, timeout=30.0, transport=None):
        super().__init__(timeout, transport)
        self.created = []
        self.removed = []
        self.fail_removal = False

    async def create_record(self, domain, name, value, credentials):
        self.created.append((domain, name, value, credentials.api_key))

    async def remove_record(self, domain, name, value, credentials):
        if self.fail_removal:
            raise RuntimeError("provider API unavailable")
        self.removed.append((domain, name, value))


class StaticRegistry(DnsProviderRegistry):
    """Registry that hands out one shared provider instance."""

    def __init__(self, provider):
        super().__init__(providers={provider.name: type(provider)})
        self.provider = provider

    def get(self, provider):
        super().get(provider)
        return self.provider


class FakePropagation:
    def __init__(self, visible=True):
        self.visible = visible
        self.checked = []

    async def wait_for_txt(self, name, value):
        self.checked.append((name, value))
        return self.visible


@pytest.fixture
def fake_acme():
    return FakeAcmeClient()


@pytest.fixture
def dns_provider():
    return FakeDnsProvider()


@pytest.fixture
def propagation():
    return FakePropagation()


@pytest.fixture
def container(tmp_path, fake_acme, dns_provider, propagation):
    settings = Settings(data_dir=tmp_path / "acme-data")
    return ServiceContainer(
        settings,
        acme=fake_acme,
        providers=StaticRegistry(dns_provider),
        propagation=propagation
    )


@pytest.fixture
def client(container):
    overrides = {
        dependencies.get_order_coordinator: lambda: container.orders,
        dependencies.get_renewal_coordinator: lambda: container.renewals,
        dependencies.get_challenge_responses: lambda: container.challenge_responses,
        dependencies.get_certificate_store: lambda: container.certificates,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
