"""Tests for the order coordinator."""

import asyncio

import pytest

from certmagic.services.errors import (
    ChallengeUnavailable,
    DomainMismatch,
    InvalidDomain,
    InvalidRequest,
    IssuanceInProgress,
    MissingCredentials,
    OrderNotReady,
    PendingOrderNotFound,
    UnsupportedDnsProvider,
)
from certmagic.services.models import ChallengeType, DnsConfig, IssuedCertificate, PendingChallenge
from certmagic.services.orders import DomainLocks, normalize_domain, parse_challenge_type

CREDENTIALS = DnsConfig(provider="cloudflare", api_key="cf-token")


class TestInputParsing:
    """Test cases for request normalization."""

    def test_normalize_domain(self):
        """Test domains are trimmed and lowercased."""
        assert normalize_domain("  WWW.Example.COM. ") == "www.example.com"

    @pytest.mark.parametrize("domain", ["", "localhost", "*.example.com", "exa_mple.com"])
    def test_invalid_domain(self, domain):
        """Test malformed domains are rejected."""
        with pytest.raises(InvalidDomain):
            normalize_domain(domain)

    def test_parse_challenge_type(self):
        """Test both challenge types parse and anything else is rejected."""
        assert parse_challenge_type("dns-01") == ChallengeType.DNS01
        assert parse_challenge_type("http-01") == ChallengeType.HTTP01
        with pytest.raises(InvalidRequest):
            parse_challenge_type("tls-alpn-01")


class TestDomainLocks:
    """Test cases for DomainLocks."""

    @pytest.mark.asyncio
    async def test_busy_domain_refused(self):
        """Test a second holder of the same domain is refused, others proceed."""
        locks = DomainLocks()

        async with locks.hold("example.com"):
            with pytest.raises(IssuanceInProgress):
                async with locks.hold("example.com"):
                    pass
            async with locks.hold("other.com"):
                pass

        async with locks.hold("example.com"):
            pass

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        """Test no lock is kept for a domain once its holder is done."""
        locks = DomainLocks()

        async with locks.hold("example.com"):
            assert list(locks._locks) == ["example.com"]
        with pytest.raises(RuntimeError):
            async with locks.hold("other.com"):
                raise RuntimeError("issuance failed")

        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_refused_request_keeps_holder_lock(self):
        """Test a refused second request does not release the first holder's lock."""
        locks = DomainLocks()

        async with locks.hold("example.com"):
            with pytest.raises(IssuanceInProgress):
                async with locks.hold("example.com"):
                    pass
            assert "example.com" in locks._locks
            with pytest.raises(IssuanceInProgress):
                async with locks.hold("example.com"):
                    pass

    @pytest.mark.asyncio
    async def test_coordinator_leaves_no_locks(self, container):
        """Test issuance and http-01 finalization leave the lock table empty."""
        pending = await container.orders.issue("example.com", "http-01")
        await container.orders.verify_http_challenge(pending.order_url, pending.challenge_url, "example.com")
        await container.orders.finalize_http_order(pending.order_url, "example.com")

        assert container.orders.locks._locks == {}


class TestDns01Issue:
    """Test cases for dns-01 issuance."""

    @pytest.mark.asyncio
    async def test_issues_and_stores(self, container, fake_acme, dns_provider):
        """Test dns-01 issuance finishes in one call and stores the credentials."""
        result = await container.orders.issue("Example.com", "dns-01", CREDENTIALS)

        assert isinstance(result, IssuedCertificate)
        assert result.domain == "example.com"
        assert result.certificate_pem.startswith("-----BEGIN CERTIFICATE-----")
        assert "automated DNS-01" in result.message
        assert len(dns_provider.removed) == 1

        stored = container.certificates.get("example.com")
        assert stored.challenge_type == ChallengeType.DNS01
        assert stored.dns_config == CREDENTIALS
        assert stored.private_key_pem == result.private_key_pem

    @pytest.mark.asyncio
    async def test_missing_credentials(self, container, fake_acme):
        """Test dns-01 without credentials fails before contacting the server."""
        with pytest.raises(MissingCredentials):
            await container.orders.issue("example.com", "dns-01", DnsConfig("cloudflare", ""))

        assert fake_acme.calls == []

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, container, fake_acme):
        """Test an unknown provider fails before contacting the server."""
        with pytest.raises(UnsupportedDnsProvider):
            await container.orders.issue("example.com", "dns-01", DnsConfig("route53", "key"))

        assert fake_acme.calls == []

    @pytest.mark.asyncio
    async def test_challenge_not_offered(self, container, fake_acme):
        """Test a missing challenge type is reported."""
        fake_acme.offered_types = ("http-01",)

        with pytest.raises(ChallengeUnavailable):
            await container.orders.issue("example.com", "dns-01", CREDENTIALS)

    @pytest.mark.asyncio
    async def test_concurrent_issue_refused(self, container, propagation):
        """Test a second request for a busy domain gets IssuanceInProgress."""
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_wait(name, value):
            entered.set()
            await release.wait()
            return True

        propagation.wait_for_txt = slow_wait

        first = asyncio.create_task(container.orders.issue("example.com", "dns-01", CREDENTIALS))
        await entered.wait()

        with pytest.raises(IssuanceInProgress):
            await container.orders.issue("example.com", "http-01")

        release.set()
        assert isinstance(await first, IssuedCertificate)


class TestHttp01Flow:
    """Test cases for the three-phase http-01 flow."""

    @pytest.mark.asyncio
    async def test_full_flow(self, container, fake_acme):
        """Test initiate, verify and finalize through the coordinator."""
        orders = container.orders

        pending = await orders.issue("example.com", "http-01")
        assert isinstance(pending, PendingChallenge)
        assert container.challenge_responses.get(pending.token) == pending.key_authorization

        outcome = await orders.verify_http_challenge(pending.order_url, pending.challenge_url, "example.com")
        assert outcome.is_valid

        issued = await orders.finalize_http_order(pending.order_url, "example.com")
        assert issued.challenge_type == ChallengeType.HTTP01
        assert "manual HTTP-01" in issued.message
        assert container.pending_orders.get(pending.order_url) is None
        assert container.challenge_responses.get(pending.token) is None
        assert container.certificates.get("example.com").challenge_type == ChallengeType.HTTP01

    @pytest.mark.asyncio
    async def test_credentials_ignored(self, container, dns_provider):
        """Test DNS credentials sent with an http-01 request are not used or stored."""
        pending = await container.orders.issue("example.com", "http-01", CREDENTIALS)
        await container.orders.verify_http_challenge(pending.order_url, pending.challenge_url, "example.com")
        await container.orders.finalize_http_order(pending.order_url, "example.com")

        assert dns_provider.created == []
        assert container.certificates.get("example.com").dns_config is None

    @pytest.mark.asyncio
    async def test_finalize_before_verify(self, container, fake_acme):
        """Test finalization of an unverified order is refused."""
        pending = await container.orders.issue("example.com", "http-01")

        with pytest.raises(OrderNotReady):
            await container.orders.finalize_http_order(pending.order_url, "example.com")

        assert container.pending_orders.get(pending.order_url) is not None

    @pytest.mark.asyncio
    async def test_unknown_order(self, container):
        """Test phases on an unknown order report PendingOrderNotFound."""
        with pytest.raises(PendingOrderNotFound):
            await container.orders.verify_http_challenge(
                "https://acme.test/order/99", "https://acme.test/chall/99/http-01", "example.com"
            )
        with pytest.raises(PendingOrderNotFound):
            await container.orders.finalize_http_order("https://acme.test/order/99", "example.com")

    @pytest.mark.asyncio
    async def test_domain_mismatch(self, container):
        """Test a request naming another domain is rejected."""
        pending = await container.orders.issue("example.com", "http-01")

        with pytest.raises(DomainMismatch):
            await container.orders.finalize_http_order(pending.order_url, "other.com")

    @pytest.mark.asyncio
    async def test_challenge_url_mismatch(self, container):
        """Test verification with a challenge URL from another order is rejected."""
        pending = await container.orders.issue("example.com", "http-01")

        with pytest.raises(PendingOrderNotFound):
            await container.orders.verify_http_challenge(
                pending.order_url, "https://acme.test/chall/other", "example.com"
            )

    @pytest.mark.asyncio
    async def test_missing_fields(self, container):
        """Test empty identifiers are rejected as invalid requests."""
        with pytest.raises(InvalidRequest):
            await container.orders.verify_http_challenge("", "", "example.com")
        with pytest.raises(InvalidRequest):
            await container.orders.finalize_http_order("https://acme.test/order/1", "")

    @pytest.mark.asyncio
    async def test_abandon(self, container):
        """Test abandoning an order removes the pending pair."""
        pending = await container.orders.issue("example.com", "http-01")

        container.orders.abandon_http_order(pending.order_url, "example.com")

        assert container.pending_orders.get(pending.order_url) is None
        assert container.challenge_responses.get(pending.token) is None
        with pytest.raises(PendingOrderNotFound):
            container.orders.abandon_http_order(pending.order_url, "example.com")

    @pytest.mark.asyncio
    async def test_failed_initiation_leaves_nothing(self, container, fake_acme, monkeypatch):
        """Test a failure after the order was stored removes the pending pair."""
        http01 = container.orders.http01
        original = http01.initiate

        async def failing_initiate(attempt):
            await original(attempt)
            raise RuntimeError("connection dropped")

        monkeypatch.setattr(http01, "initiate", failing_initiate)

        with pytest.raises(RuntimeError):
            await container.orders.issue("example.com", "http-01")

        assert container.pending_orders.list_orders() == []
        assert container.backend.keys("challenges") == []
