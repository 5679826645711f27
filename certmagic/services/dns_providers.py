"""DNS provider adapters used to publish dns-01 TXT records."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Type

import httpx

from .errors import DnsProviderError, UnsupportedDnsProvider
from .models import DnsConfig

log = logging.getLogger(__name__)


def _candidate_zones(domain: str) -> Iterator[str]:
    """Yield parent names from most to least specific, stopping before the TLD."""
    labels = domain.split(".")
    for i in range(len(labels) - 1):
        yield ".".join(labels[i:])


class DnsProvider(ABC):
    """
    Creates and removes TXT records through a DNS provider's API.

    Adapters are stateless; the credential travels with every call so a
    single adapter instance serves every account of that provider.
    """

    name = ""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    def _http(self, headers: Dict[str, str], base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport
        )

    @abstractmethod
    async def create_record(self, domain: str, name: str, value: str, credentials: DnsConfig) -> None:
        """Publish a TXT record `name` with `value` in the zone containing `domain`."""

    @abstractmethod
    async def remove_record(self, domain: str, name: str, value: str, credentials: DnsConfig) -> None:
        """Remove the TXT record previously created with the same arguments."""


class CloudflareProvider(DnsProvider):
    """Cloudflare API v4, authenticated with an API token."""

    name = "cloudflare"
    API_URL = "https://api.cloudflare.com/client/v4"

    def _client(self, credentials: DnsConfig) -> httpx.AsyncClient:
        return self._http({"Authorization": f"Bearer {credentials.api_key}"}, self.API_URL)

    @staticmethod
    def _result(response: httpx.Response, action: str):
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or not data.get("success", False):
            errors = data.get("errors") or [{"message": f"HTTP {response.status_code}"}]
            message = "; ".join(str(e.get("message", e)) for e in errors)
            raise DnsProviderError(f"Cloudflare {action} failed: {message}")
        return data.get("result")

    async def _zone_id(self, client: httpx.AsyncClient, domain: str) -> str:
        for zone in _candidate_zones(domain):
            response = await client.get("/zones", params={"name": zone})
            result = self._result(response, "zone lookup")
            if result:
                return result[0]["id"]
        raise DnsProviderError(f"No Cloudflare zone found for {domain}")

    async def create_record(self, domain: str, name: str, value: str, credentials: DnsConfig) -> None:
        try:
            async with self._client(credentials) as client:
                zone_id = await self._zone_id(client, domain)
                response = await client.post(f"/zones/{zone_id}/dns_records", json={
                    "type": "TXT",
                    "name": name,
                    "content": value,
                    "ttl": 120
                })
                self._result(response, "record creation")
        except httpx.TransportError as e:
            raise DnsProviderError(f"Could not reach Cloudflare API: {e}") from e
        log.info("Cloudflare: created TXT record %s", name)

    async def remove_record(self, domain: str, name: str, value: str, credentials: DnsConfig) -> None:
        try:
            async with self._client(credentials) as client:
                zone_id = await self._zone_id(client, domain)
                response = await client.get(f"/zones/{zone_id}/dns_records", params={
                    "type": "TXT",
                    "name": name,
                    "content": value
                })
                for record in self._result(response, "record lookup") or []:
                    response = await client.delete(f"/zones/{zone_id}/dns_records/{record['id']}")
                    self._result(response, "record removal")
        except httpx.TransportError as e:
            raise DnsProviderError(f"Could not reach Cloudflare API: {e}") from e
        log.info("Cloudflare: removed TXT record %s", name)


class GoDaddyProvider(DnsProvider):
    """GoDaddy Domains API. The API key is given as "<key>:<secret>"."""

    name = "godaddy"
    API_URL = "https://api.godaddy.com/v1"

    def _client(self, credentials: DnsConfig) -> httpx.AsyncClient:
        key, sep, secret = credentials.api_key.partition(":")
        if not sep or not key or not secret:
            raise DnsProviderError("GoDaddy API key must be given as '<key>:<secret>'")
        return self._http({"Authorization": f"sso-key {key}:{secret}"}, self.API_URL)

    @staticmethod
    def _check(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise DnsProviderError(f"GoDaddy {action} failed: {message}")

    async def _zone(self, client: httpx.AsyncClient, domain: str) -> str:
        for zone in _candidate_zones(domain):
            response = await client.get(f"/domains/{zone}")
            if response.status_code == 200:
                return zone
            if response.status_code != 404:
                self._check(response, "zone lookup")
        raise DnsProviderError(f"No GoDaddy domain found for {domain}")

    @staticmethod
    def _relative(name: str, zone: str) -> str:
        return name[:-(len(zone) + 1)] if name.endswith("." + zone) else name

    async def _records(self, client: httpx.AsyncClient, zone: str, host: str) -> List[Dict]:
        response = await client.get(f"/domains/{zone}/records/TXT/{host}")
        self._check(response, "record lookup")
        return response.json()

    async def create_record(self, domain: str, name: str, value: str, credentials: DnsConfig) -> None:
        try:
            async with self._client(credentials) as client:
                zone = await self._zone(client, domain)
                host = self._relative(name, zone)
                response = await client.patch(f"/domains/{zone}/records", json=[
                    {"type": "TXT", "name": host, "data": value, "ttl": 600}
                ])
                self._check(response, "record creation")
        except httpx.TransportError as e:
            raise DnsProviderError(f"Could not reach GoDaddy API: {e}") from e
        log.info("GoDaddy: created TXT record %s", name)

    async def remove_record(self, domain: str, name: str, value: str, credentials: DnsConfig) -> None:
        try:
            async with self._client(credentials) as client:
                zone = await self._zone(client, domain)
                host = self._relative(name, zone)
                records = await self._records(client, zone, host)
                remaining = [r for r in records if r.get("data") != value]
                if len(remaining) == len(records):
                    return
                if remaining:
                    response = await client.put(f"/domains/{zone}/records/TXT/{host}", json=remaining)
                else:
                    response = await client.delete(f"/domains/{zone}/records/TXT/{host}")
                self._check(response, "record removal")
        except httpx.TransportError as e:
            raise DnsProviderError(f"Could not reach GoDaddy API: {e}") from e
        log.info("GoDaddy: removed TXT record %s", name)


PROVIDERS: Dict[str, Type[DnsProvider]] = {
    CloudflareProvider.name: CloudflareProvider,
    GoDaddyProvider.name: GoDaddyProvider,
}

# Recognised provider identifiers that have no adapter
RETIRED_PROVIDERS = {
    "route53": "Amazon Route 53 is no longer supported; move the zone to a supported provider or use http-01.",
}


class DnsProviderRegistry:
    """Resolves a provider identifier to an adapter instance."""

    def __init__(
        self,
        providers: Optional[Dict[str, Type[DnsProvider]]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._providers = dict(providers if providers is not None else PROVIDERS)
        self.timeout = timeout
        self.transport = transport

    @property
    def supported(self) -> List[str]:
        return sorted(self._providers)

    def get(self, provider: str) -> DnsProvider:
        name = (provider or "").strip().lower()
        provider_cls = self._providers.get(name)
        if provider_cls is None:
            message = f"Unsupported DNS provider: {provider}. Supported: {', '.join(self.supported)}"
            if name in RETIRED_PROVIDERS:
                message += f". {RETIRED_PROVIDERS[name]}"
            raise UnsupportedDnsProvider(message)
        return provider_cls(timeout=self.timeout, transport=self.transport)
