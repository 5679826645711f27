"""Wait for a dns-01 TXT record to be visible on the zone's authoritative nameservers."""

import asyncio
import logging
import time
from typing import List

import dns.exception
import dns.resolver

log = logging.getLogger(__name__)


class DnsPropagationChecker:
    """
    Polls authoritative nameservers with exponential backoff.

    The authoritative servers are found by walking up to the zone apex and
    resolving its NS records. If that lookup fails the system resolver is
    queried instead.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        initial_interval: float = 5.0,
        max_interval: float = 60.0,
        lifetime: float = 10.0
    ):
        self.timeout = timeout
        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self.lifetime = lifetime

    async def wait_for_txt(self, name: str, value: str) -> bool:
        """
        Poll until `name` has a TXT record equal to `value`.

        Returns:
            True once the record is observed, False if the timeout elapsed
        """
        deadline = time.monotonic() + self.timeout
        interval = self.initial_interval
        attempt = 0

        while True:
            attempt += 1
            if await asyncio.to_thread(self._lookup, name, value):
                log.info("TXT record %s visible after %d lookup(s)", name, attempt)
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning("TXT record %s not visible after %.0fs", name, self.timeout)
                return False

            await asyncio.sleep(min(interval, remaining))
            interval = min(interval * 2, self.max_interval)

    def _authoritative_resolver(self, name: str) -> dns.resolver.Resolver:
        resolver = dns.resolver.Resolver()
        resolver.lifetime = self.lifetime

        try:
            zone = dns.resolver.zone_for_name(name)
            ns_ips: List[str] = []
            for rdata in dns.resolver.resolve(zone, "NS"):
                ns_name = rdata.target.to_text()
                for rdtype in ("A", "AAAA"):
                    try:
                        ns_ips.extend(a.address for a in dns.resolver.resolve(ns_name, rdtype))
                    except dns.exception.DNSException:
                        pass
        except dns.exception.DNSException as e:
            log.debug("Authoritative NS lookup failed for %s: %s", name, e)
            return resolver

        if ns_ips:
            resolver = dns.resolver.Resolver(configure=False)
            resolver.nameservers = ns_ips
            resolver.lifetime = self.lifetime
        return resolver

    def _lookup(self, name: str, value: str) -> bool:
        resolver = self._authoritative_resolver(name)
        try:
            answer = resolver.resolve(name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return False
        except dns.exception.DNSException as e:
            log.debug("TXT lookup for %s failed: %s", name, e)
            return False

        return any(self._txt_value(rdata) == value for rdata in answer)

    @staticmethod
    def _txt_value(rdata) -> str:
        return b"".join(rdata.strings).decode("ascii", errors="replace")
