"""Builds the service graph once per process and exposes it to the routers."""

from typing import Optional

from .config import Settings, get_settings
from .services.acme_client import ACMEClient
from .services.challenges import Dns01Strategy, Http01Strategy
from .services.dns_providers import DnsProviderRegistry
from .services.finalizer import CertificateFinalizer
from .services.orders import OrderCoordinator
from .services.propagation import DnsPropagationChecker
from .services.renewal import RenewalCoordinator
from .services.storage import (
    CertificateStore,
    ChallengeResponseStore,
    CredentialStore,
    FileBackend,
    KeyValueBackend,
    PendingOrderStore,
)


class ServiceContainer:
    """
    Owns every long-lived collaborator.

    The ACME client is injected rather than built here when a caller (tests,
    an alternative client) needs to supply its own.
    """

    def __init__(
        self,
        settings: Settings,
        backend: Optional[KeyValueBackend] = None,
        acme=None,
        providers: Optional[DnsProviderRegistry] = None,
        propagation: Optional[DnsPropagationChecker] = None
    ):
        self.settings = settings
        self.backend = backend or FileBackend(settings.data_dir)

        self.credentials = CredentialStore(self.backend)
        self.challenge_responses = ChallengeResponseStore(self.backend)
        self.pending_orders = PendingOrderStore(self.backend, self.challenge_responses)
        self.certificates = CertificateStore(self.backend)

        self.acme = acme or ACMEClient(
            directory_url=settings.directory_url,
            credentials=self.credentials,
            email=settings.account_email,
            timeout=settings.http_timeout,
            poll_attempts=settings.poll_attempts,
            poll_interval=settings.poll_interval
        )
        self.providers = providers or DnsProviderRegistry(timeout=settings.http_timeout)
        self.propagation = propagation or DnsPropagationChecker(
            timeout=settings.dns_propagation_timeout,
            initial_interval=settings.dns_propagation_interval
        )

        self.finalizer = CertificateFinalizer(self.acme, self.certificates)
        self.orders = OrderCoordinator(
            acme=self.acme,
            pending_orders=self.pending_orders,
            providers=self.providers,
            finalizer=self.finalizer,
            dns01=Dns01Strategy(self.acme, self.providers, self.propagation),
            http01=Http01Strategy(self.acme, self.pending_orders, self.finalizer)
        )
        self.renewals = RenewalCoordinator(self.orders, self.certificates)


# Global container instance
_container = None


def get_container() -> ServiceContainer:
    """Get the global service container."""
    global _container
    if _container is None:
        _container = ServiceContainer(get_settings())
    return _container


def get_order_coordinator() -> OrderCoordinator:
    return get_container().orders


def get_renewal_coordinator() -> RenewalCoordinator:
    return get_container().renewals


def get_challenge_responses() -> ChallengeResponseStore:
    return get_container().challenge_responses


def get_certificate_store() -> CertificateStore:
    return get_container().certificates
