import pytest

from acmesign.account import AccountManager
from acmesign.authorization import AuthorizationValidator
from acmesign.challenge import ChallengeCoordinator
from acmesign.models import CertificateRequest
from acmesign.order import OrderOrchestrator
from acmesign.store import MemoryAcmeStore
from acmesign.util import PollingPolicy
from .fakes import FakeAcmeClient, FakeDnsProvider, FakeResolver


@pytest.fixture
def polling():
    return PollingPolicy(interval=0.01, timeout=0.3)


@pytest.fixture
def ca():
    return FakeAcmeClient()


@pytest.fixture
def provider():
    return FakeDnsProvider()


@pytest.fixture
def resolver(provider):
    return FakeResolver(provider)


@pytest.fixture
def store():
    return MemoryAcmeStore()


@pytest.fixture
def account_config():
    return AccountManager.Config(
        directory=f"{FakeAcmeClient.BASE}/directory",
        contact=["hostmaster@example.com"],
        accept_terms_of_service=True,
    )


@pytest.fixture
def accounts(account_config, ca, store):
    return AccountManager(account_config, ca, store)


@pytest.fixture
def coordinator(ca, provider, resolver, polling):
    return ChallengeCoordinator(ca, provider, resolver, polling)


@pytest.fixture
def validator(ca, coordinator, polling):
    return AuthorizationValidator(ca, coordinator, polling)


@pytest.fixture
def orders(accounts, validator, store, polling):
    return OrderOrchestrator(OrderOrchestrator.Config(), accounts, validator, store, polling)


@pytest.fixture
def cert_request():
    return CertificateRequest(
        id="www",
        domains=["a.example.com", "b.example.com"],
        pfx_password="secret",
    )
