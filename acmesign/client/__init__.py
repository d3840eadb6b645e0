from .exceptions import (
    AcmeClientException,
    AuthorizationInvalid,
    ConfigurationError,
    CouldNotCompleteChallenge,
    OrderInvalid,
    OrderKeyMissing,
    PollingException,
    PollingTimeout,
    StateTerminated,
    UnsupportedChallengeType,
    UnsupportedKeyAlgorithm,
)
from .client import AcmeClient
from .dns_provider import DnsChallengeProvider, DummyProvider
from .resolver import TxtResolver

__all__ = [
    "AcmeClient",
    "AcmeClientException",
    "AuthorizationInvalid",
    "ConfigurationError",
    "CouldNotCompleteChallenge",
    "DnsChallengeProvider",
    "DummyProvider",
    "OrderInvalid",
    "OrderKeyMissing",
    "PollingException",
    "PollingTimeout",
    "StateTerminated",
    "TxtResolver",
    "UnsupportedChallengeType",
    "UnsupportedKeyAlgorithm",
]
