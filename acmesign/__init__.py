from .client import AcmeClient
from .account import AccountManager
from .challenge import ChallengeCoordinator
from .authorization import AuthorizationValidator
from .order import OrderOrchestrator
from .renewal import RenewalChecker
from .flow import FlowState, SignFlow, SignFlowContext
from .models import CertificateRequest, IssuedCertificate
from .version import __version__
from .plugin_base import PluginRegistry

__all__ = [
    "AccountManager",
    "AcmeClient",
    "AuthorizationValidator",
    "CertificateRequest",
    "ChallengeCoordinator",
    "FlowState",
    "IssuedCertificate",
    "OrderOrchestrator",
    "PluginRegistry",
    "RenewalChecker",
    "SignFlow",
    "SignFlowContext",
]
__version__ = __version__
