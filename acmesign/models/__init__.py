from .messages import Account, AccountKey, FinalizeOrder, NewOrder, Order
from .request import (
    CertificateRequest,
    ChallengeType,
    DnsChallengeRecord,
    ExportType,
    IssuedCertificate,
    KeyAlgorithm,
)

__all__ = [
    "Account",
    "AccountKey",
    "CertificateRequest",
    "ChallengeType",
    "DnsChallengeRecord",
    "ExportType",
    "FinalizeOrder",
    "IssuedCertificate",
    "KeyAlgorithm",
    "NewOrder",
    "Order",
]
