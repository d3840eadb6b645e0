import dataclasses
import datetime
import enum
import typing

import pydantic
from cryptography import x509


class KeyAlgorithm(str, enum.Enum):
    """The key pair algorithms that certificates and accounts may use.

    Subclassing :class:`str` simplifies reading the algorithm from config files.
    """

    RSA = "rsa"
    EC = "ec"


class ExportType(str, enum.Enum):
    """The formats an issued certificate can be exported in."""

    PFX = "pfx"
    """PKCS#12 archive containing the chain and the private key, optionally password protected."""
    PEM = "pem"
    """The raw PEM chain as downloaded from the CA."""


class ChallengeType(str, enum.Enum):
    """The challenge types that can be answered.

    Subclassing :class:`str` allows comparing members to the *type* field of challenges directly.
    """

    DNS_01 = "dns-01"
    """The ACME *dns-01* challenge type.
    See `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_"""


class CertificateRequest(pydantic.BaseModel, frozen=True):
    """One issuance intent. Immutable for the duration of an issuance attempt."""

    id: str
    """Opaque request identity. Persisted state is keyed by it."""
    domains: typing.Tuple[str, ...]
    """The requested DNS names. The first one becomes the common name."""
    pfx_password: typing.Optional[str] = None
    key_algorithm: KeyAlgorithm = KeyAlgorithm.EC
    key_size: typing.Optional[int] = None
    """RSA modulus or EC curve size. Defaults to 2048 (RSA) or 256 (EC)."""
    export_type: ExportType = ExportType.PFX

    @pydantic.field_validator("domains", mode="before")
    @classmethod
    def _deduplicate(cls, value):
        if isinstance(value, str):
            value = [value]

        names = [name.strip() for name in value]
        names = list(dict.fromkeys(name for name in names if name))
        if not names:
            raise ValueError("At least one domain name is required")

        return tuple(names)

    @pydantic.field_validator("pfx_password")
    @classmethod
    def _empty_password(cls, value):
        return value or None


@dataclasses.dataclass(frozen=True)
class DnsChallengeRecord:
    """A TXT record published to answer a *dns-01* challenge."""

    name: str
    """The record's fully qualified name, e.g. *_acme-challenge.example.com*."""
    value: str
    """The expected TXT value."""
    handle: typing.Optional[str] = None
    """Provider specific identifier used for removal. *None* if nothing was created."""


@dataclasses.dataclass
class IssuedCertificate:
    """The final output of an issuance cycle."""

    request_id: str
    order_url: str
    chain: bytes
    """The PEM chain as downloaded from the CA, leaf first."""
    certificate: x509.Certificate
    private_key: typing.Any
    export_type: ExportType
    data: bytes
    """The certificate exported as requested (PFX archive or PEM chain)."""

    @property
    def not_before(self) -> datetime.datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()
