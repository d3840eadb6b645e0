import typing

import acme.messages
import josepy
from cryptography.hazmat.primitives import serialization

# acme only knows the statuses it uses itself; authorizations may also become 'expired'
STATUS_EXPIRED = acme.messages.Status("expired")


def is_valid(obj) -> bool:
    return obj.status == acme.messages.STATUS_VALID


def is_invalid(obj) -> bool:
    return obj.status in [acme.messages.STATUS_INVALID, STATUS_EXPIRED]


def encode_csr(csr):
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


class FinalizeOrder(josepy.JSONObjectWithFields):
    """Message type for order finalization requests."""

    csr: "cryptography.x509.CertificateSigningRequest" = josepy.Field("csr", encoder=encode_csr)
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field("identifiers", omitempty=True)
    """The requested identifiers."""

    @classmethod
    def from_data(cls, identifiers: typing.Iterable[str]) -> "NewOrder":
        """Class factory that turns DNS names into identifier objects.

        :param identifiers: The DNS names to request.
        :return: The new order object.
        """
        return cls(identifiers=[dict(type="dns", value=identifier) for identifier in identifiers])


class Account(josepy.JSONObjectWithFields):
    """Patched :class:`acme.messages.Registration` message type that adds a *kid* field.

    This is the representation of a user account that the :class:`~acmesign.client.AcmeClient` uses internally
    and that is persisted between runs.
    The :attr:`kid` field is sent to the remote server with every request and used for request verification.
    """

    status: str = josepy.Field("status", omitempty=True)
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    """The account's contact info."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""
    kid: str = josepy.Field("kid")
    """The account's key ID, i.e. its URL."""


class AccountKey(josepy.JSONObjectWithFields):
    """The persisted account signing key."""

    key_type: str = josepy.Field("keyType")
    """The JWS algorithm tag, e.g. *ES256* or *RS256*."""
    key_export: str = josepy.Field("keyExport")
    """The PEM (PKCS#8) export of the private key."""


class Order(acme.messages.Order):
    """Patched :class:`acme.messages.Order` message type that adds a *URL* field.

    The *URL* field is populated by copying the *Location* header from responses in the
    :class:`~acmesign.client.AcmeClient`. It is persisted per request so that an interrupted
    issuance can resume the same order.
    """

    url: str = josepy.Field("url", omitempty=True)
    """The order's URL at the CA."""
