import asyncio
import logging
import ssl
import typing
from dataclasses import dataclass

import acme.messages
import josepy
from acme import jws
from aiohttp import ClientSession, ClientResponseError

import acmesign.util
from acmesign.models import messages
from acmesign.version import __version__

logger = logging.getLogger(__name__)


@dataclass
class ExternalAccountBindingCredentials:
    """Stores external account binding credentials to later create a binding JWS using
    :class:`~acme.messages.ExternalAccountBinding`.
    """

    kid: str
    """The external account binding's key identifier"""
    hmac_key: str
    """The external account binding's symmetric encryption key"""

    def create_eab(self, public_key: josepy.jwk.JWK, directory: dict) -> dict:
        """Creates an external account binding from the stored credentials.

        :param public_key: The account's public key
        :param directory: The ACME server's directory
        :return: The JWS representing the external account binding
        """
        if self.kid and self.hmac_key:
            return acme.messages.ExternalAccountBinding.from_data(public_key, self.kid, self.hmac_key, directory)
        else:
            raise ValueError("Must specify both kid and hmac_key")


class AcmeClient:
    """ACME compliant client.

    Implements the protocol operations the issuance engine drives: directory and nonce handling,
    account registration, orders, authorizations, challenges, finalization and certificate download.
    Requests are signed with the account key set through :meth:`use_account_key`.
    """

    FINALIZE_DELAY = 3.0
    """The delay in seconds between finalization attemps."""
    FINALIZE_RETRIES = 10
    """The number of times finalization is retried while the server reports *orderNotReady*."""
    INVALID_NONCE_RETRIES = 5
    """The number of times the client should retry when the server returns the error *badNonce*."""

    def __init__(
        self,
        *,
        directory_url: str,
        server_cert: str = None,
    ):
        """Creates an :class:`AcmeClient` instance.

        :param directory_url: The ACME server's directory
        :param server_cert: Path of the server certificate to add to the SSL context
        """
        self._ssl_context = ssl.create_default_context()

        if server_cert:
            # Add our self-signed server cert for testing purposes.
            self._ssl_context.load_verify_locations(cafile=server_cert)

        self._session: typing.Optional[ClientSession] = None

        self.directory_url = directory_url
        self.directory = dict()

        self._private_key = None
        self._alg = None
        self._nonces = set()
        self._account: typing.Optional[messages.Account] = None

    @property
    def account(self) -> typing.Optional[messages.Account]:
        """The account that requests are made on behalf of.

        Setting a persisted account restores it without contacting the server.
        """
        return self._account

    @account.setter
    def account(self, account: messages.Account):
        self._account = account

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(headers={"User-Agent": f"acmesign Client {__version__}"})
        return self._session

    def use_account_key(self, key: josepy.jwk.JWK, alg: josepy.jwa.JWASignature) -> None:
        """Sets the key that signs all subsequent requests."""
        self._private_key = key
        self._alg = alg

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        if self._session is not None:
            await self._session.close()

    async def directory_get(self) -> dict:
        """Fetches the ACME directory and stores it for subsequent requests.

        :return: The directory, mapping resource names to URLs.
        """
        async with self.session.get(self.directory_url, ssl=self._ssl_context) as resp:
            resp.raise_for_status()
            self.directory = await resp.json()

        return self.directory

    async def account_register(
        self,
        email: str = None,
        terms_of_service_agreed: bool = True,
        kid: str = None,
        hmac_key: str = None,
    ) -> messages.Account:
        """Registers an account with the CA.

        Also sends the given contact information and stores the account internally
        for subsequent requests.
        If the account key is already registered, then the account is only queried.

        :param email: The contact email
        :param terms_of_service_agreed: Whether the CA's terms of service are accepted
        :param kid: The external account binding's key identifier
        :param hmac_key: The external account binding's symmetric encryption key
        :raises: :class:`acme.messages.Error` If the server rejects any of the contact information, the private
            key, or the external account binding.
        :return: The registered account.
        """
        external_account_binding = None
        if kid or hmac_key:
            try:
                external_account_binding = ExternalAccountBindingCredentials(kid, hmac_key).create_eab(
                    self._private_key.public_key(), self.directory
                )
            except ValueError:
                logger.warning(
                    "The external account binding credentials are invalid, "
                    "i.e. the kid or the hmac_key was not supplied. Trying without EAB."
                )

        reg = acme.messages.Registration.from_data(
            email=email,
            terms_of_service_agreed=terms_of_service_agreed,
            external_account_binding=external_account_binding,
        )

        self._account = None  # Otherwise the kid is sent instead of the JWK.
        resp, account_obj = await self._signed_request(reg, self.directory["newAccount"])
        account_obj["kid"] = resp.headers["Location"]
        self._account = messages.Account.from_json(account_obj)
        return self._account

    async def account_lookup(self) -> messages.Account:
        """Looks up an account using the stored private key.

        Also stores the account internally for subsequent requests.

        :raises: :class:`acme.messages.Error` If no account associated with the private key exists.
        :return: The account.
        """
        reg = acme.messages.Registration.from_data(terms_of_service_agreed=True, only_return_existing=True)

        self._account = None  # Otherwise the kid is sent instead of the JWK. Results in the request failing.
        resp, account_obj = await self._signed_request(reg, self.directory["newAccount"])
        account_obj["kid"] = resp.headers["Location"]
        self._account = messages.Account.from_json(account_obj)
        return self._account

    async def order_create(self, identifiers: typing.Iterable[str]) -> messages.Order:
        """Creates a new order with the given identifiers.

        :param identifiers: The fully qualified domain names that the order should contain.
        :raises: :class:`acme.messages.Error` If the server is unwilling to create an order with the requested
            identifiers.
        :returns: The new order.
        """
        order = messages.NewOrder.from_data(identifiers)

        resp, order_obj = await self._signed_request(order, self.directory["newOrder"])
        order_obj["url"] = resp.headers["Location"]
        return messages.Order.from_json(order_obj)

    async def order_get(self, order_url: str) -> messages.Order:
        """Fetches an order given its URL.

        :param order_url: The order's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the order does not exist.
        :return: The fetched order.
        """
        resp, order = await self._signed_request(None, order_url)
        order["url"] = order_url
        return messages.Order.from_json(order)

    async def order_finalize(
        self, order: messages.Order, csr: "cryptography.x509.CertificateSigningRequest"
    ) -> messages.Order:
        """Submits the CSR to the order's finalize URL.

        Does not wait for the order to become valid, the caller polls :meth:`order_get` for that.

        :param order: Order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises:

            * :class:`acme.messages.Error` If the server is unwilling to finalize the order.
            * :class:`aiohttp.ClientResponseError` If the order does not exist.

        :returns: The order as returned by the finalize request.
        """
        cert_req = messages.FinalizeOrder(csr=csr)

        tries = self.FINALIZE_RETRIES
        while True:
            try:
                resp, order_obj = await self._signed_request(cert_req, order.finalize)
                break
            except acme.messages.Error as e:
                # Make sure that the order is in state READY before moving on.
                if e.code == "orderNotReady" and tries > 1:
                    tries -= 1
                    await asyncio.sleep(self.FINALIZE_DELAY)
                else:
                    raise e

        order_obj["url"] = resp.headers.get("Location", order.url)
        return messages.Order.from_json(order_obj)

    async def authorization_get(self, authorization_url: str) -> acme.messages.Authorization:
        """Fetches an authorization given its URL.

        :param authorization_url: The authorization's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the authorization does not exist.
        :return: The fetched authorization.
        """
        resp, authorization = await self._signed_request(None, authorization_url)
        return acme.messages.Authorization.from_json(authorization)

    def challenge_validation(
        self,
        identifier: acme.messages.Identifier,
        challenge: acme.messages.ChallengeBody,
    ) -> typing.Tuple[str, str]:
        """Computes the DNS record that answers the given *dns-01* challenge.

        :param identifier: The identifier of the challenge's authorization.
        :param challenge: The *dns-01* challenge.
        :return: The record name and the key authorization digest it must contain.
        """
        name = challenge.chall.validation_domain_name(identifier.value)
        text = challenge.chall.validation(self._private_key)
        return name, text

    async def challenge_validate(self, challenge_url: str) -> None:
        """Initiates the given challenge's validation.

        :param challenge_url: The challenge's URL.
        :raises: :class:`aiohttp.ClientResponseError` If the challenge does not exist.
        """
        await self._signed_request(None, challenge_url, post_as_get=False)

    async def certificate_get(self, order: messages.Order) -> str:
        """Downloads the given order's certificate.

        :param order: The order whose certificate to download.
        :raises:

            * :class:`aiohttp.ClientResponseError` If the certificate does not exist.
            * :class:`ValueError` If the order has not been finalized yet, i.e. the certificate \
                property is *None*.

        :return: The order's certificate chain encoded as PEM.
        """
        if not order.certificate:
            raise ValueError("This order has not been finalized")

        _, pem = await self._signed_request(None, order.certificate)

        return pem

    async def _get_nonce(self):
        async def fetch_nonce():
            async with self.session.head(self.directory["newNonce"], ssl=self._ssl_context) as resp:
                logger.debug("Storing new nonce %s", resp.headers["Replay-Nonce"])
                return resp.headers["Replay-Nonce"]

        try:
            return self._nonces.pop()
        except KeyError:
            return await acmesign.util.poll_until(
                fetch_nonce,
                predicate=lambda x: x,
                interval=5.0,
                timeout=30.0,
                transient=(Exception,),
            )

    def _wrap_in_jws(self, obj: typing.Optional[josepy.JSONDeSerializable], nonce, url, post_as_get):
        if post_as_get:
            jobj = obj.json_dumps(indent=2).encode() if obj else b""
        else:
            jobj = b"{}"
        kwargs = {"nonce": josepy.b64decode(nonce), "url": url}
        if self._account is not None:
            kwargs["kid"] = self._account.kid
        return jws.JWS.sign(jobj, key=self._private_key, alg=self._alg, **kwargs).json_dumps(indent=2)

    async def _signed_request(self, obj: typing.Optional[josepy.JSONDeSerializable], url, post_as_get=True):
        tries = self.INVALID_NONCE_RETRIES
        while tries > 0:
            try:
                payload = self._wrap_in_jws(obj, await self._get_nonce(), url, post_as_get)
                return await self._make_request(payload, url)
            except acme.messages.Error as e:
                if e.code == "badNonce" and tries > 1:
                    tries -= 1
                    continue
                raise e

    async def _make_request(self, payload, url):
        async with self.session.post(
            url,
            data=payload,
            headers={"Content-Type": "application/jose+json"},
            ssl=self._ssl_context,
        ) as resp:
            if "Replay-Nonce" in resp.headers:
                self._nonces.add(resp.headers["Replay-Nonce"])

            if 200 <= resp.status < 300 and resp.content_type == "application/json":
                data = await resp.json()
            elif resp.content_type == "application/problem+json":
                raise acme.messages.Error.from_json(await resp.json())
            elif resp.status < 200 or resp.status >= 300:
                raise ClientResponseError(resp.request_info, resp.history, status=resp.status)
            else:
                data = await resp.text()

            logger.debug(data)
            return resp, data
