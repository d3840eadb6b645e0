import logging
import typing

import acme.messages
from pydantic_settings import BaseSettings

from acmesign.account import AccountManager
from acmesign.authorization import AuthorizationValidator
from acmesign.client.exceptions import (
    TRANSIENT_ERRORS,
    OrderInvalid,
    OrderKeyMissing,
    PollingException,
    is_transient,
)
from acmesign.models import CertificateRequest, ExportType, IssuedCertificate, Order
from acmesign.models.messages import is_invalid, is_valid
from acmesign.store import AcmeStore, StoreKeys
from acmesign.util import (
    PollingPolicy,
    PrivateKey,
    certificate_matches_key,
    dump_key_pair,
    export_pfx,
    gather_fail_fast,
    generate_csr,
    generate_key_pair,
    load_chain,
    load_key_pair,
    poll_until,
)

logger = logging.getLogger(__name__)

_FINALIZED = (acme.messages.STATUS_PROCESSING, acme.messages.STATUS_VALID)


class OrderOrchestrator:
    """Takes an order from creation to the exported certificate.

    Every durable step is written to the store under the request's id, so that an interrupted
    issuance resumes the same order with the same key instead of starting over.
    """

    class Config(BaseSettings, extra="forbid"):
        max_concurrency: typing.Optional[int] = None
        """Maximum number of authorizations of one order validated at the same time. Unbounded if unset."""

    def __init__(
        self,
        cfg: Config,
        accounts: AccountManager,
        validator: AuthorizationValidator,
        store: AcmeStore,
        polling: PollingPolicy = None,
    ):
        self._cfg = cfg
        self._accounts = accounts
        self._validator = validator
        self._store = store
        self._polling = polling or PollingPolicy()

    @property
    def client(self):
        return self._accounts.client

    async def get_or_create_order(
        self,
        request: CertificateRequest,
        order_url: str = None,
        recreate_if_invalid: bool = True,
    ) -> Order:
        """Fetches the order at the given URL or creates a new one for the request's domains.

        :param request: The certificate request.
        :param order_url: URL of an existing order to continue, e.g. one persisted by an earlier attempt.
        :param recreate_if_invalid: Create a new order if the existing one is *invalid*.
        :return: The order. Its *url* may differ from *order_url* if a new order was created.
        """
        await self._accounts.get_or_create_account()

        if order_url:
            order = await self.client.order_get(order_url)

            if not (recreate_if_invalid and is_invalid(order)):
                logger.info("Loaded order %s (%s) for request %s", order.url, order.status, request.id)
                return order

            logger.info("Order %s is %s, creating a new one", order.url, order.status)

        order = await self.client.order_create(request.domains)
        logger.info("Created order %s for %s", order.url, ", ".join(request.domains))
        return order

    async def create_certificate(self, request: CertificateRequest, order: Order) -> IssuedCertificate:
        """Completes the order and exports its certificate.

        All pending authorizations are validated concurrently, a fresh key pair and CSR are created
        and the order is finalized. The key pair is persisted before the CSR is submitted.
        Orders that were already finalized by an earlier attempt are resumed with the stored key.

        :param request: The certificate request.
        :param order: The order obtained through :meth:`get_or_create_order`.
        :raises:

            * :class:`~acmesign.client.exceptions.AuthorizationInvalid` If any authorization failed.
              The remaining validations are cancelled and their DNS records removed first.
            * :class:`~acmesign.client.exceptions.OrderInvalid` If the order is or became invalid.
            * :class:`~acmesign.client.exceptions.OrderKeyMissing` If the order was finalized with a key that
              is not stored.
            * :class:`~acmesign.client.exceptions.PollingTimeout` If the order did not become valid in time.

        :return: The issued certificate, exported as requested.
        """
        await self._accounts.get_or_create_account()

        private_key = None
        if order.status in _FINALIZED:
            private_key = await self._load_key(request, order)
            logger.info("Resuming finalized order %s", order.url)
        elif is_invalid(order):
            raise OrderInvalid(order)
        else:
            await gather_fail_fast(
                *[self._validator.validate(url) for url in order.authorizations],
                limit=self._cfg.max_concurrency,
            )

            private_key = generate_key_pair(request.key_algorithm, request.key_size)
            csr = generate_csr(request.domains, private_key)

            # the CA may accept the CSR even if its response never arrives
            await self._store.save_raw(dump_key_pair(private_key), StoreKeys.ORDER_CERT_KEY, request.id)
            await self._store.remove(StoreKeys.ORDER_CERT, request.id)

            order = await self.client.order_finalize(order, csr)
            logger.info("Finalized order %s", order.url)

        try:
            order = await poll_until(
                self.client.order_get,
                order.url,
                predicate=is_valid,
                negative_predicate=is_invalid,
                interval=self._polling.interval,
                timeout=self._polling.timeout,
                transient=TRANSIENT_ERRORS,
                transient_predicate=is_transient,
            )
        except PollingException as e:
            raise OrderInvalid(e.obj) from e

        chain = await self._load_chain(request, order, private_key)
        issued = self._export(request, order, chain, private_key, request.export_type)

        await self._store.save_raw(issued.data, StoreKeys.PFX_FILE, request.id)
        logger.info(
            "Exported certificate %s of order %s for request %s, valid until %s",
            issued.subject,
            order.url,
            request.id,
            issued.not_after,
        )

        return issued

    async def export(
        self,
        request: CertificateRequest,
        order_url: str,
        export_type: ExportType = None,
    ) -> IssuedCertificate:
        """Exports the certificate of a finished order again from the stored key and chain.

        :param request: The certificate request the order was created for.
        :param order_url: The order's URL.
        :param export_type: The format to export in. Defaults to the request's export type.
        :raises:

            * :class:`ValueError` If the order is not *valid*.
            * :class:`~acmesign.client.exceptions.OrderKeyMissing` If the order's private key is not stored.

        :return: The exported certificate.
        """
        await self._accounts.get_or_create_account()

        order = await self.client.order_get(order_url)
        if not is_valid(order):
            raise ValueError(f"Order {order_url} is {order.status}, only valid orders can be exported")

        private_key = await self._load_key(request, order)
        chain = await self._load_chain(request, order, private_key)

        return self._export(request, order, chain, private_key, export_type or request.export_type)

    async def _load_key(self, request: CertificateRequest, order: Order) -> PrivateKey:
        data = await self._store.load_raw(StoreKeys.ORDER_CERT_KEY, request.id)
        if data is None:
            raise OrderKeyMissing(order)

        return load_key_pair(data)

    async def _load_chain(self, request: CertificateRequest, order: Order, private_key: PrivateKey) -> bytes:
        chain = await self._store.load_raw(StoreKeys.ORDER_CERT, request.id)

        if chain is not None and not certificate_matches_key(load_chain(chain)[0], private_key):
            logger.warning("Stored certificate of request %s does not match its key, downloading again", request.id)
            chain = None

        if chain is None:
            chain = (await self.client.certificate_get(order)).encode()
            if not certificate_matches_key(load_chain(chain)[0], private_key):
                raise OrderKeyMissing(order)

            await self._store.save_raw(chain, StoreKeys.ORDER_CERT, request.id)
            logger.debug("Downloaded certificate chain of order %s", order.url)

        return chain

    @staticmethod
    def _export(
        request: CertificateRequest,
        order: Order,
        chain: bytes,
        private_key: PrivateKey,
        export_type: ExportType,
    ) -> IssuedCertificate:
        if export_type == ExportType.PFX:
            data = export_pfx(chain, private_key, request.pfx_password, friendly_name=request.domains[0])
        else:
            data = chain

        return IssuedCertificate(
            request_id=request.id,
            order_url=order.url,
            chain=chain,
            certificate=load_chain(chain)[0],
            private_key=private_key,
            export_type=export_type,
            data=data,
        )
