import dataclasses
import enum
import logging
import typing

from acmesign.client.exceptions import OrderInvalid, StateTerminated
from acmesign.models import CertificateRequest, IssuedCertificate
from acmesign.order import OrderOrchestrator
from acmesign.renewal import RenewalChecker
from acmesign.sink import CertificateSink
from acmesign.store import AcmeStore, StoreKeys

logger = logging.getLogger(__name__)


class FlowState(enum.Enum):
    CHECK_RENEWAL = "check_renewal"
    CREATE_CERTIFICATE = "create_certificate"
    TERMINAL = "terminal"


@dataclasses.dataclass
class SignFlowContext:
    """Carries one request through the flow and collects its results."""

    request: CertificateRequest
    force: bool = False
    """Issue a new certificate even if the current one is not due for renewal."""
    certificate: typing.Optional[IssuedCertificate] = None
    """The issued certificate, *None* if no renewal was necessary."""
    location: typing.Optional[str] = None
    """Where the certificate sink stored the certificate."""


class SignFlow:
    """Runs the issuance cycle of a request as an explicit state machine.

    *CHECK_RENEWAL* moves to *CREATE_CERTIFICATE* if a certificate is due, otherwise to *TERMINAL*.
    *CREATE_CERTIFICATE* resumes or creates the request's order, issues the certificate, hands it to
    the sink and moves to *TERMINAL*. The URL of the order in progress is persisted so that a failed
    attempt is resumed by the next run.
    """

    def __init__(
        self,
        renewal: RenewalChecker,
        orders: OrderOrchestrator,
        store: AcmeStore,
        sink: CertificateSink = None,
    ):
        self._renewal = renewal
        self._orders = orders
        self._store = store
        self._sink = sink

    async def transition(self, state: FlowState, context: SignFlowContext) -> FlowState:
        """Performs the work of the given state.

        :raises: :class:`~acmesign.client.exceptions.StateTerminated` If called with the terminal state.
        :return: The next state.
        """
        if state == FlowState.TERMINAL:
            raise StateTerminated(f"Request {context.request.id} has already terminated")

        if state == FlowState.CHECK_RENEWAL:
            if context.force or await self._renewal.check(context.request):
                return FlowState.CREATE_CERTIFICATE

            return FlowState.TERMINAL

        request = context.request

        order_url = await self._store.load_text(StoreKeys.ORDER, request.id)
        order = await self._orders.get_or_create_order(request, order_url)
        if order.url != order_url:
            await self._store.save_raw(order.url, StoreKeys.ORDER, request.id)

        try:
            context.certificate = await self._orders.create_certificate(request, order)
        except OrderInvalid:
            # the order can not be resumed, the next attempt starts with a new one
            await self._store.remove(StoreKeys.ORDER, request.id)
            raise

        await self._store.remove(StoreKeys.ORDER, request.id)

        if self._sink is not None:
            context.location = await self._sink.save(context.certificate)

        return FlowState.TERMINAL

    async def run(self, request: CertificateRequest, force: bool = False) -> SignFlowContext:
        """Drives the request from *CHECK_RENEWAL* to *TERMINAL*.

        :param request: The certificate request.
        :param force: Skip the renewal check.
        :return: The flow's context holding the issued certificate, if any.
        """
        context = SignFlowContext(request=request, force=force)
        state = FlowState.CHECK_RENEWAL

        while state != FlowState.TERMINAL:
            logger.debug("Request %s: %s", request.id, state.value)
            state = await self.transition(state, context)

        return context
