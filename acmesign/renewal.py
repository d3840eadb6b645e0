import datetime
import logging
import typing

from acmesign.models import CertificateRequest
from acmesign.store import AcmeStore, StoreKeys
from acmesign.util import load_certificate

logger = logging.getLogger(__name__)


class RenewalChecker:
    """Decides whether a request needs a new certificate.

    A certificate is renewed once it has expired, or *renew_before* ahead of its expiry if set.
    """

    def __init__(self, store: AcmeStore = None, renew_before: datetime.timedelta = datetime.timedelta(0)):
        self._store = store
        self._renew_before = renew_before

    def needs_renewal(
        self,
        data: typing.Optional[bytes],
        password: typing.Optional[str] = None,
        now: datetime.datetime = None,
    ) -> bool:
        """Checks a previously issued certificate.

        :param data: The certificate as PFX archive or PEM chain, *None* if there is none.
        :param password: The PFX password, if any.
        :param now: The point in time to check against. Defaults to the current time.
        :return: True if there is no certificate or it is due for renewal.
        """
        if not data:
            return True

        certificate = load_certificate(data, password)
        now = now or datetime.datetime.now(datetime.timezone.utc)

        return certificate.not_valid_after_utc - self._renew_before <= now

    async def check(self, request: CertificateRequest) -> bool:
        """Checks the certificate last exported for the given request.

        A stored certificate that can not be read, e.g. because the password changed, is renewed.
        """
        data = await self._store.load_raw(StoreKeys.PFX_FILE, request.id)

        try:
            renew = self.needs_renewal(data, request.pfx_password)
        except ValueError as e:
            logger.warning("Could not read stored certificate of request %s, renewing: %s", request.id, e)
            return True

        logger.info("Request %s %s renewal", request.id, "needs" if renew else "does not need")
        return renew
