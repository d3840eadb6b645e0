import contextlib
import logging
import typing

import acme.messages
import dns.exception

from acmesign.client import AcmeClient, DnsChallengeProvider, TxtResolver
from acmesign.client.exceptions import CouldNotCompleteChallenge
from acmesign.models import DnsChallengeRecord
from acmesign.util import PollingPolicy, poll_until

logger = logging.getLogger(__name__)


class ChallengeCoordinator:
    """Answers the *dns-01* challenge of one authorization.

    The TXT record is published through the configured :class:`~acmesign.client.DnsChallengeProvider`,
    confirmed through DNS and only then reported to the CA, since failed validations consume the
    authorization's attempts.
    """

    def __init__(
        self,
        client: AcmeClient,
        provider: DnsChallengeProvider,
        resolver: TxtResolver,
        polling: PollingPolicy = None,
    ):
        self._client = client
        self._provider = provider
        self._resolver = resolver
        self._polling = polling or PollingPolicy()

    @contextlib.asynccontextmanager
    async def prepare(
        self,
        authorization: acme.messages.Authorization,
        challenge: acme.messages.ChallengeBody,
    ) -> typing.AsyncIterator[DnsChallengeRecord]:
        """Publishes the challenge's TXT record and answers the challenge.

        The record is removed when the context exits, however it is left. Removal failures are
        logged and do not mask the outcome of the block.

        :param authorization: The authorization the challenge belongs to.
        :param challenge: The *dns-01* challenge to answer.
        :raises:

            * :class:`~acmesign.client.exceptions.CouldNotCompleteChallenge` If the provider could not
              publish the record.
            * :class:`~acmesign.client.exceptions.PollingTimeout` If the record was not observed in
              DNS before the deadline.

        :return: The published record.
        """
        name, value = self._client.challenge_validation(authorization.identifier, challenge)

        try:
            record = await self._provider.add_txt_record(name, value)
        except Exception as e:
            logger.exception("Could not set TXT record to solve challenge: %s = %s", name, value)
            raise CouldNotCompleteChallenge(
                challenge,
                acme.messages.Error(typ="dns", title="error", detail=str(e)),
            ) from e
        except BaseException:
            # the provider may have written the record before the call was interrupted
            await self._remove(self._provider.record_for(name, value))
            raise

        try:
            await self.wait_for_propagation(record)

            logger.info("Answering challenge for %s", authorization.identifier.value)
            await self._client.challenge_validate(challenge.uri)

            yield record
        finally:
            await self._remove(record)

    async def _remove(self, record: DnsChallengeRecord):
        try:
            await self._provider.remove_txt_record(record)
        except Exception:
            logger.exception("Could not remove TXT record %s = %s", record.name, record.value)

    async def wait_for_propagation(self, record: DnsChallengeRecord) -> typing.List[str]:
        """Polls DNS until the record's value is served.

        Lookup failures are retried until the deadline.

        :raises: :class:`~acmesign.client.exceptions.PollingTimeout` If the value was not observed in time.
        :return: The TXT values found under the record's name.
        """

        def has_value(txt_records):
            return txt_records is not None and record.value in txt_records

        values = await poll_until(
            self._resolver.query_txt_record,
            record.name,
            predicate=has_value,
            interval=self._polling.interval,
            timeout=self._polling.timeout,
            transient=(dns.exception.DNSException,),
        )

        logger.debug("TXT record %s = %s has propagated", record.name, record.value)
        return values
