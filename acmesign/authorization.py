import logging

import acme.messages

from acmesign.challenge import ChallengeCoordinator
from acmesign.client import AcmeClient
from acmesign.client.exceptions import (
    TRANSIENT_ERRORS,
    AuthorizationInvalid,
    PollingException,
    UnsupportedChallengeType,
    is_transient,
)
from acmesign.models import ChallengeType
from acmesign.models.messages import is_invalid, is_valid
from acmesign.util import PollingPolicy, poll_until

logger = logging.getLogger(__name__)


class AuthorizationValidator:
    """Drives a single authorization to a terminal status."""

    def __init__(
        self,
        client: AcmeClient,
        challenges: ChallengeCoordinator,
        polling: PollingPolicy = None,
    ):
        self._client = client
        self._challenges = challenges
        self._polling = polling or PollingPolicy()

    @staticmethod
    def select_dns_challenge(
        authorization: acme.messages.Authorization, authorization_url: str = None
    ) -> acme.messages.ChallengeBody:
        """Returns the authorization's *dns-01* challenge.

        :raises: :class:`~acmesign.client.exceptions.UnsupportedChallengeType` If there is none.
        """
        for challenge in authorization.challenges:
            if challenge.chall.typ == ChallengeType.DNS_01:
                return challenge

        raise UnsupportedChallengeType(authorization_url or authorization.identifier.value)

    async def validate(self, authorization_url: str) -> acme.messages.Authorization:
        """Validates the authorization at the given URL.

        Authorizations that are already valid are returned without side effects. Otherwise the
        *dns-01* challenge is answered and the authorization polled until it is valid. The
        challenge's TXT record is removed before this returns or raises.

        :param authorization_url: The authorization's URL.
        :raises:

            * :class:`~acmesign.client.exceptions.AuthorizationInvalid` If the CA reports the
              authorization as invalid.
            * :class:`~acmesign.client.exceptions.UnsupportedChallengeType` If no *dns-01* challenge is offered.
            * :class:`~acmesign.client.exceptions.PollingTimeout` If the authorization did not become valid in time.

        :return: The valid authorization.
        """
        authorization = await self._client.authorization_get(authorization_url)
        identifier = authorization.identifier.value

        if is_valid(authorization):
            logger.debug("Authorization for %s is already valid", identifier)
            return authorization

        if is_invalid(authorization):
            raise AuthorizationInvalid(authorization, authorization_url)

        challenge = self.select_dns_challenge(authorization, authorization_url)

        async with self._challenges.prepare(authorization, challenge):
            try:
                authorization = await poll_until(
                    self._client.authorization_get,
                    authorization_url,
                    predicate=is_valid,
                    negative_predicate=is_invalid,
                    interval=self._polling.interval,
                    timeout=self._polling.timeout,
                    transient=TRANSIENT_ERRORS,
                    transient_predicate=is_transient,
                )
            except PollingException as e:
                raise AuthorizationInvalid(e.obj, authorization_url) from e

        logger.info("Authorization for %s is valid", identifier)
        return authorization
