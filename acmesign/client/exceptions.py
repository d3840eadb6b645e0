import acme.messages
import aiohttp

TRANSIENT_ERROR_CODES = ("serverInternal", "rateLimited", "badNonce")
"""ACME problem types that indicate the CA is temporarily unable to answer."""

TRANSIENT_ERRORS = (aiohttp.ClientError, acme.messages.Error)


def is_transient(exception: BaseException) -> bool:
    """Returns True if a request that raised *exception* may succeed when retried later.

    Network errors are always transient, ACME problems only if their type is in :data:`TRANSIENT_ERROR_CODES`.
    """
    if isinstance(exception, acme.messages.Error):
        return exception.code in TRANSIENT_ERROR_CODES

    return isinstance(exception, aiohttp.ClientError)


class AcmeClientException(Exception):
    """General ACME client exception."""

    pass


class ConfigurationError(AcmeClientException):
    """Raised for settings that make issuance impossible, e.g. a missing contact address.

    Configuration errors are never retried."""

    pass


class UnsupportedKeyAlgorithm(ConfigurationError):
    """Raised if a key pair of an unknown algorithm is requested."""

    def __init__(self, algorithm, *args):
        super().__init__(*args)
        self.algorithm = algorithm

    def __str__(self):
        return f"Unsupported key algorithm: {self.algorithm}"


class UnsupportedChallengeType(ConfigurationError):
    """Raised if an authorization does not offer a *dns-01* challenge."""

    def __init__(self, authorization_url: str, *args):
        super().__init__(*args)
        self.authorization_url = authorization_url

    def __str__(self):
        return f"No 'dns-01' challenge offered for {self.authorization_url}"


class CouldNotCompleteChallenge(AcmeClientException):
    """Exception that is raised if completion of a specific challenge failed."""

    def __init__(self, challenge, *args):
        super().__init__(*args)
        self.challenge: acme.messages.ChallengeBody = challenge
        """The challenge whose completion was unsuccessful."""

    def __str__(self):
        return f"Could not complete challenge: {self.challenge}"


class PollingException(AcmeClientException):
    """Exception that is used internally to communicate that a polled resource became invalid."""

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class PollingTimeout(AcmeClientException):
    """Raised if a polled resource did not reach the expected state before the deadline.

    The timeout is recoverable: state that was already persisted stays in place and a
    later attempt resumes from it.
    """

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class AuthorizationInvalid(AcmeClientException):
    """Raised if the CA reports an authorization as *invalid* or *expired*.

    The order that contains the authorization can not be completed anymore.
    """

    def __init__(self, authorization: acme.messages.Authorization, url: str, *args):
        super().__init__(*args)
        self.authorization = authorization
        self.url = url

    def __str__(self):
        return f"Authorization {self.url} is {self.authorization.status}"


class OrderInvalid(AcmeClientException):
    """Raised if the CA reports an order as *invalid*. A new order must be created."""

    def __init__(self, order, *args):
        super().__init__(*args)
        self.order = order

    def __str__(self):
        return f"Order {self.order.url} is {self.order.status}"


class StateTerminated(AcmeClientException):
    """Raised when a sign flow is asked to move past its terminal state."""

    pass


class OrderKeyMissing(OrderInvalid):
    """Raised if an order was finalized but the private key of its CSR is not stored anymore.

    The certificate can not be used without the key, so a new order must be created.
    """

    def __str__(self):
        return f"No private key stored for order {self.order.url}"
