import asyncio
import logging
import re
import time
import typing

import josepy
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509 import NameOID
from pydantic_settings import BaseSettings

from acmesign.client.exceptions import (
    PollingException,
    PollingTimeout,
    UnsupportedKeyAlgorithm,
)
from acmesign.models.request import KeyAlgorithm

logger = logging.getLogger(__name__)

KEY_FILE_MODE = 0o600

PrivateKey = typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


DEFAULT_KEY_SIZES = {
    KeyAlgorithm.RSA: 2048,
    KeyAlgorithm.EC: 256,
}
"""Key size (RSA) or curve size (EC) used if none is requested."""


def generate_key_pair(algorithm: typing.Union[KeyAlgorithm, str], key_size: int = None) -> PrivateKey:
    """Generates a fresh private key.

    :param algorithm: Either *rsa* or *ec*.
    :param key_size: The RSA modulus size or the EC curve size. Defaults to :data:`DEFAULT_KEY_SIZES`.
    :raises: :class:`~acmesign.client.exceptions.UnsupportedKeyAlgorithm` If the algorithm or EC curve
        size is unknown.
    :return: The generated private key, which also carries the public key.
    """
    try:
        algorithm = KeyAlgorithm(algorithm)
    except ValueError:
        raise UnsupportedKeyAlgorithm(algorithm)

    key_size = key_size or DEFAULT_KEY_SIZES[algorithm]

    if algorithm == KeyAlgorithm.RSA:
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    try:
        curve = getattr(ec, f"SECP{key_size}R1")
    except AttributeError:
        raise UnsupportedKeyAlgorithm(f"{algorithm.value}{key_size}")

    return ec.generate_private_key(curve())


def generate_csr(names: typing.Sequence[str], private_key: PrivateKey) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    The first name becomes the common name, all names are put into the subject alternative name
    extension in the given order.

    :param names: The requested names in the CSR.
    :param private_key: The private key to sign the CSR with.
    :return: The generated CSR.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    return csr


def dump_key_pair(private_key: PrivateKey) -> bytes:
    """Serializes a key pair to unencrypted PKCS#8 PEM."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_key_pair(data: typing.Union[bytes, str]) -> PrivateKey:
    """Loads a key pair that was serialized by :func:`dump_key_pair`."""
    if isinstance(data, str):
        data = data.encode()

    return serialization.load_pem_private_key(data, password=None)


def jwk_for(private_key: PrivateKey) -> typing.Tuple[josepy.jwk.JWK, josepy.jwa.JWASignature]:
    """Wraps a private key for JWS signing.

    :param private_key: An RSA or EC private key.
    :raises: :class:`~acmesign.client.exceptions.UnsupportedKeyAlgorithm` If the key is of any other type.
    :return: The JWK and the matching signature algorithm.
    """
    if isinstance(private_key, rsa.RSAPrivateKey):
        return josepy.jwk.JWKRSA(key=private_key), josepy.jwa.RS256
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        alg = {
            521: josepy.jwa.ES512,
            256: josepy.jwa.ES256,
            384: josepy.jwa.ES384,
        }.get(private_key.curve.key_size)
        if alg is None:
            raise UnsupportedKeyAlgorithm(private_key.curve.name)
        return josepy.jwk.JWKEC(key=private_key), alg

    raise UnsupportedKeyAlgorithm(type(private_key).__name__)


def names_of(csr: x509.CertificateSigningRequest, lower: bool = False) -> typing.List[str]:
    """Returns all names contained in the given CSR.

    :param csr: The CSR whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: The subject alternative names in CSR order.
    """
    names = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value.get_values_for_type(
        x509.DNSName
    )

    return [name.lower() if lower else name for name in names]


def pem_split(
    pem: str,
) -> typing.List[typing.Union[x509.CertificateSigningRequest, x509.Certificate, PrivateKey]]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and private keys.

    :param pem: The concatenated PEM encoded objects.
    :return: List of all objects found in the PEM string, in order of appearance.
    """
    _PEM_TO_CLASS = {
        b"CERTIFICATE": x509.load_pem_x509_certificate,
        b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
        b"PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
        b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
        b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
    }

    _PEM_RE = re.compile(
        b"-----BEGIN (?P<cls>"
        + b"|".join(_PEM_TO_CLASS.keys())
        + b""")-----"""
        + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
        re.DOTALL,
    )

    return [_PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0)) for match in _PEM_RE.finditer(pem.encode())]


def load_chain(data: typing.Union[bytes, str]) -> typing.List[x509.Certificate]:
    """Loads a PEM certificate chain as returned by the CA. The leaf comes first."""
    if isinstance(data, bytes):
        data = data.decode()

    chain = [obj for obj in pem_split(data) if isinstance(obj, x509.Certificate)]
    if not chain:
        raise ValueError("No certificate found in chain")

    return chain


def certificate_matches_key(certificate: x509.Certificate, private_key: PrivateKey) -> bool:
    """Returns True if *certificate* certifies the public half of *private_key*."""
    spki = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return certificate.public_key().public_bytes(*spki) == private_key.public_key().public_bytes(*spki)


def load_certificate(data: bytes, password: typing.Optional[str] = None) -> x509.Certificate:
    """Loads the leaf certificate from either a PEM chain or a PKCS#12 archive.

    :param data: The PEM or PFX bytes.
    :param password: The PFX password, if any.
    :return: The leaf certificate.
    """
    if data.lstrip().startswith(b"-----BEGIN"):
        return load_chain(data)[0]

    _, certificate, _ = pkcs12.load_key_and_certificates(data, password.encode() if password else None)
    if certificate is None:
        raise ValueError("PFX archive does not contain a certificate")

    return certificate


def export_pfx(
    chain: typing.Union[bytes, str],
    private_key: PrivateKey,
    password: typing.Optional[str] = None,
    friendly_name: typing.Optional[str] = None,
) -> bytes:
    """Bundles a certificate chain and its private key into a PKCS#12 archive.

    :param chain: The PEM chain, leaf first.
    :param private_key: The certificate's private key.
    :param password: Optional password to encrypt the archive with.
    :param friendly_name: Optional friendly name stored alongside the key.
    :return: The DER encoded archive.
    """
    leaf, *intermediates = load_chain(chain)

    encryption = (
        serialization.BestAvailableEncryption(password.encode()) if password else serialization.NoEncryption()
    )

    return pkcs12.serialize_key_and_certificates(
        friendly_name.encode() if friendly_name else None,
        private_key,
        leaf,
        intermediates or None,
        encryption,
    )


class PollingPolicy(BaseSettings, extra="forbid"):
    """Fixed-interval polling with a wall-clock deadline measured from loop entry."""

    interval: float = 5.0
    """Seconds to sleep between two checks."""
    timeout: float = 600.0
    """Seconds after which polling gives up."""


async def poll_until(
    coro,
    *args,
    predicate,
    negative_predicate=None,
    interval: float = 5.0,
    timeout: float = 600.0,
    transient: typing.Tuple[typing.Type[BaseException], ...] = (),
    transient_predicate=None,
    **kwargs,
):
    """Calls *coro* until *predicate* holds for its result.

    :param coro: Coroutine function producing the polled resource.
    :param predicate: Returns True once the resource is in the expected state.
    :param negative_predicate: Returns True if the resource can not reach the expected state anymore.
    :param interval: Seconds between two calls.
    :param timeout: Seconds after which polling fails.
    :param transient: Exception types that are logged and retried instead of being raised.
    :param transient_predicate: Narrows *transient*: an exception is only retried if this returns True for it.
    :raises:

        * :class:`~acmesign.client.exceptions.PollingException` If *negative_predicate* became True.
        * :class:`~acmesign.client.exceptions.PollingTimeout` If the deadline passed.

    :return: The first result for which *predicate* holds.
    """
    name = getattr(coro, "__name__", repr(coro))
    deadline = time.monotonic() + timeout
    result = None

    while True:
        try:
            result = await coro(*args, **kwargs)
        except transient as e:
            if transient_predicate and not transient_predicate(e):
                raise
            logger.warning("Polling %s%s failed, retrying: %s", name, args, e)
        else:
            if predicate(result):
                return result

            if negative_predicate and negative_predicate(result):
                raise PollingException(
                    result,
                    f"Polling unsuccessful: {name}{args}, {negative_predicate.__name__} became True",
                )

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PollingTimeout(result, f"Polling timed out after {timeout:.0f}s: {name}{args}")

        logger.debug("Polling %s%s, %.0fs remaining", name, args, remaining)
        await asyncio.sleep(min(interval, remaining))


async def gather_fail_fast(*aws, limit: int = None) -> list:
    """Runs the awaitables concurrently and stops at the first failure.

    Unlike :func:`asyncio.gather`, the remaining tasks are cancelled and awaited before the
    first exception is re-raised, so their cleanup has finished once this returns.
    The same happens if the caller is cancelled.

    :param aws: Coroutines to run.
    :param limit: Optional maximum number of coroutines running at the same time.
    :return: The results in the order of *aws*.
    """
    semaphore = asyncio.Semaphore(limit) if limit else None

    async def bounded(aw):
        async with semaphore:
            return await aw

    tasks = [asyncio.ensure_future(bounded(aw) if semaphore else aw) for aw in aws]
    if not tasks:
        return []

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


_MISSING = object()


class AsyncCached:
    """A lazily computed value with single-flight initialization.

    The first caller of :meth:`get_or_init` starts the factory; concurrent callers await the same
    in-flight computation. Failures are not cached, the next call starts over.
    """

    def __init__(self, factory):
        self._factory = factory
        self._value = _MISSING
        self._task: typing.Optional[asyncio.Future] = None

    @property
    def has_value(self) -> bool:
        return self._value is not _MISSING

    @property
    def value(self):
        if self._value is _MISSING:
            raise LookupError("Value has not been initialized")
        return self._value

    async def _run(self, *args, **kwargs):
        try:
            self._value = await self._factory(*args, **kwargs)
            return self._value
        finally:
            self._task = None

    async def get_or_init(self, *args, **kwargs):
        if self._value is not _MISSING:
            return self._value

        if self._task is None:
            self._task = asyncio.ensure_future(self._run(*args, **kwargs))

        # Shielded so that one cancelled waiter does not abort the computation for the others.
        return await asyncio.shield(self._task)

    def reset(self):
        """Forgets the cached value. An in-flight computation is not affected."""
        self._value = _MISSING
