import logging
import typing

import josepy
from pydantic_settings import BaseSettings

from acmesign.client import AcmeClient
from acmesign.client.exceptions import ConfigurationError, UnsupportedKeyAlgorithm
from acmesign.models import Account, AccountKey, KeyAlgorithm
from acmesign.store import AcmeStore, StoreKeys
from acmesign.util import AsyncCached, dump_key_pair, generate_key_pair, jwk_for, load_key_pair

logger = logging.getLogger(__name__)

_ALGORITHMS = {
    "RS256": josepy.jwa.RS256,
    "ES256": josepy.jwa.ES256,
    "ES384": josepy.jwa.ES384,
    "ES512": josepy.jwa.ES512,
}


class AccountManager:
    """Obtains or creates the single ACME account of this deployment.

    The account, its signing key and the CA's directory are loaded from the store, or created and
    persisted on first use, and cached for the lifetime of the manager. A stored key whose account
    was lost is looked up at the CA. Concurrent callers share one creation attempt; a failed attempt
    is not cached.
    """

    class Config(BaseSettings, extra="forbid"):
        directory: str
        """URL of the CA's ACME directory."""
        contact: typing.List[str] = []
        """Contact email addresses sent on registration. The first one is used."""
        accept_terms_of_service: bool = False
        """Must be set to agree to the CA's terms of service."""
        key_algorithm: KeyAlgorithm = KeyAlgorithm.EC
        """Algorithm of the account key that is generated on registration."""
        key_size: typing.Optional[int] = None
        kid: typing.Optional[str] = None
        """The external account binding's key identifier"""
        hmac_key: typing.Optional[str] = None
        """The external account binding's symmetric encryption key"""
        server_cert: typing.Optional[str] = None
        """Path of an additional CA certificate to trust for the directory's TLS connection"""

    def __init__(self, cfg: Config, client: AcmeClient, store: AcmeStore):
        self._cfg = cfg
        self._client = client
        self._store = store

        self._directory = AsyncCached(self._load_directory)
        self._account = AsyncCached(self._load_or_create_account)

    @property
    def client(self) -> AcmeClient:
        return self._client

    async def directory(self, refresh: bool = False) -> dict:
        """Returns the CA's directory.

        The directory is loaded from the store, or fetched from the CA and persisted if it is not stored yet.

        :param refresh: Fetch the directory from the CA even if it is cached or stored.
        :return: The directory.
        """
        if refresh:
            self._directory.reset()
            return await self._directory.get_or_init(True)

        return await self._directory.get_or_init(False)

    async def _load_directory(self, refresh: bool) -> dict:
        directory = None if refresh else await self._store.load(StoreKeys.DIRECTORY)

        if directory is None:
            directory = await self._client.directory_get()
            await self._store.save(directory, StoreKeys.DIRECTORY)
            logger.info("Fetched directory %s", self._cfg.directory)
        else:
            self._client.directory = directory

        return directory

    async def get_or_create_account(self) -> Account:
        """Returns the account, creating and persisting it first if necessary.

        :raises:

            * :class:`~acmesign.client.exceptions.ConfigurationError` If a new account is required but
              no contact email is configured or the terms of service have not been accepted.
            * :class:`acme.messages.Error` If the CA refuses the registration, or knows no account for a
              stored key whose account was lost.

        :return: The account.
        """
        return await self._account.get_or_init()

    async def _load_or_create_account(self) -> Account:
        await self.directory()

        account_obj = await self._store.load(StoreKeys.ACCOUNT)
        account_key_obj = await self._store.load(StoreKeys.ACCOUNT_KEY)

        if account_key_obj is not None:
            account_key = AccountKey.from_json(account_key_obj)
            self._client.use_account_key(*self._restore_key(account_key))

            if account_obj is not None:
                self._client.account = account = Account.from_json(account_obj)
                logger.info("Loaded account %s", account.kid)
                return account

            account = await self._client.account_lookup()
            await self._store.save(account, StoreKeys.ACCOUNT)

            logger.info("Recovered account %s of the stored key", account.kid)
            return account

        email = next((contact for contact in self._cfg.contact if contact), None)
        if not email:
            raise ConfigurationError("A contact email is required to create an account")
        if not self._cfg.accept_terms_of_service:
            raise ConfigurationError("The terms of service must be accepted to create an account")

        private_key = generate_key_pair(self._cfg.key_algorithm, self._cfg.key_size)
        key, alg = jwk_for(private_key)
        self._client.use_account_key(key, alg)

        account = await self._client.account_register(
            email=email,
            terms_of_service_agreed=True,
            kid=self._cfg.kid,
            hmac_key=self._cfg.hmac_key,
        )

        await self._store.save(account, StoreKeys.ACCOUNT)
        await self._store.save(
            AccountKey(key_type=alg.name, key_export=dump_key_pair(private_key).decode()),
            StoreKeys.ACCOUNT_KEY,
        )

        logger.info("Created account %s", account.kid)
        return account

    @staticmethod
    def _restore_key(account_key: AccountKey) -> typing.Tuple[josepy.jwk.JWK, josepy.jwa.JWASignature]:
        if account_key.key_type not in _ALGORITHMS:
            raise UnsupportedKeyAlgorithm(account_key.key_type)

        key, alg = jwk_for(load_key_pair(account_key.key_export))
        if alg.name != account_key.key_type:
            raise UnsupportedKeyAlgorithm(account_key.key_type)

        return key, alg
