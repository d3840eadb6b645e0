import abc
import asyncio
import functools
import io
import json
import logging
import typing
from pathlib import Path

import josepy
from pydantic_settings import BaseSettings

from acmesign.plugin_base import PluginRegistry
from acmesign.util import KEY_FILE_MODE

logger = logging.getLogger(__name__)

RawValue = typing.Union[bytes, str, typing.BinaryIO]


class StoreKeys:
    """Key formats of the persisted issuance state. *{0}* is replaced by the request id."""

    ACCOUNT = "01_Account"
    ACCOUNT_KEY = "02_AccountKey"
    DIRECTORY = "03_Directory"
    ORDER = "04_Order_{0}"
    """The URL of the order that is being worked on for the request."""
    ORDER_CERT_KEY = "04_Order_{0}_CertKey"
    ORDER_CERT = "04_Order_{0}_Cert"
    PFX_FILE = "04_Order_{0}_Pfx"
    """The exported archive that serves as the renewal baseline."""


class AcmeStore(abc.ABC):
    """Durable key-value store for account state, key material and issued certificates.

    Implementations provide the raw byte operations, JSON and text access is built on top of them.
    The store assumes a single writer per request id.
    """

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config):
        pass

    @staticmethod
    def key(key_format: str, *params) -> str:
        return key_format.format(*params)

    @abc.abstractmethod
    async def load_raw(self, key_format: str, *params) -> typing.Optional[bytes]:
        """Loads the bytes stored under the given key.

        :return: The stored bytes or *None* if nothing is stored.
        """
        pass

    @abc.abstractmethod
    async def save_raw(self, value: RawValue, key_format: str, *params) -> None:
        """Stores bytes, text or the contents of a binary stream under the given key, replacing any previous value."""
        pass

    @abc.abstractmethod
    async def exists(self, key_format: str, *params) -> bool:
        pass

    @abc.abstractmethod
    async def remove(self, key_format: str, *params) -> None:
        """Removes the value stored under the given key. Does nothing if there is none."""
        pass

    async def open_raw(self, key_format: str, *params) -> typing.Optional[typing.BinaryIO]:
        """Returns a binary stream over the stored value, or *None* if nothing is stored."""
        data = await self.load_raw(key_format, *params)
        return io.BytesIO(data) if data is not None else None

    async def load_text(self, key_format: str, *params) -> typing.Optional[str]:
        data = await self.load_raw(key_format, *params)
        return data.decode() if data is not None else None

    async def load(self, key_format: str, *params) -> typing.Optional[dict]:
        """Loads a JSON document.

        :return: The decoded document or *None* if nothing is stored.
        """
        data = await self.load_raw(key_format, *params)
        return json.loads(data) if data is not None else None

    async def save(self, value, key_format: str, *params) -> None:
        """Stores a JSON document. Accepts :class:`josepy.JSONDeSerializable` objects and plain JSON values."""
        if isinstance(value, josepy.JSONDeSerializable):
            data = value.json_dumps()
        else:
            data = json.dumps(value)

        await self.save_raw(data, key_format, *params)


def _to_bytes(value: RawValue) -> bytes:
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if hasattr(value, "read"):
        return value.read()

    raise TypeError(f"Unsupported value type {type(value).__name__}; must be one of: str, bytes, binary stream")


@PluginRegistry.register_plugin("filesystem")
class FileSystemAcmeStore(AcmeStore):
    """Stores every key as a file in one directory.

    Files are created with mode 0600 since they contain key material.
    """

    class Config(AcmeStore.Config):
        type: typing.Literal["filesystem"] = "filesystem"
        directory: Path = Path("acme_store")
        """The directory holding the files. Created on first use."""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._directory = Path(cfg.directory)

    @property
    def directory(self) -> Path:
        if not self._directory.exists():
            self._directory.mkdir(parents=True)

        return self._directory

    def _path(self, key_format: str, *params) -> Path:
        return self.directory / self.key(key_format, *params)

    async def _run(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args))

    async def load_raw(self, key_format: str, *params) -> typing.Optional[bytes]:
        path = self._path(key_format, *params)

        if not path.exists():
            return None

        logger.debug("Load file from %s", path)
        return await self._run(path.read_bytes)

    async def save_raw(self, value: RawValue, key_format: str, *params) -> None:
        path = self._path(key_format, *params)
        data = _to_bytes(value)

        def write():
            path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)
            path.write_bytes(data)

        logger.debug("Save file to %s", path)
        await self._run(write)

    async def exists(self, key_format: str, *params) -> bool:
        path = self._path(key_format, *params)
        exists = path.exists()

        logger.debug("Exists file(%s): %s", exists, path)
        return exists

    async def remove(self, key_format: str, *params) -> None:
        path = self._path(key_format, *params)

        if path.exists():
            await self._run(path.unlink)
            logger.debug("Removed %s", path)


@PluginRegistry.register_plugin("memory")
class MemoryAcmeStore(AcmeStore):
    """Keeps all values in memory. Nothing survives the process; meant for tests and dry runs."""

    class Config(AcmeStore.Config):
        type: typing.Literal["memory"] = "memory"

    def __init__(self, cfg: Config = None):
        super().__init__(cfg)
        self.values: typing.Dict[str, bytes] = dict()

    async def load_raw(self, key_format: str, *params) -> typing.Optional[bytes]:
        return self.values.get(self.key(key_format, *params))

    async def save_raw(self, value: RawValue, key_format: str, *params) -> None:
        self.values[self.key(key_format, *params)] = _to_bytes(value)

    async def exists(self, key_format: str, *params) -> bool:
        return self.key(key_format, *params) in self.values

    async def remove(self, key_format: str, *params) -> None:
        self.values.pop(self.key(key_format, *params), None)
