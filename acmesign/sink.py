import abc
import asyncio
import logging
import typing
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from pydantic_settings import BaseSettings

from acmesign.models import IssuedCertificate
from acmesign.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class CertificateSink(abc.ABC):
    """Receives finished certificates for installation or storage."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config):
        pass

    @abc.abstractmethod
    async def save(self, certificate: IssuedCertificate) -> str:
        """Stores the certificate.

        :return: A path or identifier under which the certificate can be found again.
        """
        pass


@PluginRegistry.register_plugin("directory")
class DirectoryCertificateSink(CertificateSink):
    """Writes each certificate's PEM chain to *<directory>/<sha256 fingerprint>.pem*."""

    class Config(CertificateSink.Config):
        type: typing.Literal["directory"] = "directory"
        directory: Path = Path("certificates")

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._directory = Path(cfg.directory)

    async def save(self, certificate: IssuedCertificate) -> str:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._directory / f"{certificate.certificate.fingerprint(hashes.SHA256()).hex()}.pem"

        await asyncio.get_running_loop().run_in_executor(None, path.write_bytes, certificate.chain)

        logger.info("Stored certificate %s valid until %s at %s", certificate.subject, certificate.not_after, path)
        return str(path)


@PluginRegistry.register_plugin("none")
class NullCertificateSink(CertificateSink):
    """Discards certificates; the store keeps the exported copy."""

    async def save(self, certificate: IssuedCertificate) -> str:
        return ""
