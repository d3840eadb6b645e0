import abc
import logging
import typing

from pydantic_settings import BaseSettings

from acmesign.models import DnsChallengeRecord
from acmesign.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class DnsChallengeProvider(abc.ABC):
    """An abstract base class for DNS providers that publish *dns-01* TXT records.

    All implementations must implement the methods :meth:`add_txt_record` and :meth:`remove_txt_record`.
    Implementations must also be registered with the plugin registry via
    :meth:`~acmesign.plugin_base.PluginRegistry.register_plugin`, so that the CLI script knows which configuration
    option corresponds to which provider class.
    """

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config):
        pass

    @abc.abstractmethod
    async def add_txt_record(self, name: str, value: str) -> DnsChallengeRecord:
        """Publishes a TXT record.

        If a record with the same name and value already exists, it must be reused instead of
        creating a duplicate.

        :param name: The fully qualified record name.
        :param value: The TXT value.
        :return: The published record including the handle needed for its removal.
        """
        pass

    @abc.abstractmethod
    async def remove_txt_record(self, record: DnsChallengeRecord) -> None:
        """Removes a TXT record that was published by :meth:`add_txt_record`.

        This method should not assume that the record was actually created,
        meaning it should silently return if there is nothing to remove.

        :param record: The record to remove.
        """
        pass

    def record_for(self, name: str, value: str) -> DnsChallengeRecord:
        """Returns the record to remove if :meth:`add_txt_record` was interrupted before it returned.

        The default uses the record's name as its handle. Providers whose handles are assigned by
        the DNS service must override this to return a record their removal can find.
        """
        return DnsChallengeRecord(name, value, handle=name)


@PluginRegistry.register_plugin("dummy")
class DummyProvider(DnsChallengeProvider):
    """Dummy provider that does not actually publish any records."""

    class Config(DnsChallengeProvider.Config):
        type: typing.Literal["dummy"] = "dummy"

    async def add_txt_record(self, name: str, value: str) -> DnsChallengeRecord:
        logger.debug("(not) setting TXT record %s = %s", name, value)
        return DnsChallengeRecord(name, value)

    async def remove_txt_record(self, record: DnsChallengeRecord) -> None:
        logger.debug("(not) deleting TXT record %s = %s", record.name, record.value)
