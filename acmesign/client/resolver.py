import logging
import typing

import dns.asyncresolver
import dns.resolver
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class TxtResolver:
    """Looks up TXT records to confirm that a challenge record has propagated."""

    class Config(BaseSettings, extra="forbid"):
        dns_servers: typing.List[str] = []
        """Name servers to query. The system resolver configuration is used if empty."""
        lifetime: float = 10.0
        """Seconds a single lookup may take."""

    def __init__(self, cfg: Config = None):
        cfg = cfg or self.Config()

        self._resolver = dns.asyncresolver.Resolver(configure=not cfg.dns_servers)
        if cfg.dns_servers:
            self._resolver.nameservers = cfg.dns_servers
        self._resolver.lifetime = cfg.lifetime

    async def query_txt_record(self, name: str) -> typing.Optional[typing.List[str]]:
        """Queries a DNS TXT record.

        :param name: Name of the TXT record to query.
        :raises: :class:`dns.exception.DNSException` For lookup failures other than a non-existent domain.
        :return: List of strings stored in the TXT record, or *None* if the name does not exist.
        """
        txt_records = []

        try:
            resp = await self._resolver.resolve(name, "TXT")
        except dns.resolver.NXDOMAIN:
            return None
        except dns.resolver.NoAnswer:
            return txt_records

        for rdata in resp:
            txt_records.extend([record.decode() for record in rdata.strings])

        return txt_records
