import logging
import typing

import dns.asyncquery
import dns.asyncresolver
import dns.name
import dns.resolver
import dns.tsigkeyring
import dns.update

from acmesign.client.dns_provider import DnsChallengeProvider
from acmesign.models import DnsChallengeRecord
from acmesign.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

"""
This module contains a DNS challenge provider using RFC2136 TSIG updates

It looks up the zone name using the TSIG credentials on the resolver
"""


@PluginRegistry.register_plugin("rfc2136")
class RFC2136Provider(DnsChallengeProvider):
    """Publishes *dns-01* TXT records through RFC 2136 dynamic updates.

    Works with any name server that accepts TSIG signed updates for the challenge zones.
    """

    class Config(DnsChallengeProvider.Config):
        type: typing.Literal["rfc2136"] = "rfc2136"
        server: str
        """DNS server to use for TSIG updates"""
        keyid: str
        """TSIG key ID to use for TSIG updates"""
        alg: str
        """TSIG algorithm to use for TSIG updates"""
        secret: str
        """TSIG secret to use for TSIG updates"""
        ttl: int = 60
        """TTL of the published records"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)

        self._ttl = cfg.ttl
        self.keyring = dns.tsigkeyring.from_text({cfg.keyid: (cfg.alg, cfg.secret)})
        self.resolver = dns.asyncresolver.Resolver(configure=False)
        self.resolver.nameservers = [cfg.server]
        self.resolver.keyring = self.keyring
        self.resolver.keyname = cfg.keyid
        self.resolver.keyalgorithm = cfg.alg

    async def _run_query(self, msg):
        await dns.asyncquery.tcp(q=msg, where=self.resolver.nameservers[0])

    async def _update(self, name: str):
        zone = await dns.asyncresolver.zone_for_name(name, resolver=self.resolver)
        name = dns.name.from_text(name).relativize(zone)

        update = dns.update.Update(zone, keyring=self.keyring)
        return name, update

    async def _exists(self, name: str, value: str) -> bool:
        try:
            resp = await self.resolver.resolve(name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return False

        return any(value in [txt.decode() for txt in rdata.strings] for rdata in resp)

    async def add_txt_record(self, name: str, value: str) -> DnsChallengeRecord:
        if await self._exists(name, value):
            logger.debug("Reusing TXT record %s = %s", name, value)
            return DnsChallengeRecord(name, value, handle=name)

        logger.debug("Setting TXT record %s = %s, TTL %d", name, value, self._ttl)

        relative_name, update = await self._update(name)
        update.add(relative_name, self._ttl, "TXT", value)

        await self._run_query(update)
        return DnsChallengeRecord(name, value, handle=name)

    async def remove_txt_record(self, record: DnsChallengeRecord) -> None:
        if record.handle is None:
            return

        logger.debug("Deleting TXT record %s = %s", record.handle, record.value)

        name, update = await self._update(record.handle)
        update.delete(name, "TXT", record.value)

        await self._run_query(update)
