import asyncio
import dataclasses
import datetime
import logging
import logging.config
import typing
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from acmesign.account import AccountManager
from acmesign.authorization import AuthorizationValidator
from acmesign.challenge import ChallengeCoordinator
from acmesign.client import AcmeClient, DnsChallengeProvider, DummyProvider, TxtResolver
from acmesign.flow import SignFlow
from acmesign.models import CertificateRequest, ExportType
from acmesign.order import OrderOrchestrator
from acmesign.plugin_base import PluginRegistry
from acmesign.plugins.rfc2136_provider import RFC2136Provider
from acmesign.renewal import RenewalChecker
from acmesign.sink import CertificateSink, DirectoryCertificateSink, NullCertificateSink
from acmesign.store import AcmeStore, FileSystemAcmeStore, MemoryAcmeStore, StoreKeys
from acmesign.util import PollingPolicy

logger = logging.getLogger(__name__)

PluginRegistry.load_plugins(r"plugins")
provider_registry = PluginRegistry.get_registry(DnsChallengeProvider)
store_registry = PluginRegistry.get_registry(AcmeStore)
sink_registry = PluginRegistry.get_registry(CertificateSink)


class RenewalConfig(BaseSettings, extra="forbid"):
    renew_before_days: int = 0
    """Renew certificates this many days before they expire. Only expired certificates are renewed if 0."""


class Config(BaseSettings, extra="forbid"):
    account: AccountManager.Config
    store: FileSystemAcmeStore.Config | MemoryAcmeStore.Config = Field(
        discriminator="type", default_factory=FileSystemAcmeStore.Config
    )
    sink: DirectoryCertificateSink.Config | NullCertificateSink.Config = Field(
        discriminator="type", default_factory=NullCertificateSink.Config
    )
    challenge_provider: DummyProvider.Config | RFC2136Provider.Config = Field(discriminator="type")
    resolver: TxtResolver.Config = Field(default_factory=TxtResolver.Config)
    polling: PollingPolicy = Field(default_factory=PollingPolicy)
    orders: OrderOrchestrator.Config = Field(default_factory=OrderOrchestrator.Config)
    renewal: RenewalConfig = Field(default_factory=RenewalConfig)
    certificates: typing.List[CertificateRequest] = []
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config)


def configure_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(level=logging.INFO)


@dataclasses.dataclass
class Engine:
    """The wired up components of one deployment."""

    client: AcmeClient
    store: AcmeStore
    accounts: AccountManager
    orders: OrderOrchestrator
    flow: SignFlow

    @classmethod
    def from_config(cls, config: Config) -> "Engine":
        client = AcmeClient(directory_url=config.account.directory, server_cert=config.account.server_cert)
        store = store_registry.create(config.store)
        sink = sink_registry.create(config.sink)

        coordinator = ChallengeCoordinator(
            client,
            provider_registry.create(config.challenge_provider),
            TxtResolver(config.resolver),
            config.polling,
        )
        accounts = AccountManager(config.account, client, store)
        orders = OrderOrchestrator(
            config.orders,
            accounts,
            AuthorizationValidator(client, coordinator, config.polling),
            store,
            config.polling,
        )
        renewal = RenewalChecker(store, renew_before=_days(config.renewal.renew_before_days))

        return cls(client, store, accounts, orders, SignFlow(renewal, orders, store, sink))

    async def close(self):
        await self.client.close()


def _days(days: int) -> datetime.timedelta:
    return datetime.timedelta(days=days)


def _select(config: Config, request_ids: typing.Sequence[str]) -> typing.List[CertificateRequest]:
    requests = config.certificates
    if request_ids:
        requests = [request for request in requests if request.id in request_ids]
        if unknown := set(request_ids) - {request.id for request in requests}:
            raise click.UsageError(f"Unknown certificate request(s): {', '.join(sorted(unknown))}")

    return requests


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
def plugins():
    """Lists the available plugins and their respective config strings."""
    for plugins in [
        ("Challenge providers", provider_registry.config_mapping()),
        ("Stores", store_registry.config_mapping()),
        ("Certificate sinks", sink_registry.config_mapping()),
    ]:
        click.echo(
            f"{plugins[0]}: {', '.join([f'{app.__name__} ({config_name})' for config_name, app in plugins[1].items()])}"
        )


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(), required=True)
@click.option("--force", is_flag=True, default=False, help="Issue new certificates even if not due for renewal.")
@click.argument("request-ids", nargs=-1)
def sign(config_file: str, force: bool, request_ids: typing.Tuple[str]):
    """Issues or renews the certificates defined in the config file.

    Only the given requests are processed if any request ids are passed.
    """
    config = load_config(config_file)
    configure_logging(config)

    requests = _select(config, request_ids)

    async def run():
        engine = Engine.from_config(config)
        failed = []
        try:
            for request in requests:
                try:
                    context = await engine.flow.run(request, force=force)
                except Exception:
                    logger.exception("Could not issue certificate for request %s", request.id)
                    failed.append(request.id)
                    continue

                if context.certificate is None:
                    click.echo(f"{request.id}: up to date")
                else:
                    click.echo(f"{request.id}: issued, valid until {context.certificate.not_after}")
        finally:
            await engine.close()

        return failed

    if failed := asyncio.run(run()):
        raise click.ClickException(f"Failed requests: {', '.join(failed)}")


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(), required=True)
@click.argument("request-ids", nargs=-1)
def check(config_file: str, request_ids: typing.Tuple[str]):
    """Shows which certificates are due for renewal."""
    config = load_config(config_file)
    configure_logging(config)

    requests = _select(config, request_ids)

    async def run():
        store = store_registry.create(config.store)
        checker = RenewalChecker(store, renew_before=_days(config.renewal.renew_before_days))

        for request in requests:
            renew = await checker.check(request)
            click.echo(f"{request.id}: {'renewal required' if renew else 'up to date'}")

    asyncio.run(run())


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(), required=True)
@click.option("--order-url", type=click.STRING, help="The order to export. Defaults to the request's current order.")
@click.option(
    "--export-type",
    "-t",
    type=click.Choice([export_type.value for export_type in ExportType], case_sensitive=False),
    default=None,
)
@click.argument("request-id", type=click.STRING)
@click.argument("output", type=click.Path())
def export(config_file: str, order_url: str, export_type: str, request_id: str, output: str):
    """Exports the certificate of a finished order to OUTPUT."""
    config = load_config(config_file)
    configure_logging(config)

    (request,) = _select(config, [request_id])

    async def run():
        engine = Engine.from_config(config)
        try:
            url = order_url or await engine.store.load_text(StoreKeys.ORDER, request.id)
            if not url:
                raise click.UsageError(f"No order stored for request {request.id}, pass --order-url")

            return await engine.orders.export(request, url, ExportType(export_type) if export_type else None)
        finally:
            await engine.close()

    issued = asyncio.run(run())
    Path(output).write_bytes(issued.data)
    click.echo(f"Exported {issued.subject} ({issued.export_type.value}) to {output}")


if __name__ == "__main__":
    main()
