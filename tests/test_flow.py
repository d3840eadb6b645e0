from pathlib import Path

import aiohttp
import pytest
from cryptography import x509

from acmesign.client.exceptions import AuthorizationInvalid, OrderInvalid, StateTerminated
from acmesign.flow import FlowState, SignFlow, SignFlowContext
from acmesign.renewal import RenewalChecker
from acmesign.sink import DirectoryCertificateSink
from acmesign.store import StoreKeys
from acmesign.util import certificate_matches_key, load_chain


@pytest.fixture
def sink(tmp_path):
    return DirectoryCertificateSink(DirectoryCertificateSink.Config(directory=tmp_path / "certs"))


@pytest.fixture
def flow(orders, store, sink):
    return SignFlow(RenewalChecker(store), orders, store, sink)


@pytest.mark.asyncio
async def test_sign(flow, ca, provider, store, sink, cert_request):
    context = await flow.run(cert_request)

    issued = context.certificate
    assert issued is not None
    assert issued.not_after == ca.not_after
    assert provider.max_live == 2
    assert sorted(provider.removed) == sorted(provider.added)

    assert await store.exists(StoreKeys.PFX_FILE, cert_request.id)
    assert not await store.exists(StoreKeys.ORDER, cert_request.id)

    assert Path(context.location).read_bytes() == issued.chain
    assert load_chain(Path(context.location).read_bytes())[0] == issued.certificate


@pytest.mark.asyncio
async def test_up_to_date(flow, ca, cert_request):
    await flow.run(cert_request)
    context = await flow.run(cert_request)

    assert context.certificate is None
    assert ca.calls["order_create"] == 1


@pytest.mark.asyncio
async def test_force(flow, ca, cert_request):
    first = await flow.run(cert_request)
    second = await flow.run(cert_request, force=True)

    assert ca.calls["order_create"] == 2
    assert second.certificate.certificate != first.certificate.certificate


@pytest.mark.asyncio
async def test_resume_after_failure(flow, ca, provider, store, cert_request):
    ca.outcomes["b.example.com"] = "invalid"

    with pytest.raises(AuthorizationInvalid):
        await flow.run(cert_request)

    order_url = await store.load_text(StoreKeys.ORDER, cert_request.id)
    assert order_url is not None

    # the failed authorization made the order invalid, so the next run starts over
    del ca.outcomes["b.example.com"]
    context = await flow.run(cert_request)

    assert context.certificate.order_url != order_url
    assert ca.calls["order_create"] == 2
    assert sorted(provider.removed) == sorted(provider.added)


@pytest.mark.asyncio
async def test_invalid_order_forgotten(flow, ca, store, cert_request):
    ca.order_outcome = "invalid"

    with pytest.raises(OrderInvalid):
        await flow.run(cert_request)

    assert not await store.exists(StoreKeys.ORDER, cert_request.id)


@pytest.mark.asyncio
async def test_transitions(flow, cert_request):
    context = SignFlowContext(request=cert_request)

    assert await flow.transition(FlowState.CHECK_RENEWAL, context) == FlowState.CREATE_CERTIFICATE
    assert await flow.transition(FlowState.CREATE_CERTIFICATE, context) == FlowState.TERMINAL
    assert isinstance(context.certificate.certificate, x509.Certificate)

    assert await flow.transition(FlowState.CHECK_RENEWAL, context) == FlowState.TERMINAL

    with pytest.raises(StateTerminated):
        await flow.transition(FlowState.TERMINAL, context)


@pytest.mark.asyncio
async def test_lost_finalize_response(flow, ca, store, cert_request):
    first = await flow.run(cert_request)

    # the CA accepts the CSR of the renewal but the response is lost
    ca.finalize_errors = 1
    with pytest.raises(aiohttp.ClientConnectionError):
        await flow.run(cert_request, force=True)
    order_url = await store.load_text(StoreKeys.ORDER, cert_request.id)

    third = await flow.run(cert_request, force=True)

    assert third.certificate.order_url == order_url
    assert third.certificate.certificate != first.certificate.certificate
    assert certificate_matches_key(third.certificate.certificate, third.certificate.private_key)
    assert ca.calls["order_finalize"] == 2
    assert ca.calls["certificate_get"] == 2
