import json

import acme.messages
import josepy
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from acmesign.client import AcmeClient
from acmesign.models import KeyAlgorithm
from acmesign.util import generate_key_pair, jwk_for
from .fakes import TOKEN


class FakeDirectoryServer:
    """Minimal ACME endpoints that record the JWS protected headers they receive."""

    def __init__(self):
        self.nonce = 0
        self.bad_nonces = 0
        self.headers = []
        self.payloads = []

        self.app = web.Application()
        self.app.router.add_get("/directory", self.directory)
        self.app.router.add_head("/nonce", self.new_nonce)
        self.app.router.add_post("/account", self.new_account)
        self.app.router.add_post("/order", self.new_order)
        self.app.router.add_post("/authz/1", self.authorization)
        self.server = test_utils.TestServer(self.app)

    def url(self, path):
        return str(self.server.make_url(path))

    def _nonce_headers(self):
        self.nonce += 1
        return {"Replay-Nonce": f"bm9uY2U{self.nonce:03d}"}

    async def _record(self, request):
        body = await request.json()
        self.headers.append(json.loads(josepy.b64decode(body["protected"])))
        if body["payload"]:
            self.payloads.append(json.loads(josepy.b64decode(body["payload"])))

    async def directory(self, request):
        return web.json_response(
            {
                "newNonce": self.url("/nonce"),
                "newAccount": self.url("/account"),
                "newOrder": self.url("/order"),
            }
        )

    async def new_nonce(self, request):
        return web.Response(headers=self._nonce_headers())

    async def new_account(self, request):
        await self._record(request)

        if self.bad_nonces:
            self.bad_nonces -= 1
            return web.json_response(
                {"type": "urn:ietf:params:acme:error:badNonce", "detail": "stale nonce"},
                status=400,
                content_type="application/problem+json",
                headers=self._nonce_headers(),
            )

        return web.json_response(
            {"status": "valid", "contact": ["mailto:hostmaster@example.com"]},
            status=201,
            headers={"Location": self.url("/acct/1"), **self._nonce_headers()},
        )

    async def new_order(self, request):
        await self._record(request)

        return web.json_response(
            {
                "status": "pending",
                "identifiers": [{"type": "dns", "value": "example.com"}],
                "authorizations": [self.url("/authz/1")],
                "finalize": self.url("/order/1/finalize"),
            },
            status=201,
            headers={"Location": self.url("/order/1"), **self._nonce_headers()},
        )

    async def authorization(self, request):
        await self._record(request)

        return web.json_response(
            {
                "identifier": {"type": "dns", "value": "example.com"},
                "status": "pending",
                "challenges": [{"type": "dns-01", "url": self.url("/chall/1"), "token": TOKEN}],
            },
            headers=self._nonce_headers(),
        )


@pytest_asyncio.fixture
async def server():
    s = FakeDirectoryServer()
    await s.server.start_server()
    yield s
    await s.server.close()


@pytest_asyncio.fixture
async def client(server):
    c = AcmeClient(directory_url=server.url("/directory"))
    c.use_account_key(*jwk_for(generate_key_pair(KeyAlgorithm.EC)))
    yield c
    await c.close()


@pytest.mark.asyncio
async def test_register_and_order(client, server):
    directory = await client.directory_get()
    assert directory["newOrder"] == server.url("/order")

    account = await client.account_register(email="hostmaster@example.com")
    assert account.kid == server.url("/acct/1")
    assert client.account is account

    order = await client.order_create(["example.com"])
    assert order.url == server.url("/order/1")
    assert order.status == acme.messages.STATUS_PENDING

    authorization = await client.authorization_get(order.authorizations[0])
    assert authorization.identifier.value == "example.com"

    # the account is identified by its key first and by its URL afterwards
    assert "jwk" in server.headers[0] and "kid" not in server.headers[0]
    assert server.headers[1]["kid"] == account.kid
    assert server.headers[1]["url"] == server.url("/order")
    assert server.headers[1]["alg"] == "ES256"


@pytest.mark.asyncio
async def test_bad_nonce_retried(client, server):
    server.bad_nonces = 2
    await client.directory_get()

    await client.account_register(email="hostmaster@example.com")

    assert len(server.headers) == 3
    assert len({header["nonce"] for header in server.headers}) == 3


@pytest.mark.asyncio
async def test_challenge_validation(client, server):
    await client.directory_get()
    await client.account_register(email="hostmaster@example.com")
    order = await client.order_create(["example.com"])
    authorization = await client.authorization_get(order.authorizations[0])

    name, text = client.challenge_validation(authorization.identifier, authorization.challenges[0])

    assert name == "_acme-challenge.example.com"
    assert text == authorization.challenges[0].chall.validation(client._private_key)


@pytest.mark.asyncio
async def test_account_lookup(client, server):
    await client.directory_get()

    account = await client.account_lookup()

    assert account.kid == server.url("/acct/1")
    assert client.account is account
    assert server.payloads[-1]["onlyReturnExisting"] is True
    assert "jwk" in server.headers[-1]
