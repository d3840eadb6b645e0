import datetime

import pytest
from cryptography.hazmat.primitives import serialization

from acmesign.renewal import RenewalChecker
from acmesign.store import StoreKeys
from acmesign.util import export_pfx
from .fakes import make_certificate, utcnow


def _pem(not_after):
    cert, key = make_certificate("example.com", not_after)
    return cert.public_bytes(serialization.Encoding.PEM), key


def test_no_certificate():
    checker = RenewalChecker()

    assert checker.needs_renewal(None)
    assert checker.needs_renewal(b"")


@pytest.mark.parametrize(
    "offset, renew",
    [
        (datetime.timedelta(seconds=-1), True),
        (datetime.timedelta(days=-10), True),
        (datetime.timedelta(days=30), False),
    ],
)
def test_expiry(offset, renew):
    pem, _ = _pem(utcnow() + offset)

    assert RenewalChecker().needs_renewal(pem) is renew


def test_expires_now():
    now = utcnow().replace(microsecond=0)
    pem, _ = _pem(now)

    assert RenewalChecker().needs_renewal(pem, now=now)


def test_pfx():
    pem, key = _pem(utcnow() + datetime.timedelta(days=30))
    pfx = export_pfx(pem, key, "secret")

    assert not RenewalChecker().needs_renewal(pfx, "secret")


def test_renew_before():
    pem, _ = _pem(utcnow() + datetime.timedelta(days=10))

    assert not RenewalChecker().needs_renewal(pem)
    assert RenewalChecker(renew_before=datetime.timedelta(days=14)).needs_renewal(pem)


@pytest.mark.asyncio
async def test_check(store, cert_request):
    checker = RenewalChecker(store)
    assert await checker.check(cert_request)

    pem, key = _pem(utcnow() + datetime.timedelta(days=30))
    await store.save_raw(export_pfx(pem, key, cert_request.pfx_password), StoreKeys.PFX_FILE, cert_request.id)

    assert not await checker.check(cert_request)


@pytest.mark.asyncio
async def test_check_unreadable(store, cert_request):
    pem, key = _pem(utcnow() + datetime.timedelta(days=30))
    await store.save_raw(export_pfx(pem, key, "old password"), StoreKeys.PFX_FILE, cert_request.id)

    assert await RenewalChecker(store).check(cert_request)
