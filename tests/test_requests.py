import asyncio

import pytest
from aioresponses import aioresponses
import aiohttp
from yarl import URL

from core.errors import ClientRequestError
from integrations.services import is_retryable_status, make_api_request, send_with_retry


pytestmark = pytest.mark.asyncio


async def _call(url, method='get', payload=None, retry_attempts=2):
    async with aiohttp.ClientSession() as session:
        return await make_api_request(
            session,
            url,
            api_key="dummy",
            method=method,
            json_data=payload,
            retry_attempts=retry_attempts,
            retry_backoff=0,
        )


async def test_make_api_request_success_json():
    url = "http://example.com/api"
    with aioresponses() as m:
        m.get(url, payload={"ok": True})
        resp = await _call(url)
        assert resp == {"ok": True}
        req = m.requests[('GET', URL(url))][0]
        assert req.kwargs['headers']['X-Api-Key'] == 'dummy'


async def test_make_api_request_success_no_content():
    url = "http://example.com/api/no-content"
    with aioresponses() as m:
        m.delete(url, status=204)
        resp = await _call(url, method='delete')
        assert resp == {"status": 204}


async def test_make_api_request_retries_then_success():
    url = "http://example.com/api/retry"
    with aioresponses() as m:
        m.get(url, status=500)
        m.get(url, payload={"ok": True})
        resp = await _call(url)
        assert resp == {"ok": True}


async def test_make_api_request_non_retriable_error():
    url = "http://example.com/api/not-found"
    with aioresponses() as m:
        m.get(url, status=404)
        resp = await _call(url)
        assert resp is None


async def test_make_api_request_does_not_retry_unauthorized():
    url = "http://example.com/api/auth"
    with aioresponses() as m:
        m.get(url, status=401)
        m.get(url, payload={"ok": True})
        resp = await _call(url)
        assert resp is None
        assert len(m.requests[('GET', URL(url))]) == 1


async def test_make_api_request_timeout_retries():
    url = "http://example.com/api/timeout"
    with aioresponses() as m:
        m.get(url, exception=asyncio.TimeoutError())
        m.get(url, payload={"ok": True})
        resp = await _call(url)
        assert resp == {"ok": True}


async def test_make_api_request_gives_up_after_retries():
    url = "http://example.com/api/down"
    with aioresponses() as m:
        for _ in range(3):
            m.get(url, status=503)
        resp = await _call(url, retry_attempts=2)
        assert resp is None
        assert len(m.requests[('GET', URL(url))]) == 3


def test_retryable_statuses():
    assert is_retryable_status(500)
    assert is_retryable_status(429)
    assert not is_retryable_status(401)
    assert not is_retryable_status(404)
    assert not is_retryable_status(None)


class _Resp:
    def __init__(self, status):
        self.status = status


async def test_send_with_retry_returns_after_retryable_status():
    statuses = [502, 200]
    calls = []

    async def send():
        calls.append(1)
        return _Resp(statuses.pop(0))

    resp = await send_with_retry(send, label='test', retry_attempts=2, retry_backoff=0)
    assert resp.status == 200
    assert len(calls) == 2


async def test_send_with_retry_raises_after_network_errors():
    calls = []

    async def send():
        calls.append(1)
        raise asyncio.TimeoutError()

    with pytest.raises(ClientRequestError):
        await send_with_retry(send, label='test', retry_attempts=1, retry_backoff=0)
    assert len(calls) == 2


async def test_send_with_retry_hands_back_unauthorized_immediately():
    calls = []

    async def send():
        calls.append(1)
        return _Resp(401)

    resp = await send_with_retry(send, label='test', retry_attempts=3, retry_backoff=0)
    assert resp.status == 401
    assert len(calls) == 1


async def test_make_api_request_empty_json_body_returns_status():
    url = "http://example.com/api/queue/1"
    with aioresponses() as m:
        m.delete(url, status=200, body='')
        resp = await _call(url, method='delete')
        assert resp == {"status": 200}
