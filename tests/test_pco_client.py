"""
Upstream client: rate-limit retries and error mapping.
"""
import httpx
import pytest

from peoplesync.errors import UpstreamTransportError
from peoplesync.services.pco_client import PcoClient


async def test_rate_limited_request_waits_for_retry_after(pco_client, upstream, sleeps):
    upstream.add("GET", "/people/v2/lists", [
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json={"data": [], "links": {}}),
    ])

    page = await pco_client.get_json("/people/v2/lists", "token")

    assert page["data"] == []
    assert sleeps == [7]
    assert len(upstream.calls) == 2


async def test_rate_limit_without_retry_after_uses_default_wait(pco_client, upstream, sleeps):
    upstream.add("GET", "/people/v2/lists", [
        httpx.Response(429),
        httpx.Response(200, json={"data": [], "links": {}}),
    ])

    await pco_client.get_json("/people/v2/lists", "token")

    assert sleeps == [20]


async def test_rate_limit_gives_up_after_configured_retries(pco_client, upstream, sleeps):
    upstream.add("GET", "/people/v2/lists", lambda request: httpx.Response(429, headers={"Retry-After": "1"}))

    with pytest.raises(UpstreamTransportError) as exc_info:
        await pco_client.get_json("/people/v2/lists", "token")

    assert exc_info.value.status_code == 429
    assert len(upstream.calls) == 3
    assert sleeps == [1, 1]


async def test_network_failure_is_a_transport_error():
    def explode(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(explode)) as http_client:
        client = PcoClient(http_client, base_url="https://api.pco.test", client_id="c", client_secret="s")
        with pytest.raises(UpstreamTransportError) as exc_info:
            await client.get_json("/people/v2/me", "token")

    assert exc_info.value.status_code is None


async def test_absolute_next_links_are_used_verbatim(pco_client, upstream):
    upstream.add("GET", "/people/v2/people", httpx.Response(200, json={"data": [], "links": {}}))

    await pco_client.get_json("https://api.pco.test/people/v2/people?offset=100", "token")

    assert str(upstream.calls[0].url) == "https://api.pco.test/people/v2/people?offset=100"
    assert upstream.calls[0].headers["Authorization"] == "Bearer token"


async def test_deleting_missing_subscription_is_not_an_error(pco_client, upstream):
    await pco_client.delete_subscription("token", "404-sub")

    assert upstream.calls[0].method == "DELETE"
