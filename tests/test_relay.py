"""RelayClient (go2rtc API) のテスト. httpx.MockTransport で go2rtc を模擬."""

import httpx
import pytest

from web_stream_relay.relay import RelayClient, RelayStreamStats


def _client(handler) -> RelayClient:
    transport = httpx.MockTransport(handler)
    return RelayClient(
        "http://go2rtc:1984/",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
async def test_create_puts_stream():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    relay = _client(handler)
    await relay.create("stream_abc", "rtsp://127.0.0.1:8554/stream_abc")
    await relay.aclose()

    assert len(requests) == 1
    req = requests[0]
    assert req.method == "PUT"
    assert req.url.path == "/api/streams"
    assert req.url.params["name"] == "stream_abc"
    assert req.url.params["src"] == "rtsp://127.0.0.1:8554/stream_abc"


@pytest.mark.asyncio
async def test_list_all_counts_producers_and_consumers():
    payload = {
        "stream_a": {"producers": [{"url": "rtsp://a"}, {}], "consumers": [{}]},
        "stream_b": {"producers": [{}], "consumers": None},
        "stream_c": None,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        return httpx.Response(200, json=payload)

    relay = _client(handler)
    stats = await relay.list_all()
    await relay.aclose()

    assert stats == {
        "stream_a": RelayStreamStats(producer_count=2, consumer_count=1),
        "stream_b": RelayStreamStats(producer_count=1, consumer_count=0),
        "stream_c": RelayStreamStats(producer_count=0, consumer_count=0),
    }


@pytest.mark.asyncio
async def test_error_status_raises():
    relay = _client(lambda request: httpx.Response(500))
    with pytest.raises(httpx.HTTPStatusError):
        await relay.list_all()
    with pytest.raises(httpx.HTTPStatusError):
        await relay.create("stream_abc", "rtsp://x")
    await relay.aclose()


@pytest.mark.asyncio
async def test_unexpected_payload_raises_value_error():
    relay = _client(lambda request: httpx.Response(200, json=["not", "a", "dict"]))
    with pytest.raises(ValueError):
        await relay.list_all()
    await relay.aclose()
