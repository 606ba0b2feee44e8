"""Tests for the plain HTTP tier: retry policy, backoff, Retry-After and cookies."""
import httpx
import pytest

from threatharvest.core.exceptions import NetworkError
from threatharvest.services.http_client import (
    MAX_RETRY_AFTER_MS,
    CookieJar,
    HTTPClient,
    classify_network_error,
    compute_backoff,
    parse_retry_after,
)

URL = "https://news.example.com/story"


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _scripted(responses):
    """MockTransport handler replaying `responses` in order; exceptions are raised. The last item repeats."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        # Fresh object per call; httpx binds a response to its request
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    return handler, calls


def _client(handler, sleep, **kwargs) -> HTTPClient:
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("base_delay_ms", 1000)
    kwargs.setdefault("max_delay_ms", 10000)
    return HTTPClient(transport=httpx.MockTransport(handler), sleep=sleep, **kwargs)


class TestComputeBackoff:
    def test_doubles_from_base(self):
        assert [compute_backoff(n, 1000, 60000) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_capped(self):
        assert compute_backoff(10, 1000, 5000) == 5000

    def test_non_decreasing_and_bounded(self):
        delays = [compute_backoff(n, 250, 3000) for n in range(1, 15)]
        assert delays == sorted(delays)
        assert max(delays) <= 3000

    def test_zero_before_first_retry(self):
        assert compute_backoff(0, 1000, 5000) == 0


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        "value,expected",
        [("2", 2000), ("0.5", 500), (" 3 ", 3000), (None, None), ("", None), ("soon", None), ("-1", None)],
    )
    def test_values(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_http_date_ignored(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None


class TestClassifyNetworkError:
    def test_timeout(self):
        assert classify_network_error(httpx.ReadTimeout("timed out")) == "timeout"

    def test_dns(self):
        assert classify_network_error(httpx.ConnectError("[Errno -2] Name or service not known")) == "dns"

    def test_connection(self):
        assert classify_network_error(httpx.ConnectError("Connection refused")) == "connection"


class TestCookieJar:
    def test_shared_jar_spans_hosts(self):
        jar = CookieJar(shared=True)
        jar.update("a.example", {"session": "1"})
        assert jar.get("b.example") == {"session": "1"}

    def test_per_host_jar(self):
        jar = CookieJar(shared=False)
        jar.update("a.example", {"session": "1"})
        assert jar.get("b.example") == {}
        assert jar.header("a.example") == "session=1"

    def test_clear(self):
        jar = CookieJar()
        jar.update("a.example", {"x": "y"})
        jar.clear()
        assert jar.header("a.example") == ""


class TestHTTPClientFetch:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        handler, calls = _scripted([httpx.Response(200, text="<html>ok</html>")])
        sleep = SleepRecorder()
        response = await _client(handler, sleep).fetch(URL)
        assert response.status == 200
        assert response.body == "<html>ok</html>"
        assert len(calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_profile_headers_sent(self):
        handler, calls = _scripted([httpx.Response(200, text="ok")])
        await _client(handler, SleepRecorder()).fetch(URL, headers={"X-Custom": "1"})
        sent = calls[0].headers
        assert "Mozilla/5.0" in sent["user-agent"]
        assert sent["x-custom"] == "1"

    @pytest.mark.asyncio
    async def test_retry_after_honored(self):
        handler, calls = _scripted([
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, text="ok"),
        ])
        sleep = SleepRecorder()
        response = await _client(handler, sleep).fetch(URL)
        assert response.status == 200
        assert len(calls) == 2
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_does_not_advance_backoff(self):
        handler, _ = _scripted([
            httpx.Response(503),
            httpx.Response(429),
            httpx.Response(503),
            httpx.Response(200, text="ok"),
        ])
        sleep = SleepRecorder()
        response = await _client(handler, sleep, max_retries=4).fetch(URL)
        assert response.status == 200
        # 503 -> 1s, 429 -> next backoff step (2s) without consuming it, 503 -> 2s
        assert sleep.delays == [1.0, 2.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_after_capped(self):
        handler, _ = _scripted([
            httpx.Response(429, headers={"Retry-After": "3600"}),
            httpx.Response(200, text="ok"),
        ])
        sleep = SleepRecorder()
        await _client(handler, sleep).fetch(URL)
        assert sleep.delays == [MAX_RETRY_AFTER_MS / 1000]

    @pytest.mark.asyncio
    async def test_server_errors_back_off_exponentially(self):
        handler, calls = _scripted([httpx.Response(502), httpx.Response(503), httpx.Response(504)])
        sleep = SleepRecorder()
        response = await _client(handler, sleep).fetch(URL)
        # Retries spent: the last response is handed back for classification
        assert response.status == 504
        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_backoff_never_exceeds_ceiling(self):
        handler, _ = _scripted([httpx.Response(500)])
        sleep = SleepRecorder()
        await _client(handler, sleep, max_retries=8, base_delay_ms=500, max_delay_ms=3000).fetch(URL)
        assert sleep.delays == sorted(sleep.delays)
        assert max(sleep.delays) <= 3.0

    @pytest.mark.asyncio
    async def test_dns_error_fails_fast(self):
        handler, calls = _scripted([httpx.ConnectError("Temporary failure in name resolution")])
        sleep = SleepRecorder()
        with pytest.raises(NetworkError) as exc_info:
            await _client(handler, sleep).fetch(URL)
        assert exc_info.value.kind == "dns"
        assert exc_info.value.reason == "network_dns"
        assert len(calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_connection_error_retried_then_raised(self):
        handler, calls = _scripted([httpx.ConnectError("Connection refused")])
        sleep = SleepRecorder()
        with pytest.raises(NetworkError) as exc_info:
            await _client(handler, sleep).fetch(URL)
        assert exc_info.value.kind == "connection"
        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_timeout_then_success(self):
        handler, _ = _scripted([httpx.ReadTimeout("slow"), httpx.Response(200, text="ok")])
        response = await _client(handler, SleepRecorder()).fetch(URL)
        assert response.status == 200

    @pytest.mark.asyncio
    async def test_forbidden_returned_without_retry(self):
        handler, calls = _scripted([httpx.Response(403, text="blocked")])
        response = await _client(handler, SleepRecorder()).fetch(URL)
        assert response.status == 403
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cookies_carried_to_next_request(self):
        handler, calls = _scripted([
            httpx.Response(503, headers={"Set-Cookie": "dd=abc; Path=/"}),
            httpx.Response(200, text="ok"),
        ])
        client = _client(handler, SleepRecorder())
        await client.fetch(URL)
        assert "dd=abc" in calls[1].headers.get("cookie", "")
        await client.close()

    @pytest.mark.asyncio
    async def test_response_headers_lowercased(self):
        handler, _ = _scripted([httpx.Response(200, headers={"X-DataDome": "1"}, text="ok")])
        response = await _client(handler, SleepRecorder()).fetch(URL)
        assert response.headers["x-datadome"] == "1"
