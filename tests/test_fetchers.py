"""Tests for the HTTP content fetcher."""
import json

import httpx
import pytest

from triple_helix.errors import ContentFetchError
from triple_helix.fetchers import BATCH_ENDPOINT, HttpContentFetcher, InMemoryContentFetcher

from .factories import make_stitch


def _fetcher(handler, retry_attempts=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpContentFetcher(
        "http://content.local/",
        api_key="secret",
        retry_attempts=retry_attempts,
        backoff_seconds=0,
        client=client,
    )


@pytest.fixture
def stitch_payload():
    return make_stitch("stitch-T1-001-04", order=4).to_wire()


@pytest.mark.asyncio
async def test_posts_ids_and_parses_stitches(stitch_payload):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "stitches": [stitch_payload]})

    fetcher = _fetcher(handler)
    stitches = await fetcher.fetch(["stitch-T1-001-04", "stitch-T1-001-05"])
    await fetcher.close()

    assert [stitch.id for stitch in stitches] == ["stitch-T1-001-04"]
    assert stitches[0].thread_id == "thread-T1-001"
    assert stitches[0].questions[0].distractors[1]
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == BATCH_ENDPOINT
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {"stitchIds": ["stitch-T1-001-04", "stitch-T1-001-05"]}


@pytest.mark.asyncio
async def test_empty_request_skips_network():
    def handler(request):
        raise AssertionError("no request expected")

    fetcher = _fetcher(handler)
    assert await fetcher.fetch([]) == []


@pytest.mark.asyncio
async def test_server_errors_are_retried(stitch_payload):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"success": True, "stitches": [stitch_payload]})

    stitches = await _fetcher(handler).fetch(["stitch-T1-001-04"])

    assert len(calls) == 2
    assert len(stitches) == 1


@pytest.mark.asyncio
async def test_client_errors_fail_fast():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404)

    with pytest.raises(ContentFetchError):
        await _fetcher(handler).fetch(["stitch-T1-001-04"])
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_timeouts_exhaust_retries():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("slow content server", request=request)

    with pytest.raises(ContentFetchError):
        await _fetcher(handler, retry_attempts=2).fetch(["stitch-T1-001-04"])
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_reported_failure_raises():
    def handler(request):
        return httpx.Response(200, json={"success": False, "error": "manifest out of date"})

    with pytest.raises(ContentFetchError, match="manifest out of date"):
        await _fetcher(handler).fetch(["stitch-T1-001-04"])


@pytest.mark.asyncio
async def test_non_json_body_raises():
    def handler(request):
        return httpx.Response(200, content=b"<html>maintenance</html>")

    with pytest.raises(ContentFetchError):
        await _fetcher(handler).fetch(["stitch-T1-001-04"])


@pytest.mark.asyncio
async def test_malformed_stitches_are_skipped(stitch_payload):
    def handler(request):
        return httpx.Response(
            200,
            json={"success": True, "stitches": [{"id": "stitch-T1-001-05"}, stitch_payload]},
        )

    stitches = await _fetcher(handler).fetch(["stitch-T1-001-04", "stitch-T1-001-05"])

    assert [stitch.id for stitch in stitches] == ["stitch-T1-001-04"]


@pytest.mark.asyncio
async def test_in_memory_fetcher_records_requests():
    fetcher = InMemoryContentFetcher([make_stitch("a")])

    stitches = await fetcher.fetch(["a", "b"])

    assert [stitch.id for stitch in stitches] == ["a"]
    assert fetcher.requests == [["a", "b"]]
    fetcher.fail = True
    with pytest.raises(ContentFetchError):
        await fetcher.fetch(["a"])
