# test_transport.py
#
# Imports
import json
#
# Third-Party Imports
import httpx
import pytest
#
# Local Imports
from tad_Client_API.app.core.Sync.cache import QueryCache, cached_records, transcript_keys
from tad_Client_API.app.core.Sync.consistency import DataConsistencyService
from tad_Client_API.app.core.Sync.exceptions import TransportError
from tad_Client_API.app.core.Sync.models import IssueType, TranscriptRecord
from tad_Client_API.app.core.Sync.transport import HttpApiTransport
#
########################################################################################################################
#
# Tests:

BASE_URL = "http://dashboard.test/api"

RAW_RECORD = {
    "id": 1,
    "client_name": "Acme Health",
    "month": "2024-01",
    "transcript_count": 100,
    "created_at": "2024-01-05T00:00:00Z",
    "updated_at": "2024-02-01T00:00:00Z",
}


def make_transport(handler):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpApiTransport(BASE_URL, client=client)


@pytest.mark.asyncio
async def test_read_parses_wrapped_records():
    def handler(request):
        assert request.url.path == "/api/transcripts"
        return httpx.Response(200, json={"data": [RAW_RECORD]})

    transport = make_transport(handler)
    records = await transport.read()
    await transport.aclose()

    assert len(records) == 1
    assert records[0].id == "1"
    assert records[0].year == 2024
    assert records[0].updated_at.month == 2


@pytest.mark.asyncio
async def test_write_creates_and_updates():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json=dict(RAW_RECORD, id=1001, transcript_count=5))

    transport = make_transport(handler)
    created = await transport.write(None, {"transcript_count": 5})
    updated = await transport.write("1001", {"transcript_count": 5})
    await transport.aclose()

    assert [(m, p) for m, p, _ in seen] == [("POST", "/api/transcripts"), ("PUT", "/api/transcripts/1001")]
    assert created.id == updated.id == "1001"


@pytest.mark.asyncio
@pytest.mark.parametrize("status, message", [
    (429, "Rate limit exceeded"),
    (500, "Server returned 500"),
])
async def test_status_errors_become_transport_errors(status, message):
    transport = make_transport(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(TransportError) as exc_info:
        await transport.delete("1")
    await transport.aclose()

    assert exc_info.value.message == message
    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = make_transport(handler)

    with pytest.raises(TransportError, match="Network error"):
        await transport.read()
    assert await transport.test_connection() is False
    await transport.aclose()


@pytest.mark.asyncio
async def test_health_check():
    transport = make_transport(lambda request: httpx.Response(200, json={"status": "ok"}))
    assert await transport.test_connection() is True
    await transport.aclose()


def test_auth_header():
    transport = HttpApiTransport(BASE_URL, api_key="secret")
    assert transport._get_headers()["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_malformed_rows_fail_the_read():
    transport = make_transport(lambda request: httpx.Response(200, json=[RAW_RECORD, {"client_name": "No id"}]))

    with pytest.raises(TransportError) as exc_info:
        await transport.read()
    await transport.aclose()

    assert "1 malformed" in exc_info.value.message
    assert exc_info.value.context["errors"]


@pytest.mark.asyncio
async def test_malformed_rows_never_evict_local_records(fixed_clock):
    local = TranscriptRecord.from_dict(dict(RAW_RECORD, id=7))
    cache = QueryCache()
    cache.set(transcript_keys.lists(), (local,))
    transport = make_transport(lambda request: httpx.Response(200, json=[{"id": None, "client_name": "Acme Health"}]))
    service = DataConsistencyService(transport, cache, clock=fixed_clock)

    report = await service.perform_consistency_check()
    result = await service.repair_consistency_issues(report.issues)
    await transport.aclose()

    assert [(i.type, i.record_id) for i in report.issues] == [(IssueType.INVALID, "system")]
    assert result.repaired_issues == 0
    assert cached_records(cache) == (local,)


@pytest.mark.asyncio
async def test_write_with_invalid_json_response():
    transport = make_transport(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(TransportError, match="Invalid JSON"):
        await transport.write("1", {"transcript_count": 5})
    await transport.aclose()
