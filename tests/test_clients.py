import httpx
import pytest

from printfarm.core.exceptions import DeviceUnreachable, MeterUnavailable
from printfarm.models import Device, Job
from printfarm.services.device.client import DeviceClient
from printfarm.services.device.meter import MeterClient

DEVICE = Device(id=3, name="P-03", ip_address="192.168.1.53", port=7125)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_query_status_returns_status_block():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "192.168.1.53"
        assert request.url.port == 7125
        assert request.url.path == "/printer/objects/query"
        return httpx.Response(200, json={"result": {"status": {"print_stats": {"state": "standby"}}}})

    client = DeviceClient(http_client=_client(handler))
    status = await client.query_status(DEVICE)
    await client.close()

    assert status == {"print_stats": {"state": "standby"}}


@pytest.mark.asyncio
async def test_query_status_connection_error_is_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    client = DeviceClient(http_client=_client(handler))
    with pytest.raises(DeviceUnreachable) as exc_info:
        await client.query_status(DEVICE)
    await client.close()

    assert exc_info.value.device_id == 3
    assert "ConnectError" in exc_info.value.message


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(503),
    httpx.Response(200, text="<html>not json</html>"),
    httpx.Response(200, json={"result": {}}),
    httpx.Response(200, json={"result": ["nope"]}),
    httpx.Response(200, json={"result": {"status": "ready"}}),
    httpx.Response(200, json=["result"]),
])
async def test_query_status_bad_responses_are_unreachable(response):
    client = DeviceClient(http_client=_client(lambda request: response))
    with pytest.raises(DeviceUnreachable):
        await client.query_status(DEVICE)
    await client.close()


@pytest.mark.asyncio
async def test_start_print_posts_file_name():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"result": "ok"})

    client = DeviceClient(http_client=_client(handler))
    await client.start_print(DEVICE, Job(id=9, job_code="JOB-9", name="Bracket", file_name="bracket v2.gcode"))
    await client.close()

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/printer/print/start"
    assert seen[0].url.params["filename"] == "bracket v2.gcode"


@pytest.mark.asyncio
@pytest.mark.parametrize("command, path", [
    ("pause_print", "/printer/print/pause"),
    ("resume_print", "/printer/print/resume"),
    ("cancel_print", "/printer/print/cancel"),
])
async def test_print_commands_post_to_moonraker(command, path):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"result": "ok"})

    client = DeviceClient(http_client=_client(handler))
    await getattr(client, command)(DEVICE)
    await client.close()

    assert seen[0].method == "POST"
    assert seen[0].url.host == "192.168.1.53"
    assert seen[0].url.path == path


@pytest.mark.asyncio
async def test_rejected_print_command_is_unreachable():
    client = DeviceClient(http_client=_client(lambda request: httpx.Response(400, json={"error": "Not printing"})))
    with pytest.raises(DeviceUnreachable) as exc_info:
        await client.pause_print(DEVICE)
    await client.close()

    assert exc_info.value.device_id == 3
    assert exc_info.value.message.startswith("Pause command failed")


@pytest.mark.asyncio
@pytest.mark.parametrize("body, expected", [({"kw": 3.25}, 3.25), ({"currentKw": "4.1"}, 4.1)])
async def test_meter_reads_kw(body, expected):
    meter = MeterClient("http://meter.local/api/power", http_client=_client(lambda request: httpx.Response(200, json=body)))
    assert await meter.read_kw() == pytest.approx(expected)
    await meter.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500),
    httpx.Response(200, json={"watts": 1200}),
    httpx.Response(200, text="garbage"),
])
async def test_meter_failures_raise_unavailable(response):
    meter = MeterClient("http://meter.local/api/power", http_client=_client(lambda request: response))
    with pytest.raises(MeterUnavailable):
        await meter.read_kw()
    await meter.close()
