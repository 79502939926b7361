import asyncio
import base64
import io
import json
import os

import httpx
import pytest

from gemini_image_mcp.server import serve
from gemini_image_mcp.transport import LineTransport


def _caption(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _image(data: bytes) -> dict:
    encoded = base64.b64encode(data).decode("ascii")
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": encoded}}]}}]}


def _call(request_id, tool: str, arguments: dict) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": tool, "arguments": arguments},
    }


async def _run(dispatcher, *messages) -> list[dict]:
    reader = asyncio.StreamReader()
    for message in messages:
        line = message if isinstance(message, str) else json.dumps(message)
        reader.feed_data(line.encode("utf-8") + b"\n")
    reader.feed_eof()
    out = io.BytesIO()
    await serve(LineTransport(reader, out), dispatcher)
    return [json.loads(line) for line in out.getvalue().decode("utf-8").splitlines()]


class Upstream:
    def __init__(self, body: dict | str | None = None, status: int = 200) -> None:
        self.body = body
        self.status = status
        self.calls = 0

    def __call__(self, _request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json=self.body or _caption("unused"))


@pytest.mark.asyncio
async def test_initialize_echoes_id_and_negotiates_version(make_dispatcher) -> None:
    dispatcher = make_dispatcher(Upstream())
    replies = await _run(
        dispatcher,
        {"jsonrpc": "2.0", "id": "init-1", "method": "initialize", "params": {"protocolVersion": "2025-03-26"}},
        {"jsonrpc": "2.0", "id": 2, "method": "initialize", "params": {"protocolVersion": "1999-01-01"}},
    )
    by_id = {reply["id"]: reply for reply in replies}

    first = by_id["init-1"]["result"]
    assert first["protocolVersion"] == "2025-03-26"
    assert first["capabilities"] == {"tools": {}}
    assert first["serverInfo"] == {"name": "gemini-image-mcp", "version": "1.1.0"}
    assert by_id[2]["result"]["protocolVersion"] == "2024-11-05"


@pytest.mark.asyncio
async def test_notifications_get_no_reply(make_dispatcher) -> None:
    replies = await _run(
        make_dispatcher(Upstream()),
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "method": "unknown/notification"},
    )
    assert replies == []


@pytest.mark.asyncio
async def test_notification_method_with_id_still_gets_a_reply(make_dispatcher) -> None:
    [reply] = await _run(
        make_dispatcher(Upstream()),
        {"jsonrpc": "2.0", "id": 11, "method": "notifications/initialized"},
    )
    assert reply["id"] == 11
    assert reply["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_unknown_method(make_dispatcher) -> None:
    [reply] = await _run(make_dispatcher(Upstream()), {"jsonrpc": "2.0", "id": 5, "method": "resources/list"})
    assert reply["id"] == 5
    assert reply["error"]["code"] == -32601
    assert reply["error"]["message"] == "Method not found: resources/list"


@pytest.mark.asyncio
async def test_parse_error_recovers_id(make_dispatcher) -> None:
    [reply] = await _run(make_dispatcher(Upstream()), '{"jsonrpc":"2.0","id":7,"method":')
    assert reply["id"] == 7
    assert reply["error"]["code"] == -32700


@pytest.mark.asyncio
async def test_parse_error_without_id_is_dropped(make_dispatcher) -> None:
    replies = await _run(
        make_dispatcher(Upstream()),
        "this is not json",
        {"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
    )
    assert [reply["id"] for reply in replies] == [1]


@pytest.mark.asyncio
async def test_invalid_envelope(make_dispatcher) -> None:
    [reply] = await _run(make_dispatcher(Upstream()), {"jsonrpc": "1.0", "id": 3, "method": "initialize"})
    assert reply["id"] == 3
    assert reply["error"]["code"] == -32600
    assert reply["error"]["message"].startswith("Invalid Request")


@pytest.mark.asyncio
async def test_tools_list_before_initialize_is_lenient(make_dispatcher) -> None:
    dispatcher = make_dispatcher(Upstream())
    [reply] = await _run(dispatcher, {"jsonrpc": "2.0", "id": 1, "method": "tools/list"})

    names = [tool["name"] for tool in reply["result"]["tools"]]
    assert names == ["analyze_image", "generate_image", "edit_image"]
    assert dispatcher.state.value == "ready"


@pytest.mark.asyncio
async def test_strict_lifecycle_rejects_early_tool_call(make_dispatcher, tmp_path) -> None:
    upstream = Upstream(_image(b"img"))
    dispatcher = make_dispatcher(upstream, strict_lifecycle=True)
    replies = await _run(
        dispatcher,
        {"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
        _call(2, "generate_image", {"user_prompt": "a cat", "output_path": str(tmp_path / "cat.png")}),
    )
    by_id = {reply["id"]: reply for reply in replies}

    assert "result" in by_id[1]
    assert by_id[2]["error"]["code"] == -32600
    assert "not initialized" in by_id[2]["error"]["message"]
    assert upstream.calls == 0
    assert not (tmp_path / "cat.png").exists()


@pytest.mark.asyncio
async def test_strict_lifecycle_allows_call_after_initialize(make_dispatcher, tmp_path) -> None:
    dispatcher = make_dispatcher(Upstream(_image(b"img")), strict_lifecycle=True)
    await _run(dispatcher, {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
    [reply] = await _run(
        dispatcher,
        _call(2, "generate_image", {"user_prompt": "a cat", "output_path": str(tmp_path / "cat.png")}),
    )
    assert reply["result"]["isError"] is False
    assert (tmp_path / "cat.png").read_bytes() == b"img"


@pytest.mark.asyncio
async def test_missing_argument_makes_no_outbound_calls(make_dispatcher) -> None:
    upstream = Upstream()
    [reply] = await _run(make_dispatcher(upstream), _call(9, "analyze_image", {"user_prompt": "what is this"}))

    assert reply["error"]["code"] == -32602
    assert reply["error"]["data"]["field"] == "image_source"
    assert "image_source" in reply["error"]["message"]
    assert upstream.calls == 0


@pytest.mark.asyncio
async def test_unknown_tool(make_dispatcher) -> None:
    [reply] = await _run(make_dispatcher(Upstream()), _call(4, "upscale_image", {}))
    assert reply["error"]["code"] == -32602
    assert reply["error"]["message"] == "Unknown tool: upscale_image"


@pytest.mark.asyncio
async def test_missing_tool_name(make_dispatcher) -> None:
    [reply] = await _run(make_dispatcher(Upstream()), {"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {}})
    assert reply["error"]["code"] == -32602
    assert reply["error"]["message"] == "Missing tool name"


@pytest.mark.asyncio
async def test_generate_writes_decoded_bytes(make_dispatcher, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    image = b"\x89PNG\r\n\x1a\nfake image payload"
    [reply] = await _run(
        make_dispatcher(Upstream(_image(image))),
        _call(1, "generate_image", {"user_prompt": "a red circle", "output_path": "./out.png"}),
    )

    result = reply["result"]
    assert result["isError"] is False
    assert result["content"][0]["text"] == "Image successfully generated and saved to: out.png"
    assert result["size_bytes"] == len(image)
    assert (tmp_path / "out.png").read_bytes() == image


@pytest.mark.asyncio
async def test_edit_reads_local_source(make_dispatcher, tmp_path, png_bytes) -> None:
    source = tmp_path / "in.png"
    source.write_bytes(png_bytes)
    target = tmp_path / "edited.png"
    seen: list[dict] = []

    def upstream(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=_image(b"edited"))

    [reply] = await _run(
        make_dispatcher(upstream),
        _call(
            1,
            "edit_image",
            {"image_source": str(source), "user_prompt": "make it blue", "output_path": str(target)},
        ),
    )

    assert reply["result"]["content"][0]["text"] == f"Image successfully edited and saved to: {target}"
    assert target.read_bytes() == b"edited"
    inline = seen[0]["contents"][0]["parts"][1]["inlineData"]
    assert base64.b64decode(inline["data"]) == png_bytes


@pytest.mark.asyncio
async def test_truncated_upstream_body_leaves_no_file(make_dispatcher, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    [reply] = await _run(
        make_dispatcher(Upstream('{"candidates": [{"content": ')),
        _call(1, "generate_image", {"user_prompt": "a red circle", "output_path": "out.png"}),
    )

    assert reply["error"]["code"] == -32603
    assert reply["error"]["data"]["kind"] == "MalformedUpstreamResponse"
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_concurrent_calls_complete_out_of_order(make_dispatcher, tmp_path, png_bytes, jpeg_bytes) -> None:
    slow_source = tmp_path / "slow.png"
    slow_source.write_bytes(png_bytes)
    fast_source = tmp_path / "fast.jpg"
    fast_source.write_bytes(jpeg_bytes)
    captions = {png_bytes: "a slow png", jpeg_bytes: "a fast jpeg"}

    async def upstream(request: httpx.Request) -> httpx.Response:
        inline = json.loads(request.content)["contents"][0]["parts"][0]["inlineData"]
        data = base64.b64decode(inline["data"])
        if data == png_bytes:
            await asyncio.sleep(0.2)
        return httpx.Response(200, json=_caption(captions[data]))

    replies = await _run(
        make_dispatcher(upstream),
        _call("a", "analyze_image", {"image_source": str(slow_source)}),
        _call("b", "analyze_image", {"image_source": str(fast_source)}),
    )

    assert [reply["id"] for reply in replies] == ["b", "a"]
    texts = {reply["id"]: reply["result"]["content"][0]["text"] for reply in replies}
    assert texts == {"a": "a slow png", "b": "a fast jpeg"}


@pytest.mark.asyncio
async def test_missing_credential(make_dispatcher, tmp_path) -> None:
    upstream = Upstream()
    [reply] = await _run(
        make_dispatcher(upstream, api_key=None),
        _call(1, "generate_image", {"user_prompt": "a cat", "output_path": str(tmp_path / "cat.png")}),
    )
    assert reply["error"]["code"] == -32001
    assert upstream.calls == 0


@pytest.mark.asyncio
async def test_oversized_remote_source(make_dispatcher, png_bytes) -> None:
    upstream = Upstream()

    def source(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=png_bytes * 4, headers={"content-type": "image/png"})

    [reply] = await _run(
        make_dispatcher(upstream, source=source, max_image_bytes=len(png_bytes)),
        _call(1, "analyze_image", {"image_source": "https://images.example.com/big.png"}),
    )
    assert reply["error"]["code"] == -32011
    assert upstream.calls == 0


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_reports_attempts(make_dispatcher, tmp_path, png_bytes) -> None:
    source = tmp_path / "in.png"
    source.write_bytes(png_bytes)
    upstream = Upstream(status=429)

    [reply] = await _run(
        make_dispatcher(upstream, max_attempts=3),
        _call(1, "analyze_image", {"image_source": str(source)}),
    )
    assert reply["error"]["code"] == -32003
    assert reply["error"]["data"]["attempts"] == 3
    assert upstream.calls == 3


@pytest.mark.asyncio
async def test_unexpected_failure_keeps_serving(make_dispatcher, monkeypatch) -> None:
    dispatcher = make_dispatcher(Upstream())

    async def crash(_schema, _arguments):
        raise RuntimeError("boom")

    monkeypatch.setattr(dispatcher.runner, "run", crash)
    replies = await _run(
        dispatcher,
        _call(1, "analyze_image", {"image_source": "https://example.com/a.png"}),
        {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
    )
    by_id = {reply["id"]: reply for reply in replies}

    assert by_id[1]["error"]["code"] == -32603
    assert by_id[1]["error"]["message"] == "Internal error"
    assert len(by_id[2]["result"]["tools"]) == 3


@pytest.mark.asyncio
async def test_cancelling_serve_abandons_in_flight_calls(make_dispatcher, tmp_path, png_bytes) -> None:
    source = tmp_path / "in.png"
    source.write_bytes(png_bytes)
    entered = asyncio.Event()
    release = asyncio.Event()
    cancelled = False

    async def upstream(_request: httpx.Request) -> httpx.Response:
        nonlocal cancelled
        entered.set()
        try:
            await release.wait()
        except asyncio.CancelledError:
            cancelled = True
            raise
        return httpx.Response(200, json=_caption("too late"))

    reader = asyncio.StreamReader()
    reader.feed_data(json.dumps(_call(1, "analyze_image", {"image_source": str(source)})).encode() + b"\n")
    out = io.BytesIO()
    task = asyncio.create_task(serve(LineTransport(reader, out), make_dispatcher(upstream)))

    await asyncio.wait_for(entered.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=5)

    assert cancelled is True
    assert out.getvalue() == b""
