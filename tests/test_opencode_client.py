from __future__ import annotations

import json

import httpx

from opencode_gateway.backends.opencode_client import OpenCodeBackend

BACKEND = "http://127.0.0.1:4097"


def _backend(handler) -> OpenCodeBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenCodeBackend(BACKEND, client=client)


async def test_prompt_request_body():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"info": {"role": "assistant"}, "parts": []})

    backend = _backend(handler)
    await backend.prompt(
        "ses_1",
        {"providerID": "opencode", "modelID": "m"},
        "sys",
        [{"type": "text", "text": "User: hi"}],
        tools={"bash": False},
    )
    assert seen["path"] == "/session/ses_1/message"
    assert seen["body"] == {
        "model": {"providerID": "opencode", "modelID": "m"},
        "parts": [{"type": "text", "text": "User: hi"}],
        "system": "sys",
        "tools": {"bash": False},
    }


async def test_create_session_returns_id():
    backend = _backend(lambda request: httpx.Response(200, json={"id": "ses_9"}))
    assert await backend.create_session() == "ses_9"

    empty = _backend(lambda request: httpx.Response(200, json={}))
    assert await empty.create_session() is None


async def test_event_stream_is_parsed():
    body = (
        ": keepalive\n\n"
        'data: {"type": "server.connected", "properties": {}}\n\n'
        "data: not-json\n\n"
        'data: {"type": "message.part.updated",\n'
        'data:  "properties": {"delta": "hi"}}\n\n'
    )

    def handler(request):
        assert request.url.path == "/event"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    backend = _backend(handler)
    events = []
    async with backend.subscribe_events() as stream:
        async for event in stream:
            events.append(event)

    assert [e["type"] for e in events] == ["server.connected", "message.part.updated"]
    assert events[1]["properties"]["delta"] == "hi"


async def test_tool_ids_filters_non_strings():
    backend = _backend(lambda request: httpx.Response(200, json=["bash", 3, "edit"]))
    assert await backend.tool_ids() == ["bash", "edit"]
