"""Backend double and payload builders shared by the test modules."""
import asyncio
import json
from typing import Any, Dict, List

from aiohttp import web


class FakeBackend:
    """Scriptable stand-in for an OpenAI-style (and optionally Ollama) backend."""

    def __init__(self):
        self.models: List[Dict[str, Any]] = [
            {"id": "llama3-8b-instruct", "object": "model", "max_model_len": 8192},
            {"id": "qwen2.5-32b", "object": "model"},
        ]
        self.models_status = 200
        self.show_status = 200
        self.show_response: Dict[str, Any] = {
            "template": "{{system}}\n{{user}}\n{{assistant}}",
            "details": {"family": "llama"},
        }
        self.tags_response: Dict[str, Any] = {"models": [{"name": "llama3:latest"}]}
        self.chat_status = 200
        self.chat_replies: List[Any] = []
        # bytes are written as-is, floats are pauses in seconds
        self.stream_script: List[Any] = []
        self.requests: List[Dict[str, Any]] = []

    def record(self, request: web.Request, body: Any = None) -> None:
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "headers": dict(request.headers),
            "body": body,
        })

    def last(self, path: str) -> Dict[str, Any]:
        return [r for r in self.requests if r["path"] == path][-1]

    def count(self, path: str) -> int:
        return len([r for r in self.requests if r["path"] == path])

    async def list_models(self, request: web.Request) -> web.Response:
        self.record(request)
        if self.models_status != 200:
            return web.json_response({"error": "listing unavailable"}, status=self.models_status)
        return web.json_response({"object": "list", "data": self.models})

    async def show(self, request: web.Request) -> web.Response:
        self.record(request, await request.json())
        return web.json_response(json.loads(json.dumps(self.show_response)), status=self.show_status)

    async def tags(self, request: web.Request) -> web.Response:
        self.record(request)
        return web.json_response(self.tags_response)

    async def chat(self, request: web.Request) -> web.StreamResponse:
        body = await request.json()
        self.record(request, body)
        if self.chat_status != 200:
            return web.json_response({"error": {"message": "backend exploded"}}, status=self.chat_status)

        if not body.get("stream"):
            reply = self.chat_replies.pop(0) if len(self.chat_replies) > 1 else self.chat_replies[0]
            return web.json_response(reply)

        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        for step in self.stream_script:
            if isinstance(step, float):
                await asyncio.sleep(step)
            else:
                await resp.write(step)
        await resp.write_eof()
        return resp

    async def echo(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self.record(request, raw.decode("utf-8"))
        return web.json_response(
            {"method": request.method, "query": dict(request.query), "body": raw.decode("utf-8")},
            headers={"X-Backend": "fake"},
        )

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/v1/models", self.list_models)
        app.router.add_post("/v1/chat/completions", self.chat)
        app.router.add_post("/api/show", self.show)
        app.router.add_get("/api/tags", self.tags)
        app.router.add_route("*", "/v1/echo", self.echo)
        return app


def sse(payload: Any) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def chunk(delta: Dict[str, Any], finish_reason=None, index: int = 0) -> Dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "model": "llama3-8b-instruct",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
    }


def completion(content=None, tool_calls=None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "model": "llama3-8b-instruct",
        "choices": [{"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
    }


WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Current weather for a city",
        "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
    },
}


