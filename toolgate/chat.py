"""Chat-completion exchanges against the configured backend."""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from fastapi import HTTPException

from .config import Config
from .errors import StreamTimeoutError, UpstreamError
from .reinjection import (
    RETRY,
    SALVAGE,
    ReinjectionCounters,
    ToolIterationGuard,
    apply_salvage,
    corrective_messages,
    inspect_reply,
    tool_schemas,
)

logger = logging.getLogger(__name__)


@dataclass
class ChatExchange:
    model: str
    messages: List[Dict[str, Any]]
    stream: bool = False
    tools: Optional[List[Any]] = None
    functions: Optional[List[Any]] = None
    tool_choice: Any = None
    # everything else the client sent (temperature, max_tokens, ...)
    extra: Dict[str, Any] = field(default_factory=dict)
    counters: ReinjectionCounters = field(default_factory=ReinjectionCounters)

    @classmethod
    def from_payload(cls, payload: Any) -> "ChatExchange":
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")
        model = payload.get("model")
        messages = payload.get("messages")
        if not model:
            raise HTTPException(status_code=400, detail="Missing required field 'model'")
        if not isinstance(messages, list):
            raise HTTPException(status_code=400, detail="Missing required field 'messages' (must be a list)")
        for position, message in enumerate(messages):
            if not isinstance(message, dict) or not isinstance(message.get("role"), str):
                raise HTTPException(
                    status_code=400,
                    detail=f"messages[{position}] must be an object with a string 'role'",
                )

        known = {"model", "messages", "stream", "tools", "functions", "tool_choice"}
        return cls(
            model=model,
            messages=messages,
            stream=bool(payload.get("stream")),
            tools=payload.get("tools"),
            functions=payload.get("functions"),
            tool_choice=payload.get("tool_choice"),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    @property
    def schemas(self) -> List[Dict[str, Any]]:
        return tool_schemas(self.tools, self.functions)

    @property
    def tool_names(self) -> List[str]:
        return [s["name"] for s in self.schemas]

    def to_payload(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload = {"model": self.model, "messages": messages, **self.extra}
        if self.tools is not None:
            payload["tools"] = self.tools
        if self.functions is not None:
            payload["functions"] = self.functions
        if self.tool_choice is not None:
            payload["tool_choice"] = self.tool_choice
        payload["stream"] = self.stream
        return payload


def upstream_message(status: int, text: str) -> Tuple[str, Any]:
    """Best-effort extraction of the backend's own error message."""
    try:
        body = json.loads(text)
    except ValueError:
        return (text.strip() or f"Backend returned status {status}"), text
    message = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
        elif isinstance(error, str):
            message = error
        message = message or body.get("message") or body.get("detail")
    return (message if isinstance(message, str) else f"Backend returned status {status}"), body


class ChatClient:
    def __init__(self, config: Config, session: aiohttp.ClientSession):
        self.config = config
        self.session = session

    @property
    def url(self) -> str:
        return self.config.chat_completions_url

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=None, sock_connect=10, sock_read=self.config.idle_timeout)

    async def open_stream(self, exchange: ChatExchange, messages: List[Dict[str, Any]],
                          headers: Dict[str, str]) -> aiohttp.ClientResponse:
        """
        Start a streamed completion and return the live upstream response.

        The caller owns the response and must close it. A non-success status is
        raised as ``UpstreamError`` before any byte reaches the client.
        """
        headers = dict(headers, Accept="text/event-stream")
        try:
            resp = await self.session.post(
                self.url, json=exchange.to_payload(messages), headers=headers, timeout=self._timeout()
            )
        except asyncio.TimeoutError as e:
            raise StreamTimeoutError("Timed out waiting for the backend to respond") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Error contacting backend: {e}") from e

        if resp.status >= 400:
            try:
                text = await resp.text()
            finally:
                resp.close()
            message, body = upstream_message(resp.status, text)
            raise UpstreamError(message, resp.status, body)
        return resp

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> Tuple[int, str]:
        try:
            async with self.session.post(self.url, json=payload, headers=headers, timeout=self._timeout()) as resp:
                return resp.status, await resp.text()
        except asyncio.TimeoutError as e:
            raise StreamTimeoutError("Timed out waiting for the backend to respond") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Error contacting backend: {e}") from e

    async def complete(self, exchange: ChatExchange, messages: List[Dict[str, Any]],
                       headers: Dict[str, str]) -> Tuple[int, Any]:
        """
        Buffered completion. Returns ``(status, body)`` where body is the parsed
        JSON or, if the backend did not answer with JSON, the raw text.
        """
        guard = ToolIterationGuard(self.config.max_tool_iterations)
        check_tools = bool(exchange.schemas) and exchange.tool_choice != "none"

        while True:
            guard.advance()
            status, text = await self._post(exchange.to_payload(messages), headers)
            if status >= 400:
                message, body = upstream_message(status, text)
                raise UpstreamError(message, status, body)
            try:
                body = json.loads(text)
            except ValueError:
                return status, text

            if not check_tools:
                return status, body

            verdict = inspect_reply(body, exchange.tool_names, exchange.tool_choice)
            if verdict.action == SALVAGE:
                logger.info("[CHAT COMPLETIONS] Recovered %d text-encoded tool call(s)", len(verdict.tool_calls))
                return status, apply_salvage(body, verdict)
            if verdict.action != RETRY:
                return status, body
            if guard.exhausted:
                logger.warning(
                    "[CHAT COMPLETIONS] Tool iteration limit (%d) reached, returning last response",
                    guard.max_iterations,
                )
                return status, body

            logger.info(
                "[CHAT COMPLETIONS] Expected tool call missing, retrying (%d/%d)",
                guard.iterations, guard.max_iterations,
            )
            messages = corrective_messages(messages, verdict)
