"""
Server-sent-event relay for streamed chat completions.

Content and reasoning deltas pass straight through. Tool-call deltas are held
back and stitched together per index, then emitted as complete calls once the
choice reports a finish reason. Two bounds protect the process: the bytes held
back may not exceed ``max_buffer_size`` and the backend may not stay silent for
longer than ``idle_timeout`` seconds.
"""
import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from .errors import StreamOverflowError, StreamTimeoutError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class ToolCallFragment:
    index: int
    id: Optional[str] = None
    type: str = "function"
    name: Optional[str] = None
    arguments: List[str] = field(default_factory=list)

    def append(self, delta: Dict[str, Any]) -> None:
        if delta.get("id"):
            self.id = delta["id"]
        if delta.get("type"):
            self.type = delta["type"]
        function = delta.get("function") or {}
        if function.get("name") and not self.name:
            self.name = function["name"]
        if function.get("arguments"):
            self.arguments.append(function["arguments"])

    @property
    def buffered_bytes(self) -> int:
        return sum(len(part.encode("utf-8")) for part in self.arguments)

    def to_dict(self) -> Dict[str, Any]:
        call = {
            "index": self.index,
            "type": self.type,
            "function": {"name": self.name or "", "arguments": "".join(self.arguments)},
        }
        if self.id:
            call["id"] = self.id
        return call


class StreamBridge:
    def __init__(self, max_buffer_size: int, idle_timeout: float):
        self.max_buffer_size = max_buffer_size
        self.idle_timeout = idle_timeout
        # (choice index, tool index) -> fragment still being assembled
        self.pending: Dict[Tuple[int, int], ToolCallFragment] = {}
        self.completed: Set[Tuple[int, int]] = set()
        self.tool_calls: List[Dict[str, Any]] = []
        self._line_buffer = b""
        self._event_lines: List[str] = []
        self._template: Optional[Dict[str, Any]] = None
        self._done = False

    # ---------------------------------------------------------
    # Bounds
    # ---------------------------------------------------------
    @property
    def buffered_bytes(self) -> int:
        pending_event = sum(len(line.encode("utf-8")) for line in self._event_lines)
        pending_calls = sum(f.buffered_bytes for f in self.pending.values())
        return len(self._line_buffer) + pending_event + pending_calls

    def _check_buffer(self) -> None:
        if self.buffered_bytes > self.max_buffer_size:
            raise StreamOverflowError(
                f"Stream buffer exceeded {self.max_buffer_size} bytes"
            )

    async def _next_chunk(self, iterator: AsyncIterator[bytes]) -> Optional[bytes]:
        try:
            return await asyncio.wait_for(iterator.__anext__(), timeout=self.idle_timeout)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            raise StreamTimeoutError(
                f"No data from backend for {self.idle_timeout:g} seconds"
            ) from None

    # ---------------------------------------------------------
    # Relay
    # ---------------------------------------------------------
    async def relay(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        iterator = chunks.__aiter__()
        while not self._done:
            chunk = await self._next_chunk(iterator)
            if chunk is None:
                break
            self._line_buffer += chunk
            *lines, self._line_buffer = self._line_buffer.split(b"\n")
            for raw in lines:
                for out in self._feed_line(raw.rstrip(b"\r").decode("utf-8", errors="replace")):
                    yield out
                if self._done:
                    break
            self._check_buffer()

        if not self._done:
            # stream ended without [DONE]; flush what is left
            if self._line_buffer:
                for out in self._feed_line(self._line_buffer.decode("utf-8", errors="replace")):
                    yield out
                self._line_buffer = b""
            for out in self._dispatch():
                yield out
            for out in self._flush_all():
                yield out

    def _feed_line(self, line: str):
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return []
        if line.startswith("data:"):
            data = line[5:]
            self._event_lines.append(data[1:] if data.startswith(" ") else data)
        # event:, id:, retry: fields carry nothing the clients use
        return []

    def _dispatch(self) -> List[bytes]:
        if not self._event_lines:
            return []
        data = "\n".join(self._event_lines)
        self._event_lines = []

        if data.strip() == DONE_SENTINEL:
            out = self._flush_all()
            out.append(encode_event(DONE_SENTINEL))
            self._done = True
            return out

        try:
            payload = json.loads(data)
        except ValueError:
            return [encode_event(data)]
        if not isinstance(payload, dict):
            return [encode_event(data)]
        return self._handle_chunk(payload)

    # ---------------------------------------------------------
    # Tool-call reconstruction
    # ---------------------------------------------------------
    def _handle_chunk(self, payload: Dict[str, Any]) -> List[bytes]:
        if self._template is None:
            self._template = {k: v for k, v in payload.items() if k not in ("choices", "usage")}

        choices = payload.get("choices")
        if not isinstance(choices, list):
            return [encode_event(json.dumps(payload))]

        out: List[bytes] = []
        relayed = []
        for choice in choices:
            choice_index = choice.get("index", 0)
            delta = choice.get("delta") or {}
            deltas = delta.pop("tool_calls", None)
            for tc in deltas or []:
                self._accumulate(choice_index, tc)

            if choice.get("finish_reason"):
                out.extend(self._flush_choice(choice_index))
                relayed.append(choice)
            elif delta.get("content") or delta.get("reasoning") or delta.get("reasoning_content") \
                    or delta.get("refusal") or not deltas:
                relayed.append(choice)

        if relayed or not choices or payload.get("usage"):
            payload["choices"] = relayed
            out.append(encode_event(json.dumps(payload)))
        return out

    def _accumulate(self, choice_index: int, delta: Dict[str, Any]) -> None:
        key = (choice_index, delta.get("index", 0))
        if key in self.completed:
            logger.warning("[CHAT STREAM] Dropping fragment for completed tool call %s", key)
            return
        fragment = self.pending.get(key)
        if fragment is None:
            fragment = self.pending[key] = ToolCallFragment(index=key[1])
        fragment.append(delta)

    def _flush_choice(self, choice_index: int) -> List[bytes]:
        keys = sorted(k for k in self.pending if k[0] == choice_index)
        if not keys:
            return []
        calls = []
        for key in keys:
            fragment = self.pending.pop(key)
            self.completed.add(key)
            call = fragment.to_dict()
            calls.append(call)
            self.tool_calls.append(call)
        logger.debug("[CHAT STREAM] Completed %d tool call(s) for choice %d", len(calls), choice_index)

        chunk = copy.deepcopy(self._template) if self._template else {}
        chunk["choices"] = [
            {"index": choice_index, "delta": {"role": "assistant", "tool_calls": calls}, "finish_reason": None}
        ]
        return [encode_event(json.dumps(chunk))]

    def _flush_all(self) -> List[bytes]:
        out: List[bytes] = []
        for choice_index in sorted({k[0] for k in self.pending}):
            out.extend(self._flush_choice(choice_index))
        return out


def encode_event(data: str) -> bytes:
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return (lines + "\n").encode("utf-8")
