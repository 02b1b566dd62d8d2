"""
Keeping tool definitions in view over long, stateless conversations.

Every chat call resends the whole transcript, and models tend to lose track of
the declared tools the further the last system turn scrolls back. When enough
messages or estimated tokens have piled up since then, a reminder is inserted
right before the final user turn.

The same module decides whether a buffered reply that should have contained a
tool call deserves a corrective retry, and bounds how often that may happen.
"""
import json
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_REMINDER = "reminder"

TEXT_TOOL_MARKERS = ("ToolCalls", "<tool_call>")

CORRECTIVE_INSTRUCTION = (
    "Your previous reply tried to call a tool but the call could not be parsed. "
    "Reply again using the structured tool-calling format: the function name must be "
    "one of the declared tools and the arguments must be a valid JSON object."
)

REQUIRED_INSTRUCTION = (
    "A tool call is required for this turn. Reply with a structured tool call to one "
    "of the declared tools instead of plain text."
)


def tool_schemas(tools: Optional[Sequence[Any]], functions: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    """Normalize ``tools`` (or legacy ``functions``) into function schemas."""
    schemas = []
    for tool in tools or []:
        if isinstance(tool, dict):
            fn = tool.get("function") if isinstance(tool.get("function"), dict) else tool
            if fn.get("name"):
                schemas.append(fn)
    for fn in functions or []:
        if isinstance(fn, dict) and fn.get("name"):
            schemas.append(fn)
    return schemas


def estimate_tokens(message: Dict[str, Any]) -> int:
    """Rough token count: four characters per token."""
    chars = 0
    content = message.get("content")
    if isinstance(content, str):
        chars += len(content)
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                chars += len(part["text"])
    tool_calls = message.get("tool_calls")
    for call in tool_calls if isinstance(tool_calls, list) else []:
        fn = call.get("function") if isinstance(call, dict) else None
        if not isinstance(fn, dict):
            continue
        for value in (fn.get("name"), fn.get("arguments")):
            if isinstance(value, str):
                chars += len(value)
    return math.ceil(chars / 4)


def messages_since_context(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Messages after the most recent system turn (all of them if there is none)."""
    for position in range(len(messages) - 1, -1, -1):
        if messages[position].get("role") == "system":
            return list(messages[position + 1:])
    return list(messages)


@dataclass
class ReinjectionCounters:
    message_count: int = 0
    estimated_tokens: int = 0


class ReinjectionPolicy:
    def __init__(self, enabled: bool, message_threshold: int = 10, token_threshold: int = 3000,
                 mode: str = MODE_FULL):
        self.enabled = enabled
        self.message_threshold = message_threshold
        self.token_threshold = token_threshold
        self.mode = mode

    def count(self, messages: Sequence[Dict[str, Any]]) -> ReinjectionCounters:
        recent = messages_since_context(messages)
        return ReinjectionCounters(
            message_count=len(recent),
            estimated_tokens=sum(estimate_tokens(m) for m in recent),
        )

    def should_reinject(self, counters: ReinjectionCounters) -> bool:
        return (
            counters.message_count > self.message_threshold
            or counters.estimated_tokens > self.token_threshold
        )

    def reminder(self, schemas: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        if self.mode == MODE_FULL:
            content = (
                "You have access to the following tools. Call them with the structured "
                "tool-calling format whenever they help answer the user:\n"
                + json.dumps(list(schemas), indent=2, ensure_ascii=False)
            )
        else:
            names = ", ".join(s["name"] for s in schemas)
            content = f"Reminder: the following tools are available to you: {names}."
        return {"role": "system", "content": content}

    def apply(self, exchange) -> List[Dict[str, Any]]:
        """
        Return the messages to send upstream for ``exchange``.

        The exchange's message list is never modified; a new list is returned
        whether or not a reminder was inserted.
        """
        messages = list(exchange.messages)
        if not self.enabled or not exchange.schemas:
            return messages

        counters = self.count(messages)
        exchange.counters = counters
        if not self.should_reinject(counters):
            return messages

        position = len(messages)
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].get("role") == "user":
                position = i
                break
        messages.insert(position, self.reminder(exchange.schemas))
        logger.info(
            "[TOOL REINJECTION] Inserted %s reminder (%d messages, ~%d tokens since last system turn)",
            self.mode, counters.message_count, counters.estimated_tokens,
        )
        return messages


# -------------------------------------------------------------
# Bounded corrective loop
# -------------------------------------------------------------
class ToolIterationGuard:
    """Counts upstream attempts for one exchange; never goes past ``max_iterations``."""

    def __init__(self, max_iterations: int = 5):
        self.max_iterations = max(1, max_iterations)
        self.iterations = 0

    @property
    def exhausted(self) -> bool:
        return self.iterations >= self.max_iterations

    def advance(self) -> bool:
        if self.exhausted:
            return False
        self.iterations += 1
        return True


ACCEPT = "accept"
SALVAGE = "salvage"
RETRY = "retry"


@dataclass
class ReplyVerdict:
    action: str
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    content: str = ""
    reason: str = ""


def _first_message(body: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    return message if isinstance(message, dict) else None


def parse_text_tool_calls(content: str, tool_names: Sequence[str]) -> Optional[List[Dict[str, Any]]]:
    """
    Pull tool calls a model wrote out as text after a ``ToolCalls`` or
    ``<tool_call>`` marker. Returns None when nothing usable is found.
    """
    for marker in TEXT_TOOL_MARKERS:
        position = content.find(marker)
        if position == -1:
            continue
        tail = content[position + len(marker):].strip()
        tail = re.sub(r"</tool_call>\s*$", "", tail).strip()
        tail = re.sub(r"^```(?:json)?|```$", "", tail).strip()
        try:
            parsed = json.loads(tail)
        except ValueError:
            return None
        items = parsed if isinstance(parsed, list) else [parsed]
        calls = []
        for item in items:
            if not isinstance(item, dict):
                return None
            fn = item.get("function") if isinstance(item.get("function"), dict) else item
            name = fn.get("name")
            arguments = fn.get("arguments", fn.get("parameters", {}))
            if name not in tool_names:
                return None
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            calls.append({
                "id": f"call_{uuid.uuid4().hex[:24]}",
                "type": "function",
                "function": {"name": name, "arguments": arguments},
            })
        return calls or None
    return None


def inspect_reply(body: Any, tool_names: Sequence[str], tool_choice: Any = None) -> ReplyVerdict:
    """Classify a buffered reply to a request that offered tools."""
    message = _first_message(body)
    if message is None or message.get("tool_calls") or message.get("function_call"):
        return ReplyVerdict(ACCEPT)

    content = message.get("content") if isinstance(message.get("content"), str) else ""
    if any(marker in content for marker in TEXT_TOOL_MARKERS):
        calls = parse_text_tool_calls(content, tool_names)
        if calls:
            return ReplyVerdict(SALVAGE, tool_calls=calls, content=content)
        return ReplyVerdict(RETRY, content=content, reason=CORRECTIVE_INSTRUCTION)

    if tool_choice == "required" or isinstance(tool_choice, dict):
        return ReplyVerdict(RETRY, content=content, reason=REQUIRED_INSTRUCTION)
    return ReplyVerdict(ACCEPT, content=content)


def apply_salvage(body: Dict[str, Any], verdict: ReplyVerdict) -> Dict[str, Any]:
    salvaged = json.loads(json.dumps(body))
    choice = salvaged["choices"][0]
    choice["message"]["tool_calls"] = verdict.tool_calls
    choice["message"]["content"] = None
    choice["finish_reason"] = "tool_calls"
    return salvaged


def corrective_messages(messages: Sequence[Dict[str, Any]], verdict: ReplyVerdict) -> List[Dict[str, Any]]:
    return list(messages) + [
        {"role": "assistant", "content": verdict.content},
        {"role": "system", "content": verdict.reason},
    ]
