"""
Ollama-shaped model metadata for /api/show and /api/tags.

With a native Ollama backend the calls are forwarded and the show template is
patched so it always ends in the tool-call marker. Without one, descriptors
are fabricated from the OpenAI-style model listing.
"""
import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp
import ollama
from pydantic import BaseModel, ConfigDict, Field

from .config import Config
from .errors import ModelNotFoundError, SynthesisError, UpstreamError
from .headers import PROTOCOL_OLLAMA, HeaderPurpose, build_backend_headers

logger = logging.getLogger(__name__)

TOOL_CALL_MARKER = "ToolCalls"
DEFAULT_TEMPLATE = "{{system}}\n{{user}}\n{{assistant}} " + TOOL_CALL_MARKER
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

# (substring, label) rows checked in order; the empty pattern always matches.
FAMILY_TABLE: Tuple[Tuple[str, str], ...] = (
    ("llama", "llama"),
    ("mistral", "mistral"),
    ("qwen", "qwen"),
    ("gemma", "gemma"),
    ("", "llama"),
)

PARAMETER_SIZE_TABLE: Tuple[Tuple[str, str], ...] = (
    ("32b", "32B"),
    ("32-b", "32B"),
    ("14b", "14B"),
    ("14-b", "14B"),
    ("8b", "8B"),
    ("8-b", "8B"),
    ("70b", "70B"),
    ("70-b", "70B"),
    ("", "7B"),
)

PARAMETER_COUNTS = {
    "7B": 7_000_000_000,
    "8B": 8_000_000_000,
    "14B": 14_000_000_000,
    "32B": 32_000_000_000,
    "70B": 70_000_000_000,
}

QUANTIZATION_LEVEL = "Q4_K_M"
SYNTHETIC_SIZE_RANGE = (3_000_000_000, 5_000_000_000)


def lookup(table: Sequence[Tuple[str, str]], model_id: str) -> str:
    lowered = model_id.lower()
    for pattern, label in table:
        if pattern in lowered:
            return label
    return table[-1][1]


def infer_family(model_id: str) -> str:
    return lookup(FAMILY_TABLE, model_id)


def infer_parameter_size(model_id: str) -> str:
    return lookup(PARAMETER_SIZE_TABLE, model_id)


def ensure_tool_call_marker(template: Optional[str]) -> str:
    """Return ``template`` ending in the tool-call marker. Idempotent."""
    if not template:
        return DEFAULT_TEMPLATE
    if template.strip().endswith(TOOL_CALL_MARKER):
        return template

    lines = template.split("\n")
    last = lines[-1]
    if "{{assistant}}" in last:
        lines[-1] = last + TOOL_CALL_MARKER if last[-1:].isspace() else f"{last} {TOOL_CALL_MARKER}"
        return "\n".join(lines)
    return f"{template.strip()} {TOOL_CALL_MARKER}"


@dataclass(frozen=True)
class SyntheticModelInfo:
    family: str
    parameter_size: str
    parameter_count: int
    quantization_level: str
    context_length: int
    context_from_listing: bool
    synthetic: bool = True


def derive_model_info(model_id: str, context_hint: Any, default_context: int) -> SyntheticModelInfo:
    parameter_size = infer_parameter_size(model_id)
    from_listing = isinstance(context_hint, int) and not isinstance(context_hint, bool) and context_hint > 0
    return SyntheticModelInfo(
        family=infer_family(model_id),
        parameter_size=parameter_size,
        parameter_count=PARAMETER_COUNTS.get(parameter_size, PARAMETER_COUNTS["7B"]),
        quantization_level=QUANTIZATION_LEVEL,
        context_length=context_hint if from_listing else default_context,
        context_from_listing=from_listing,
    )


def select_model(listing: Sequence[Mapping[str, Any]], name: str) -> Optional[Mapping[str, Any]]:
    """Case-insensitive exact id match, falling back to the first substring match."""
    wanted = name.lower()
    for model in listing:
        if model["id"].lower() == wanted:
            return model
    for model in listing:
        if wanted in model["id"].lower():
            return model
    return None


# -------------------------------------------------------------
# Response records
# -------------------------------------------------------------
class ModelDetails(BaseModel):
    parent_model: str = ""
    format: str = "gguf"
    family: str
    families: List[str]
    parameter_size: str
    quantization_level: str


class ShowDescriptor(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    license: str
    modelfile: str
    parameters: Dict[str, Any]
    template: str
    system: str
    details: ModelDetails
    # architecture keys depend on the family, so this stays an open mapping
    model_info: Dict[str, Any] = Field(default_factory=dict)
    tensors: List[Any] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=lambda: ["completion", "tools"])


def build_show_descriptor(model: Mapping[str, Any], default_context: int) -> ShowDescriptor:
    model_id = model["id"]
    info = derive_model_info(model_id, model.get("max_model_len"), default_context)
    family = info.family
    logger.debug(
        "[OLLAMA SHOW] Using context length: %s (Source: %s)",
        info.context_length,
        "OpenAI model" if info.context_from_listing else "Default config",
    )

    return ShowDescriptor(
        license=model.get("license") or "unknown",
        modelfile=f"FROM {model_id}\nPARAMETER temperature 0.7\nPARAMETER top_p 0.9",
        parameters={"temperature": 0.7, "top_p": 0.9, "num_ctx": info.context_length},
        template=DEFAULT_TEMPLATE,
        system=DEFAULT_SYSTEM_PROMPT,
        details=ModelDetails(
            family=family,
            families=[family],
            parameter_size=info.parameter_size,
            quantization_level=info.quantization_level,
        ),
        model_info={
            "general.architecture": family,
            "general.file_type": 2,
            "general.parameter_count": info.parameter_count,
            "general.quantization_version": 2,
            f"{family}.attention.head_count": 32,
            f"{family}.attention.head_count_kv": 8,
            f"{family}.attention.layer_norm_rms_epsilon": 0.00001,
            f"{family}.block_count": 32,
            f"{family}.context_length": info.context_length,
            f"{family}.embedding_length": 4096,
            f"{family}.feed_forward_length": 14336,
            f"{family}.rope.dimension_count": 128,
            f"{family}.rope.freq_base": 1000000,
            f"{family}.vocab_size": 32000,
            "tokenizer.ggml.add_bos_token": True,
            "tokenizer.ggml.add_eos_token": False,
            "tokenizer.ggml.bos_token_id": 1,
            "tokenizer.ggml.eos_token_id": 32000,
            "tokenizer.ggml.model": family,
        },
    )


def random_digest() -> str:
    return "".join(random.choices("0123456789abcdef", k=64))


def build_tag_entry(model: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    model_id = model["id"]
    info = derive_model_info(model_id, model.get("max_model_len"), 0)
    entry = ollama.ListResponse.Model(
        model=model_id,
        # listed models are presented as pulled the day before
        modified_at=now - timedelta(days=1),
        size=random.randint(*SYNTHETIC_SIZE_RANGE),
        digest=random_digest(),
        details={
            "parent_model": "",
            "format": "gguf",
            "family": info.family,
            "families": [info.family],
            "parameter_size": info.parameter_size,
            "quantization_level": info.quantization_level,
        },
    )
    return {"name": model_id, **entry.model_dump(mode="json")}


# -------------------------------------------------------------
# Entry points
# -------------------------------------------------------------
async def _read_json(resp: aiohttp.ClientResponse) -> Any:
    text = await resp.text()
    try:
        return json.loads(text)
    except ValueError:
        raise UpstreamError("Backend returned a non-JSON body", resp.status, text)


class MetadataSynthesizer:
    def __init__(self, config: Config, session: aiohttp.ClientSession):
        self.config = config
        self.session = session

    def _native_headers(self, purpose, client_auth, client_headers, forward_client_auth):
        return build_backend_headers(
            self.config, client_auth, client_headers, purpose, PROTOCOL_OLLAMA, forward_client_auth
        )

    async def fetch_model_listing(self, purpose: HeaderPurpose) -> List[Mapping[str, Any]]:
        headers = build_backend_headers(self.config, None, None, purpose)
        url = f"{self.config.backend_base_url}/v1/models"
        try:
            async with self.session.get(url, headers=headers) as resp:
                if resp.status >= 400:
                    raise SynthesisError(f"Failed to fetch models: {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SynthesisError(str(e) or e.__class__.__name__) from e

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [m for m in items if isinstance(m, dict) and isinstance(m.get("id"), str)]

    async def show(
        self,
        name: str,
        client_auth: Optional[str] = None,
        client_headers: Optional[Mapping[str, str]] = None,
        forward_client_auth: bool = True,
    ) -> Tuple[int, Dict[str, Any], bool]:
        """Return ``(status, body, synthetic)`` for an /api/show request."""
        if self.config.native_ollama:
            headers = self._native_headers(HeaderPurpose.SHOW, client_auth, client_headers, forward_client_auth)
            logger.debug("[OLLAMA SHOW] Forwarding to Ollama backend")
            try:
                async with self.session.post(
                    f"{self.config.ollama_api_url}/api/show",
                    json={"model": name, "name": name},
                    headers=headers,
                ) as resp:
                    status = resp.status
                    data = await _read_json(resp)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise UpstreamError(f"Error contacting Ollama backend: {e}") from e

            if status < 400 and isinstance(data, dict):
                patched = ensure_tool_call_marker(data.get("template"))
                if patched != data.get("template"):
                    logger.debug("[OLLAMA SHOW] Updated template: %r", patched)
                data["template"] = patched
            return status, data, False

        logger.debug("[OLLAMA SHOW] No Ollama backend configured, creating synthetic response")
        listing = await self.fetch_model_listing(HeaderPurpose.SHOW)
        match = select_model(listing, name)
        if match is None:
            logger.debug("[OLLAMA SHOW] Model '%s' not found", name)
            raise ModelNotFoundError(name)

        descriptor = build_show_descriptor(match, self.config.ollama_default_context_length)
        return 200, descriptor.model_dump(), True

    async def tags(
        self,
        client_auth: Optional[str] = None,
        client_headers: Optional[Mapping[str, str]] = None,
        forward_client_auth: bool = True,
    ) -> Tuple[int, Dict[str, Any], bool]:
        """Return ``(status, body, synthetic)`` for an /api/tags request."""
        if self.config.native_ollama:
            headers = self._native_headers(HeaderPurpose.TAGS, client_auth, client_headers, forward_client_auth)
            logger.debug("[OLLAMA TAGS] Forwarding to Ollama backend")
            try:
                async with self.session.get(f"{self.config.ollama_api_url}/api/tags", headers=headers) as resp:
                    return resp.status, await _read_json(resp), False
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise UpstreamError(f"Error contacting Ollama backend: {e}") from e

        logger.debug("[OLLAMA TAGS] No Ollama backend configured, creating synthetic response from /v1/models")
        listing = await self.fetch_model_listing(HeaderPurpose.TAGS)
        now = datetime.now(timezone.utc)
        return 200, {"models": [build_tag_entry(model, now) for model in listing]}, True
