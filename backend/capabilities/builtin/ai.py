"""AI text generation capabilities.

OpenAI and Anthropic chat APIs called over httpx. The API key is a step
input, normally ``{{credential.openai}}`` / ``{{credential.anthropic}}``,
so the key never lives in the workflow document itself.
"""

from typing import Any, Optional

import httpx
import structlog

from capabilities.base import CapabilityDescriptor, InvocationConvention, optional, param

logger = structlog.get_logger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-latest"
AI_TIMEOUT = 60.0

# OpenAI budget shared by every workflow in the process
AI_RATE_LIMIT = (500, 60.0)


def _require_key(params: dict, provider: str) -> str:
    key = params.get("apiKey")
    if not key:
        raise ValueError(f"{provider} API key missing: pass apiKey, e.g. {{{{credential.{provider}}}}}")
    return key


def _messages(prompt: str, system_prompt: Optional[str]) -> list[dict]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


async def _openai_completion(params: dict, messages: list[dict]) -> dict:
    payload: dict[str, Any] = {
        "model": params.get("model") or DEFAULT_OPENAI_MODEL,
        "messages": messages,
    }
    if params.get("maxTokens") is not None:
        payload["max_tokens"] = int(params["maxTokens"])
    if params.get("temperature") is not None:
        payload["temperature"] = float(params["temperature"])

    async with httpx.AsyncClient(timeout=AI_TIMEOUT) as client:
        response = await client.post(
            OPENAI_URL,
            headers={"Authorization": f"Bearer {_require_key(params, 'openai')}"},
            json=payload,
        )
    response.raise_for_status()
    data = response.json()
    usage = data.get("usage", {})
    logger.info(
        "openai_completion",
        model=payload["model"],
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
    )
    return data


async def openai_generate_text(params: dict) -> str:
    """Single prompt completion; returns the generated text."""
    data = await _openai_completion(
        params, _messages(params["prompt"], params.get("systemPrompt"))
    )
    return data["choices"][0]["message"]["content"]


async def openai_chat(params: dict) -> dict:
    """Multi-turn completion; returns ``{"content", "role", "usage"}``."""
    messages = list(params["messages"])
    if params.get("systemPrompt"):
        messages.insert(0, {"role": "system", "content": params["systemPrompt"]})
    data = await _openai_completion(params, messages)
    message = data["choices"][0]["message"]
    return {
        "content": message.get("content"),
        "role": message.get("role", "assistant"),
        "usage": data.get("usage", {}),
    }


async def anthropic_generate_text(params: dict) -> str:
    payload: dict[str, Any] = {
        "model": params.get("model") or DEFAULT_ANTHROPIC_MODEL,
        "max_tokens": int(params.get("maxTokens") or 1024),
        "messages": [{"role": "user", "content": params["prompt"]}],
    }
    if params.get("systemPrompt"):
        payload["system"] = params["systemPrompt"]
    if params.get("temperature") is not None:
        payload["temperature"] = float(params["temperature"])

    async with httpx.AsyncClient(timeout=AI_TIMEOUT) as client:
        response = await client.post(
            ANTHROPIC_URL,
            headers={
                "x-api-key": _require_key(params, "anthropic"),
                "anthropic-version": ANTHROPIC_VERSION,
            },
            json=payload,
        )
    response.raise_for_status()
    data = response.json()
    return "".join(
        block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
    )


_GENERATION_PARAMS = [
    param("prompt"),
    optional("systemPrompt"),
    optional("model"),
    optional("maxTokens"),
    optional("temperature"),
    param("apiKey"),
]

AI_CAPABILITIES = [
    CapabilityDescriptor(
        path="ai.openai.generateText",
        handler=openai_generate_text,
        convention=InvocationConvention.PARAMS,
        parameters=_GENERATION_PARAMS,
        param_aliases={"system": "systemPrompt", "max_tokens": "maxTokens"},
        path_aliases=["ai.openai.generate", "ai.openai.complete"],
        external=True,
        retry="api_call",
        timeout=AI_TIMEOUT,
        rate_limit=AI_RATE_LIMIT,
        description="Generate text with an OpenAI chat model",
    ),
    CapabilityDescriptor(
        path="ai.openai.chat",
        handler=openai_chat,
        convention=InvocationConvention.PARAMS,
        parameters=[
            param("messages"),
            optional("systemPrompt"),
            optional("model"),
            optional("maxTokens"),
            optional("temperature"),
            param("apiKey"),
        ],
        param_aliases={"system": "systemPrompt"},
        external=True,
        retry="api_call",
        timeout=AI_TIMEOUT,
        rate_limit=AI_RATE_LIMIT,
        description="Multi-turn chat completion",
    ),
    CapabilityDescriptor(
        path="ai.anthropic.generateText",
        handler=anthropic_generate_text,
        convention=InvocationConvention.PARAMS,
        parameters=_GENERATION_PARAMS,
        param_aliases={"system": "systemPrompt", "max_tokens": "maxTokens"},
        external=True,
        retry="api_call",
        timeout=AI_TIMEOUT,
        description="Generate text with an Anthropic model",
    ),
]
