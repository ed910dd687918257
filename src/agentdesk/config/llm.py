"""
Centralized LLM task-to-model routing.

One source of truth for which model handles which task, plus thin helpers that
talk to an OpenAI-compatible gateway: a tool-calling classifier, a streaming
chat generator and plain text/JSON completions.
"""
from __future__ import annotations
from typing import Any, AsyncIterator, Dict, List, Optional
import json
import logging
import os
import re
import time

import httpx

from src.agentdesk.config.settings import Tier, compute_cost as _rate_cost
from src.agentdesk.orchestration.errors import GatewayError, classify_gateway_status
from src.agentdesk.orchestration.types import (
    GenerationOptions,
    ModelChunk,
    OracleReply,
    TokenUsage,
    ToolSpec,
)
from src.metrics.usage import record_call, record_failure

logger = logging.getLogger(__name__)

FAST_MODEL = "anthropic/claude-haiku-4.5"
QUALITY_MODEL = "anthropic/claude-sonnet-4.5"

# Single source of truth for model selection per task
TASK_MODEL_MAP: Dict[str, str] = {
    "classifyAgent": FAST_MODEL,
    "chatAnswer": FAST_MODEL,
    "generateAgentProfile": QUALITY_MODEL,
    "generateSkillContent": QUALITY_MODEL,
    "suggestSkills": QUALITY_MODEL,
}

TASK_TIER_MAP: Dict[str, Tier] = {
    "classifyAgent": "fast",
    "chatAnswer": "fast",
    "generateAgentProfile": "quality",
    "generateSkillContent": "quality",
    "suggestSkills": "quality",
}


def get_model_for_task(task_name: str) -> str:
    # Allow per-task override via env: LLM_MODEL_<TASK_NAME>
    # Example: LLM_MODEL_chatAnswer=openai/gpt-4o-mini
    normalized = re.sub(r"[^A-Za-z0-9]+", "_", task_name).upper()
    return (
        os.getenv(f"LLM_MODEL_{task_name}")
        or os.getenv(f"LLM_MODEL_{normalized}")
        or TASK_MODEL_MAP.get(task_name, FAST_MODEL)
    )


def get_tier_for_task(task_name: str) -> Tier:
    return TASK_TIER_MAP.get(task_name, "fast")


def compute_cost(usage: TokenUsage, tier: Tier) -> float:
    return _rate_cost(usage.input, usage.output, usage.cached, tier)


def _gateway_target(api_key: Optional[str]) -> tuple[str, str]:
    token = api_key or os.getenv("AGENTDESK_GATEWAY_TOKEN")
    base_url = os.getenv("AGENTDESK_GATEWAY_URL", "").rstrip("/")
    # Normalize base URL: allow users to set with or without '/v1'
    if base_url.endswith("/v1"):
        base_url = base_url[:-3]
    if not token or not base_url:
        raise GatewayError("LLM gateway not configured", None, "not_configured")
    return base_url, token


def _headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def parse_usage(raw: Optional[Dict[str, Any]]) -> TokenUsage:
    """OpenAI-style usage block to TokenUsage.

    prompt_tokens includes cached prompt tokens; they are billed separately,
    so they are moved out of ``input``.
    """
    if not raw:
        return TokenUsage()
    prompt = int(raw.get("prompt_tokens") or 0)
    completion = int(raw.get("completion_tokens") or 0)
    details = raw.get("prompt_tokens_details") or {}
    cached = int(details.get("cached_tokens") or 0)
    return TokenUsage(input=max(prompt - cached, 0), output=completion, cached=cached)


async def route_via_gateway(
    task_name: str,
    messages: List[Dict[str, Any]],
    options: Optional[Dict[str, Any]] = None,
    api_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Route a chat completion through the gateway (OpenAI-compatible).

    Returns an OpenAI-compatible ChatCompletion-like dict with at least:
    {"choices": [{"message": {...}}], "usage": {...}}
    """
    base_url, token = _gateway_target(api_key)
    model = get_model_for_task(task_name)
    payload: Dict[str, Any] = {"model": model, "messages": messages}
    if options:
        payload.update(options)

    start = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(f"{base_url}/v1/chat/completions", json=payload, headers=_headers(token))
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPStatusError as e:
        record_failure("gateway", model)
        raise classify_gateway_status(e.response.status_code, e.response.text[:200]) from e
    except httpx.RequestError as e:
        record_failure("gateway", model)
        raise classify_gateway_status(None, str(e)) from e

    usage = parse_usage(data.get("usage"))
    record_call(
        provider="gateway",
        model=model,
        input_tokens=usage.input,
        output_tokens=usage.output,
        cached_tokens=usage.cached,
        cost=compute_cost(usage, get_tier_for_task(task_name)),
        time_sec=time.perf_counter() - start,
    )
    return data


async def classify(
    system: str,
    prompt: str,
    tools: List[ToolSpec],
    temperature: float = 0.3,
    max_tokens: int = 2048,
    api_key: Optional[str] = None,
) -> OracleReply:
    """Classifier oracle: one tool-calling completion, returned unvalidated."""
    messages = [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]
    options = {
        "temperature": temperature,
        "max_tokens": max_tokens,
        "tools": [
            {"type": "function", "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
            for t in tools
        ],
        "tool_choice": "auto",
    }
    data = await route_via_gateway("classifyAgent", messages, options, api_key=api_key)
    message = (data.get("choices") or [{}])[0].get("message") or {}
    text = message.get("content") or ""
    reply = OracleReply(text=text if isinstance(text, str) else str(text), usage=parse_usage(data.get("usage")))
    for call in message.get("tool_calls") or []:
        fn = call.get("function") or {}
        reply.tool_name = fn.get("name")
        raw_args = fn.get("arguments")
        if isinstance(raw_args, dict):
            reply.arguments = raw_args
        elif isinstance(raw_args, str):
            try:
                parsed = json.loads(raw_args)
                reply.arguments = parsed if isinstance(parsed, dict) else None
            except ValueError:
                reply.arguments = None
        break
    return reply


async def stream_chat(
    task_name: str,
    messages: List[Dict[str, Any]],
    opts: GenerationOptions,
) -> AsyncIterator[ModelChunk]:
    """Streams a completion as ModelChunk items (text deltas and usage snapshots)."""
    base_url, token = _gateway_target(opts.api_key)
    model = get_model_for_task(task_name)
    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": True,
        "stream_options": {"include_usage": True},
        "temperature": opts.temperature,
    }
    if opts.max_tokens:
        payload["max_tokens"] = opts.max_tokens
    # Avoid overriding 'stream' if passed by caller
    payload.update({k: v for k, v in opts.extra.items() if k not in ("stream", "stream_options")})

    start = time.perf_counter()
    usage = TokenUsage()
    try:
        async with httpx.AsyncClient(timeout=None) as client:
            async with client.stream("POST", f"{base_url}/v1/chat/completions", json=payload, headers=_headers(token)) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    # OpenAI-compatible SSE: lines come as 'data: {...}' or '[DONE]'
                    if not line or line.startswith(":") or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        obj = json.loads(data)
                    except ValueError:
                        logger.warning("Skipping non-JSON stream event from %s", model)
                        continue
                    chunk = ModelChunk()
                    choices = obj.get("choices") or []
                    if choices:
                        content = (choices[0].get("delta") or {}).get("content")
                        if content:
                            chunk.text = content
                    if obj.get("usage"):
                        usage = usage.merge_snapshot(parse_usage(obj["usage"]))
                        chunk.usage = usage
                    if chunk.text is not None or chunk.usage is not None:
                        yield chunk
    except httpx.HTTPStatusError as e:
        record_failure("gateway", model)
        raise classify_gateway_status(e.response.status_code) from e
    except httpx.RequestError as e:
        record_failure("gateway", model)
        raise classify_gateway_status(None, str(e)) from e

    record_call(
        provider="gateway",
        model=model,
        input_tokens=usage.input,
        output_tokens=usage.output,
        cached_tokens=usage.cached,
        cost=compute_cost(usage, opts.tier),
        time_sec=time.perf_counter() - start,
    )


# --- Convenience helpers used by the creation collaborators ---

async def llm_text(task_name: str, prompt: str, temperature: float | None = None, api_key: Optional[str] = None, system: Optional[str] = None) -> str:
    msgs: List[Dict[str, Any]] = []
    if system:
        msgs.append({"role": "system", "content": system})
    msgs.append({"role": "user", "content": prompt})
    opts = {"temperature": temperature} if temperature is not None else {}
    resp = await route_via_gateway(task_name, msgs, opts, api_key=api_key)
    content = (resp.get("choices") or [{}])[0].get("message", {}).get("content", "")
    return content if isinstance(content, str) else str(content)


def parse_json_text(text: str) -> Any:
    """Parses model JSON, tolerating code fences and surrounding prose."""
    stripped = str(text).strip()
    fenced = re.sub(r"^```(?:json)?\s*|\s*```$", "", stripped)
    candidates = [stripped, fenced, stripped.strip("`")]
    brace = re.search(r"\{.*\}", stripped, re.S)
    if brace:
        candidates.append(brace.group(0))
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise ValueError("LLM did not return valid JSON.")


async def llm_json(task_name: str, prompt: str, temperature: float | None = None, api_key: Optional[str] = None) -> Any:
    text = await llm_text(
        task_name,
        prompt,
        temperature=temperature,
        api_key=api_key,
        system="Return ONLY valid JSON. No commentary, no code fences.",
    )
    try:
        return parse_json_text(text)
    except ValueError as e:
        raise ValueError(f"LLM did not return valid JSON for task {task_name}.") from e
