"""
FANTASY EXCHANGE: LLM Client

Thin wrapper over the OpenAI chat completions API:
- one cached client per process
- JSON-only response format for every game prompt
- usage/latency logging per call
- tolerant JSON extraction (fenced blocks, leading chatter, trailing text)

Model output is an untrusted wire format. Callers validate everything they read.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional

import openai

from config.settings import LLMConfig

logger = logging.getLogger("fantasyx.llm")


class LLMError(RuntimeError):
    """Upstream model failure. `raw` keeps whatever text came back."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


_client = None


def get_openai_client():
    """Return the process-wide OpenAI client, creating it on first use."""
    global _client
    if _client is None:
        if not LLMConfig.has_openai_key():
            raise LLMError("OPENAI_API_KEY is not set in the environment")
        _client = openai.OpenAI(
            api_key=os.getenv("OPENAI_API_KEY"),
            max_retries=LLMConfig.MAX_RETRIES,
            timeout=LLMConfig.TIMEOUT,
        )
    return _client


@dataclass
class ChatResult:
    text: str
    model: str
    hint: str = ""            # set when content is empty (role/refusal/tool_calls)
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


def chat_completion(prompt: str, call_key: str) -> ChatResult:
    """Single system-prompt completion. Raises openai errors unchanged."""
    cfg = LLMConfig.get_config(call_key)
    kwargs = {
        "model": LLMConfig.MODEL,
        "messages": [{"role": "system", "content": prompt}],
        "max_completion_tokens": cfg["max_tokens"],
    }
    if cfg.get("json"):
        kwargs["response_format"] = {"type": "json_object"}
    extra = LLMConfig.reasoning_kwargs()
    if extra:
        kwargs["extra_body"] = extra

    client = get_openai_client()
    if "timeout" in cfg:
        client = client.with_options(
            timeout=cfg["timeout"],
            max_retries=cfg.get("max_retries", LLMConfig.MAX_RETRIES),
        )

    started = time.time()
    resp = client.chat.completions.create(**kwargs)
    latency_ms = int((time.time() - started) * 1000)

    msg = resp.choices[0].message if resp.choices else None
    text = (msg.content or "").strip() if msg is not None else ""
    hint = ""
    if not text and msg is not None:
        hint = json.dumps({
            "role": getattr(msg, "role", None),
            "refusal": getattr(msg, "refusal", None),
            "tool_calls": bool(getattr(msg, "tool_calls", None)),
        })

    usage = getattr(resp, "usage", None)
    result = ChatResult(
        text=text,
        model=LLMConfig.MODEL,
        hint=hint,
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        latency_ms=latency_ms,
    )
    logger.info(f"LLM {call_key}: model={result.model} in={result.input_tokens} "
                f"out={result.output_tokens} {latency_ms}ms")
    return result


# ═══════════════════════════════════════════════
# JSON extraction
# ═══════════════════════════════════════════════

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def extract_json(raw: str) -> Optional[str]:
    """Pull the JSON document out of model text, or None if there isn't one."""
    s = (raw or "").strip()
    if not s:
        return None

    fenced = _FENCE_RE.search(s)
    body = (fenced.group(1).strip() if fenced else "") or s

    if (body.startswith("{") and body.endswith("}")) or (body.startswith("[") and body.endswith("]")):
        return body

    # First balanced {...}, string-aware
    start = body.find("{")
    if start < 0:
        return None
    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(body)):
        ch = body[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return body[start:i + 1]
    return None


def parse_json_object(raw: str) -> dict:
    """extract_json + json.loads, insisting on an object. Raises LLMError with raw attached."""
    text = extract_json(raw)
    if not text:
        raise LLMError("LLM output did not contain parseable JSON.", raw=raw)
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        raise LLMError("LLM JSON parse failed.", raw=raw)
    if not isinstance(obj, dict):
        raise LLMError("LLM JSON was not an object.", raw=raw)
    return obj
