"""Minimal client for Ollama's ``/api/chat`` endpoint."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from . import config


class OllamaError(RuntimeError):
    pass


def _parse_options(raw_options: Optional[str]) -> Dict[str, Any]:
    if not raw_options:
        return {}
    try:
        parsed = json.loads(raw_options)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def is_configured() -> bool:
    return bool(config.OLLAMA_MODEL)


def chat(system: str, prompt: str, *, max_tokens: Optional[int] = None) -> str:
    """Send one system+user exchange and return the assistant's text."""
    if not config.OLLAMA_MODEL:
        raise OllamaError("OLLAMA_MODEL not set")
    options: Dict[str, Any] = {
        "temperature": float(config.TEMP),
        "num_predict": int(max_tokens or config.MAX_TOKENS),
    }
    options.update(_parse_options(config.OLLAMA_OPTIONS))
    payload = {
        "model": config.OLLAMA_MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        "stream": False,
        "options": options,
    }
    data = json.dumps(payload).encode("utf-8")
    url = config.OLLAMA_HOST.rstrip("/") + "/api/chat"
    request = Request(url, data=data, headers={"Content-Type": "application/json"})
    try:
        with urlopen(request, timeout=config.OLLAMA_TIMEOUT) as response:  # nosec - local inference endpoint
            body = response.read()
    except HTTPError as exc:
        if exc.code == 404:
            raise OllamaError(
                f"Ollama 404 for model '{config.OLLAMA_MODEL}' at {config.OLLAMA_HOST}. "
                "Ensure the model is pulled (e.g., `ollama pull llama3.1:8b`)."
            ) from exc
        raise OllamaError(f"Ollama HTTP {exc.code}") from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise OllamaError(f"Ollama unreachable at {config.OLLAMA_HOST}: {exc}") from exc

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise OllamaError("Ollama returned non-JSON body") from exc
    content = (parsed.get("message") or {}).get("content")
    if not isinstance(content, str) or not content.strip():
        raise OllamaError("LLM returned empty content")
    return content


def extract_json_block(text: str) -> Dict[str, Any]:
    """Parse a JSON object from model text, tolerating prose around it."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        data = json.loads(text[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("Model response must be an object")
    return data
