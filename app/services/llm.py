import base64
import json
import os
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, Protocol, Sequence

import httpx

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "30"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "1"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))
LLM_CANCEL_POLL_SECONDS = float(os.getenv("LLM_CANCEL_POLL_SECONDS", "0.25"))
LLM_CALL_MAX_WORKERS = int(os.getenv("LLM_CALL_MAX_WORKERS", "40"))
HISTORY_CONTENT_MAX_CHARS = 1200

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Calls made on behalf of a cancellable turn run here so the turn can stop waiting on them.
_call_executor = ThreadPoolExecutor(max_workers=LLM_CALL_MAX_WORKERS, thread_name_prefix="llm-call")


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class CompletionRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class CompletionCancelled(RuntimeError):
    """The caller gave up on the completion, usually because the client disconnected."""


def extract_json_object(raw_text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span in ``raw_text``, ignoring braces inside strings."""
    start = raw_text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(raw_text)):
            char = raw_text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return raw_text[start : idx + 1]
        start = raw_text.find("{", start + 1)
    return None


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    text = (raw_text or "").strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    candidate = extract_json_object(text)
    if candidate is not None:
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    # Greedy span as a last resort, for objects whose strings contain stray quotes.
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


class CompletionClient(Protocol):
    def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Sequence[dict[str, str]] = (),
        max_tokens: int = 600,
        temperature: float = 0.3,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> str:
        ...

    def invoke_with_image(
        self,
        system_prompt: str,
        user_prompt: str,
        image_bytes: bytes,
        mime_type: str,
        max_tokens: int = 700,
        temperature: float = 0.3,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> str:
        ...


def _resolve_model_config() -> tuple[str, str, str]:
    provider = os.getenv("DEFAULT_AI_PROVIDER", "").strip().lower()
    model = os.getenv("DEFAULT_AI_MODEL", "").strip()
    if provider == "openai":
        key = os.getenv("OPENAI_API_KEY", "")
    elif provider == "gemini":
        key = os.getenv("GEMINI_API_KEY", "")
    else:
        key = ""
    if provider and model and key:
        return provider, model, key
    raise CompletionRequestError(provider=provider or "unknown", model=model, message="AI config missing")


def _history_messages(history: Sequence[dict[str, str]]) -> list[dict[str, str]]:
    messages = []
    for item in history:
        role = str(item.get("role") or "")
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        # Agent and system notes are folded into the user side so providers accept them.
        mapped_role = "assistant" if role == "assistant" else "user"
        messages.append({"role": mapped_role, "content": content[:HISTORY_CONTENT_MAX_CHARS]})
    return messages


def _raise_for_status(provider: str, model: str, response: httpx.Response) -> None:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else None
        detail = ""
        if exc.response is not None:
            detail = (exc.response.text or "").strip()[:220]
        raise CompletionRequestError(
            provider=provider,
            model=model,
            status_code=status,
            message=f"{provider} request failed (status={status}): {detail or 'no response body'}",
        ) from exc


def _openai_request(model: str, api_key: str, payload: dict[str, Any]) -> str:
    response = httpx.post(
        "https://api.openai.com/v1/chat/completions",
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json={"model": model, **payload},
        timeout=_http_timeout(),
    )
    _raise_for_status("openai", model, response)
    data = response.json()
    text = str(data["choices"][0]["message"].get("content") or "").strip()
    if not text:
        raise ValueError("OpenAI chat completion returned empty content")
    return text


def _gemini_request(model: str, api_key: str, payload: dict[str, Any]) -> str:
    url = f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={api_key}"
    response = httpx.post(
        url,
        headers={"Content-Type": "application/json"},
        json=payload,
        timeout=_http_timeout(),
    )
    _raise_for_status("gemini", model, response)
    data = response.json()
    parts = data["candidates"][0]["content"].get("parts", [])
    text = "".join(str(part.get("text") or "") for part in parts).strip()
    if not text:
        raise ValueError("Gemini response returned no text output")
    return text


def _run_cancellable(call: Callable[[], str], is_cancelled: Optional[Callable[[], bool]]) -> str:
    """Run ``call``, giving up on it as soon as ``is_cancelled`` reports true.

    An abandoned request keeps its worker until its own timeout; the caller is released immediately.
    """
    if is_cancelled is None:
        return call()
    future = _call_executor.submit(call)
    while True:
        try:
            return future.result(timeout=LLM_CANCEL_POLL_SECONDS)
        except FutureTimeoutError:
            if is_cancelled():
                future.cancel()
                raise CompletionCancelled("completion abandoned after cancellation")


def _backoff(idx: int, is_cancelled: Optional[Callable[[], bool]]) -> None:
    if is_cancelled is not None and is_cancelled():
        raise CompletionCancelled("retry skipped after cancellation")
    time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))


def _with_retries(
    provider: str,
    model: str,
    call: Callable[[], str],
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> str:
    attempts = max(1, LLM_RETRY_COUNT + 1)
    last_error = "unknown error"
    for idx in range(attempts):
        if is_cancelled is not None and is_cancelled():
            raise CompletionCancelled("completion skipped after cancellation")
        try:
            return _run_cancellable(call, is_cancelled)
        except httpx.TimeoutException as exc:
            last_error = "timeout"
            if idx < attempts - 1:
                _backoff(idx, is_cancelled)
                continue
            raise CompletionRequestError(
                provider=provider,
                model=model,
                message=f"{provider} request timed out while waiting for response.",
            ) from exc
        except CompletionRequestError as exc:
            if exc.status_code in RETRYABLE_STATUS_CODES and idx < attempts - 1:
                last_error = str(exc)[:220]
                _backoff(idx, is_cancelled)
                continue
            raise
        except (httpx.HTTPError, ValueError, KeyError, IndexError) as exc:
            last_error = str(exc)[:220]
            if idx < attempts - 1:
                _backoff(idx, is_cancelled)
                continue
            raise CompletionRequestError(
                provider=provider,
                model=model,
                message=f"{provider} request failed: {last_error}",
            ) from exc
    raise CompletionRequestError(provider=provider, model=model, message=f"{provider} request failed: {last_error}")


class HttpCompletionClient:
    def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Sequence[dict[str, str]] = (),
        max_tokens: int = 600,
        temperature: float = 0.3,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> str:
        provider, model, api_key = _resolve_model_config()
        turns = _history_messages(history) + [{"role": "user", "content": user_prompt}]
        if provider == "openai":
            payload = {
                "messages": [{"role": "system", "content": system_prompt}, *turns],
                "max_completion_tokens": max_tokens,
                "temperature": temperature,
            }
            return _with_retries(provider, model, lambda: _openai_request(model, api_key, payload), is_cancelled)
        if provider == "gemini":
            payload = {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
                "contents": [
                    {"role": "model" if turn["role"] == "assistant" else "user", "parts": [{"text": turn["content"]}]}
                    for turn in turns
                ],
            }
            return _with_retries(provider, model, lambda: _gemini_request(model, api_key, payload), is_cancelled)
        raise CompletionRequestError(provider=provider, model=model, message="Unsupported AI provider")

    def invoke_with_image(
        self,
        system_prompt: str,
        user_prompt: str,
        image_bytes: bytes,
        mime_type: str,
        max_tokens: int = 700,
        temperature: float = 0.3,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> str:
        provider, model, api_key = _resolve_model_config()
        encoded = base64.b64encode(image_bytes).decode("ascii")
        if provider == "openai":
            payload = {
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": user_prompt},
                            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                        ],
                    },
                ],
                "max_completion_tokens": max_tokens,
                "temperature": temperature,
            }
            return _with_retries(provider, model, lambda: _openai_request(model, api_key, payload), is_cancelled)
        if provider == "gemini":
            payload = {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
                "contents": [
                    {
                        "role": "user",
                        "parts": [
                            {"text": user_prompt},
                            {"inline_data": {"mime_type": mime_type, "data": encoded}},
                        ],
                    }
                ],
            }
            return _with_retries(provider, model, lambda: _gemini_request(model, api_key, payload), is_cancelled)
        raise CompletionRequestError(provider=provider, model=model, message="Unsupported AI provider")


def get_completion_client() -> CompletionClient:
    return HttpCompletionClient()
