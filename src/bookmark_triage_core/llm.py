from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx


class LlmCallError(RuntimeError):
    pass


@dataclass(frozen=True)
class JsonCompletion:
    data: Any
    prompt_tokens: int
    completion_tokens: int


class JsonCompletionClient(Protocol):
    async def complete_json(
        self,
        *,
        model: str,
        system_prompt: str,
        user_payload: Any,
        temperature: float,
    ) -> JsonCompletion: ...


def _extract_message_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices") or []
    if not isinstance(choices, list) or not choices:
        raise LlmCallError("Chat completion response missing choices")
    first = choices[0] if isinstance(choices[0], dict) else {}
    msg = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = msg.get("content")
    if not isinstance(content, str) or not content.strip():
        raise LlmCallError("Chat completion response did not include JSON content")
    return content


def _usage_tokens(payload: dict[str, Any]) -> tuple[int, int]:
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    prompt = usage.get("prompt_tokens")
    completion = usage.get("completion_tokens")
    return (
        prompt if isinstance(prompt, int) else 0,
        completion if isinstance(completion, int) else 0,
    )


@dataclass(frozen=True)
class ChatJsonClient:
    """
    OpenAI-compatible `/chat/completions` client which always asks for a JSON object back.
    """

    base_url: str
    api_key: str
    timeout_s: float = 60.0
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        # The httpx timeout bounds each network phase; callers bound the whole exchange.
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
            return await client.post(url, headers=self._headers(), json=body)

    async def complete_json(
        self,
        *,
        model: str,
        system_prompt: str,
        user_payload: Any,
        temperature: float = 0.0,
    ) -> JsonCompletion:
        body = {
            "model": model,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": json.dumps(user_payload, ensure_ascii=False),
                },
            ],
        }
        url = self.base_url.rstrip("/") + "/chat/completions"
        try:
            r = await asyncio.wait_for(self._post(url, body), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise LlmCallError(f"Chat completion request timed out after {self.timeout_s}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise LlmCallError(f"Chat completion request failed: {e}") from e

        if not r.is_success:
            raise LlmCallError(f"Chat completion request failed ({r.status_code}): {r.text[:200]}")

        try:
            payload = r.json()
        except ValueError as e:
            raise LlmCallError("Chat completion returned a non-JSON body") from e
        if not isinstance(payload, dict):
            raise LlmCallError("Chat completion returned an unexpected body shape")

        content = _extract_message_content(payload)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise LlmCallError("Chat completion content is not valid JSON") from e

        prompt_tokens, completion_tokens = _usage_tokens(payload)
        return JsonCompletion(
            data=data,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
