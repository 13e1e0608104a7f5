from __future__ import annotations

from typing import Protocol

import httpx


class LLMClientError(RuntimeError):
    pass


class CompletionClient(Protocol):
    def complete(self, *, system_prompt: str, user_prompt: str) -> str: ...


class OpenAIChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str = "",
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        max_tokens: int = 300,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_tokens = max_tokens

    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        last_error: Exception | None = None
        for model in self._model_candidates():
            try:
                return self._chat_completion(
                    model=model,
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                )
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc

        if last_error is not None:
            raise LLMClientError(str(last_error)) from last_error
        raise LLMClientError("No model candidates configured")

    def _model_candidates(self) -> list[str]:
        candidates = [self._default_model] if self._default_model else []
        if self._fallback_model and self._fallback_model != self._default_model:
            candidates.append(self._fallback_model)
        return candidates

    def _chat_completion(self, *, model: str, system_prompt: str, user_prompt: str) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "temperature": 0,
                "max_tokens": self._max_tokens,
            },
            headers=headers,
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Invalid chat completion payload: expected an object")
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()
