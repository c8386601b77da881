import json
from typing import Any, AsyncIterator

import httpx


PROVIDERS = ("gemini", "openai", "ollama")


class LLMConfigurationError(RuntimeError):
    """Raised before any network activity when the active provider cannot be used."""


class MissingCredentialError(LLMConfigurationError):
    """No API key is set for the active provider."""


class RuntimeLLMClient:
    def __init__(
        self,
        *,
        provider: str = "gemini",
        gemini_api_key: str = "",
        gemini_model: str = "gemini-2.5-flash",
        gemini_base_url: str = "https://generativelanguage.googleapis.com",
        openai_api_key: str = "",
        openai_model: str = "gpt-4o-mini",
        openai_base_url: str = "https://api.openai.com/v1",
        ollama_base_url: str = "http://127.0.0.1:11434",
        ollama_model: str = "llama3.2:1b",
        stream_timeout: float | None = None,
        connect_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = (provider or "gemini").strip().lower()

        self.gemini_api_key = (gemini_api_key or "").strip()
        self.gemini_model = (gemini_model or "gemini-2.5-flash").strip()
        self.gemini_base_url = (gemini_base_url or "https://generativelanguage.googleapis.com").rstrip("/")

        self.openai_api_key = (openai_api_key or "").strip()
        self.openai_model = (openai_model or "gpt-4o-mini").strip()
        self.openai_base_url = (openai_base_url or "https://api.openai.com/v1").rstrip("/")

        self.ollama_base_url = (ollama_base_url or "http://127.0.0.1:11434").rstrip("/")
        self.ollama_model = (ollama_model or "").strip()

        self.stream_timeout = stream_timeout
        self.connect_timeout = float(connect_timeout)
        self._transport = transport

    @property
    def model(self) -> str:
        if self.provider == "gemini":
            return self.gemini_model
        if self.provider == "openai":
            return self.openai_model
        if self.provider == "ollama":
            return self.ollama_model
        return ""

    @property
    def base_url(self) -> str:
        if self.provider == "gemini":
            return self.gemini_base_url
        if self.provider == "openai":
            return self.openai_base_url
        if self.provider == "ollama":
            return self.ollama_base_url
        return ""

    def is_configured(self) -> bool:
        if self.provider == "gemini":
            return bool(self.gemini_model and self.gemini_api_key)
        if self.provider == "openai":
            return bool(self.openai_model and self.openai_api_key)
        if self.provider == "ollama":
            return bool(self.ollama_model)
        return False

    def require_configured(self) -> None:
        if self.provider not in PROVIDERS:
            raise LLMConfigurationError(f"Unsupported provider: {self.provider}")
        if self.provider == "gemini" and not self.gemini_api_key:
            raise MissingCredentialError("GEMINI_API_KEY (or API_KEY) environment variable not set")
        if self.provider == "openai" and not self.openai_api_key:
            raise MissingCredentialError("OPENAI_API_KEY environment variable not set")
        if not self.model:
            raise LLMConfigurationError(f"No model configured for provider '{self.provider}'.")

    def get_runtime_config(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "base_url": self.base_url,
            "configured": self.is_configured(),
        }

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.stream_timeout, connect=self.connect_timeout)
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @staticmethod
    async def _iter_sse_data(resp: httpx.Response) -> AsyncIterator[str]:
        async for line in resp.aiter_lines():
            if not line or not line.startswith("data:"):
                continue
            yield line[5:].strip()

    async def _stream_gemini(self, prompt: str) -> AsyncIterator[str]:
        url = f"{self.gemini_base_url}/v1beta/models/{self.gemini_model}:streamGenerateContent"
        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        headers = {"x-goog-api-key": self.gemini_api_key, "Content-Type": "application/json"}
        async with self._client() as client:
            async with client.stream("POST", url, params={"alt": "sse"}, headers=headers, json=payload) as resp:
                resp.raise_for_status()
                async for data in self._iter_sse_data(resp):
                    try:
                        event = json.loads(data)
                    except Exception:
                        continue
                    error = event.get("error")
                    if error:
                        raise RuntimeError(str(error.get("message") or error) if isinstance(error, dict) else str(error))
                    candidates = event.get("candidates") or []
                    if not candidates:
                        continue
                    parts = (candidates[0].get("content") or {}).get("parts") or []
                    text = "".join(str(part.get("text") or "") for part in parts)
                    if text:
                        yield text

    async def _stream_openai(self, prompt: str) -> AsyncIterator[str]:
        payload = {
            "model": self.openai_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        headers = {
            "Authorization": f"Bearer {self.openai_api_key}",
            "Content-Type": "application/json",
        }
        async with self._client() as client:
            async with client.stream("POST", f"{self.openai_base_url}/chat/completions", headers=headers, json=payload) as resp:
                resp.raise_for_status()
                async for data in self._iter_sse_data(resp):
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except Exception:
                        continue
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    delta = (choices[0].get("delta") or {}).get("content")
                    if delta:
                        yield str(delta)

    async def _stream_ollama(self, prompt: str) -> AsyncIterator[str]:
        payload = {
            "model": self.ollama_model,
            "stream": True,
            "messages": [{"role": "user", "content": prompt}],
        }
        async with self._client() as client:
            async with client.stream("POST", f"{self.ollama_base_url}/api/chat", json=payload) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except Exception:
                        continue
                    if event.get("error"):
                        raise RuntimeError(str(event["error"]))
                    chunk = str((event.get("message") or {}).get("content") or "")
                    if chunk:
                        yield chunk
                    if bool(event.get("done")):
                        break

    async def stream_text(self, prompt: str) -> AsyncIterator[str]:
        self.require_configured()

        if self.provider == "gemini":
            try:
                async for chunk in self._stream_gemini(prompt):
                    yield chunk
            except Exception as exc:
                raise RuntimeError(f"Gemini stream failed. Check API key/model/base URL. Details: {exc}") from exc
            return

        if self.provider == "openai":
            try:
                async for chunk in self._stream_openai(prompt):
                    yield chunk
            except Exception as exc:
                raise RuntimeError(f"OpenAI stream failed. Check API key/model/base URL. Details: {exc}") from exc
            return

        try:
            async for chunk in self._stream_ollama(prompt):
                yield chunk
        except Exception as exc:
            raise RuntimeError(
                f"Ollama stream failed. Is Ollama running and model '{self.ollama_model}' available? Details: {exc}"
            ) from exc
