"""
Text-generation collaborator for the question engine.

Talks to an OpenAI-compatible chat endpoint (DeepSeek by default) or an
Ollama-style generate endpoint. Failures come back as an error sentinel
string from ``generate`` and as an error ``JsonResult`` from
``generate_json``; neither raises.
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional, Type

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from settings import env_float, env_int, env_str
from text_utils import extract_json_object


# --------------- LLM Error helpers ---------------
LLM_ERROR_PREFIX = "__LLM_ERR__"


def _llm_error(error_type: str, detail: str = "") -> str:
    """Return a sentinel string indicating an LLM call failure."""
    return f"{LLM_ERROR_PREFIX}{error_type}|{detail}"


def is_llm_error(content: str) -> bool:
    return bool(content) and content.startswith(LLM_ERROR_PREFIX)


def parse_llm_error(content: str) -> dict:
    """Parse an LLM error sentinel into {type, detail}."""
    if not is_llm_error(content):
        return {}
    rest = content[len(LLM_ERROR_PREFIX):]
    parts = rest.split("|", 1)
    return {"type": parts[0], "detail": parts[1] if len(parts) > 1 else ""}


# --------------- Strict decoding ---------------

@dataclass(frozen=True)
class JsonResult:
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "JsonResult":
        return cls(value=value)

    @classmethod
    def failure(cls, reason: str) -> "JsonResult":
        return cls(error=reason or "invalid")


def decode_json(text: str, schema: Optional[Type[BaseModel]] = None) -> JsonResult:
    """Parse *text* into a dict and optionally validate it against *schema*."""
    if is_llm_error(text):
        err = parse_llm_error(text)
        return JsonResult.failure(f"llm_{err.get('type') or 'error'}")
    obj = extract_json_object(text)
    if obj is None:
        return JsonResult.failure("unparsable")
    if schema is None:
        return JsonResult.success(obj)
    try:
        return JsonResult.success(schema.model_validate(obj))
    except ValidationError as exc:
        return JsonResult.failure(f"schema: {str(exc.errors()[:1])[:160]}")


class GeneratedMove(BaseModel):
    """One question or guess proposed by the generator."""

    type: Literal["question", "guess"]
    content: str = Field(min_length=1)
    reason: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class VerificationItem(BaseModel):
    index: int
    question: str = ""
    userAnswer: str = ""
    suggestedAnswer: str = ""
    confidence: float = 0.0
    reason: str = ""


class VerificationPayload(BaseModel):
    items: list[VerificationItem] = []


class GapFillItem(BaseModel):
    candidate_id: Any
    answer: str = ""
    confidence: float = 0.0


class GapFillPayload(BaseModel):
    items: list[GapFillItem] = []


# --------------- Service ---------------

class LLMConfig(BaseModel):
    """Model runtime configuration."""

    model_config = ConfigDict(protected_namespaces=())

    model_name: str = "deepseek-chat"
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    provider: Optional[str] = None  # openai | deepseek | groq | ollama | generic
    temperature: float = 0.2
    max_tokens: int = 800
    top_p: float = 0.9
    timeout_sec: float = 12.0


class LLMService:
    """Single-turn completions with strict JSON decoding."""

    available = True

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig(
            api_url=env_str("LLM_API_URL", "https://api.deepseek.com/chat/completions"),
            api_key=env_str("LLM_API_KEY"),
            model_name=env_str("LLM_MODEL", "deepseek-chat"),
            provider=env_str("LLM_PROVIDER", "deepseek"),
            max_tokens=env_int("LLM_MAX_TOKENS", 800, 64, 4000),
            timeout_sec=env_float("GAME_EXTERNAL_TIMEOUT_SEC", 12.0, 1.0, 120.0),
        )
        self.call_log_path = os.getenv("LLM_CALL_LOG", "llm_call_log.txt")

    def _append_call_log(self, stage: str, status: str, detail: str = "") -> None:
        if not self.call_log_path:
            return
        try:
            p = Path(__file__).resolve().parent / self.call_log_path
            p.parent.mkdir(parents=True, exist_ok=True)
            ts = datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")
            line = f"[{ts}] stage={stage} status={status} model={self.config.model_name} detail={detail}\n"
            with open(p, "a", encoding="utf-8") as f:
                f.write(line)
        except Exception:
            # Logging must never block generation path.
            pass

    def _is_openai_compatible(self) -> bool:
        provider = (self.config.provider or "").lower().strip()
        api_url = self.config.api_url or ""
        return (
            provider in ("openai", "deepseek", "groq")
            or "/chat/completions" in api_url
            or "api.openai.com/v1" in api_url
        )

    async def _post(self, payload: dict, headers: dict) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.config.timeout_sec) as client:
            return await client.post(self.config.api_url or "", json=payload, headers=headers)

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
        stage: str = "request",
    ) -> str:
        """Generate text from the configured provider. One attempt, time-bounded."""
        temp = self.config.temperature if temperature is None else temperature
        token_limit = self.config.max_tokens if max_tokens is None else max_tokens

        try:
            if self._is_openai_compatible():
                self._append_call_log(stage, "start", "provider=openai_compatible")
                payload = {
                    "model": self.config.model_name,
                    "messages": [
                        {"role": "system", "content": system_prompt or "You are a helpful assistant."},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": temp,
                    "max_tokens": token_limit,
                    "top_p": self.config.top_p,
                }
                if json_mode:
                    payload["response_format"] = {"type": "json_object"}
                headers = {"Content-Type": "application/json"}
                if self.config.api_key:
                    headers["Authorization"] = f"Bearer {self.config.api_key}"
                response = await asyncio.wait_for(self._post(payload, headers), timeout=self.config.timeout_sec)
                if response.status_code != 200:
                    self._append_call_log(stage, "fail", f"http={response.status_code}")
                    return _llm_error("http_error", f"http={response.status_code}")
                self._append_call_log(stage, "ok", "http=200")
                choices = response.json().get("choices", [])
                if choices:
                    return (choices[0].get("message", {}).get("content") or "").strip()
                return ""

            self._append_call_log(stage, "start", "provider=generic")
            full_prompt = prompt
            if system_prompt:
                full_prompt = f"{system_prompt}\n\nUser: {prompt}\n\nAssistant:"
            payload = {
                "model": self.config.model_name,
                "prompt": full_prompt,
                "stream": False,
                "options": {"temperature": temp, "num_predict": token_limit, "top_p": self.config.top_p},
            }
            if json_mode:
                payload["format"] = "json"
            headers = {"Authorization": f"Bearer {self.config.api_key}"} if self.config.api_key else {}
            response = await asyncio.wait_for(self._post(payload, headers), timeout=self.config.timeout_sec)
            if response.status_code != 200:
                self._append_call_log(stage, "fail", f"http={response.status_code}")
                return _llm_error("http_error", f"http={response.status_code}")
            self._append_call_log(stage, "ok", "http=200")
            result = response.json()
            if isinstance(result, dict):
                return (result.get("response") or "").strip()
            return str(result).strip()

        except asyncio.TimeoutError:
            self._append_call_log(stage, "timeout", f"after={self.config.timeout_sec}s")
            return _llm_error("timeout", f"after={self.config.timeout_sec}s")
        except Exception as exc:
            self._append_call_log(stage, "error", str(exc)[:200])
            print(f"[llm] API error: {exc}")
            return _llm_error("exception", str(exc)[:200])

    async def generate_json(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        schema: Optional[Type[BaseModel]] = None,
        temperature: Optional[float] = None,
        stage: str = "json",
    ) -> JsonResult:
        raw = await self.generate(
            prompt=prompt,
            system_prompt=system_prompt,
            temperature=temperature,
            json_mode=True,
            stage=stage,
        )
        result = decode_json(raw, schema)
        if not result.ok:
            self._append_call_log(stage, "decode_fail", result.error)
        return result


class NullLLMService:
    """Stands in when no generation endpoint is configured."""

    available = False

    async def generate(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> str:
        return _llm_error("not_configured", "")

    async def generate_json(self, prompt: str, system_prompt: Optional[str] = None, schema=None, **kwargs) -> JsonResult:
        return JsonResult.failure("not_configured")


def build_llm_service():
    """Real client when an API key or a local endpoint is configured, else the null one."""
    if env_str("LLM_API_KEY") or (env_str("LLM_PROVIDER") or "").lower() == "ollama":
        return LLMService()
    return NullLLMService()
