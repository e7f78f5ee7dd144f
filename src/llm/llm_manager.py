"""
Unified LLM access for the completion and embedding endpoints.

- Provider classes wrap the HTTP protocol (OpenAI-compatible / Anthropic)
- Failures are classified into the pipeline's ProviderError codes
- Output normalization: final_text / reasoning_text kept apart
- API keys from env vars override config, masked in messages
- dry_run mode for development without a provider

Config source: config.settings.settings.llm
"""

from __future__ import annotations

import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import requests

from config.settings import settings
from src.core.errors import ErrorCode, ProviderError, TransformError
from src.log import get_logger
from src.observability import metrics, tracer

logger = get_logger(__name__)

# ============================================================
# Constants
# ============================================================

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT = 60  # seconds
PLACEHOLDER_KEYS = ("sk-xxx", "sk-ant-xxx", "AIzxxx")


# ============================================================
# Dataclasses
# ============================================================

@dataclass
class ProviderConfig:
    """Configuration of one provider"""
    name: str
    api_key: str
    base_url: str
    default_model: str
    models: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def is_anthropic(self) -> bool:
        return "anthropic.com" in self.base_url or self.name.startswith("claude")

    def resolve_model(self, model: Optional[str] = None) -> str:
        if model:
            return self.models.get(model, model)
        return self.models.get(self.default_model, self.default_model)

    @classmethod
    def from_settings(cls, name: str) -> "ProviderConfig":
        raw = settings.llm.get_provider(name)
        return cls(
            name=name,
            api_key=raw["api_key"],
            base_url=raw["base_url"],
            default_model=raw["default_model"],
            models=raw["models"],
            params=raw["params"],
        )


# ============================================================
# Helper Functions
# ============================================================

def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two dicts; values in *override* win, nested dicts merge.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def mask_secret(secret: str, show_chars: int = 4) -> str:
    """
    Mask a key for display, keeping a few leading and trailing characters.
    e.g. "sk-a...wxyz"
    """
    if not secret:
        return "(empty)"
    if len(secret) <= show_chars * 2 + 3:
        return "*" * len(secret)
    return f"{secret[:show_chars]}...{secret[-show_chars:]}"


def has_valid_key(config: ProviderConfig) -> bool:
    key = (config.api_key or "").strip()
    return bool(key) and key not in PLACEHOLDER_KEYS


def classify_status(status_code: int, body: str = "") -> ErrorCode:
    """Map a provider HTTP status onto the pipeline's error vocabulary."""
    text = (body or "").lower()
    if status_code == 429:
        if "quota" in text or "billing" in text:
            return ErrorCode.QUOTA_EXCEEDED
        return ErrorCode.RATE_LIMITED
    if status_code == 402:
        return ErrorCode.QUOTA_EXCEEDED
    if status_code in (401, 403):
        return ErrorCode.AUTH_FAILED
    if status_code == 404:
        return ErrorCode.MODEL_UNAVAILABLE
    if status_code == 503 and "model" in text:
        return ErrorCode.MODEL_UNAVAILABLE
    if status_code >= 500 or status_code == 408:
        return ErrorCode.TRANSIENT
    return ErrorCode.INVALID_INPUT


def _raise_classified(
    exc: Exception,
    provider: str,
    error_cls: Type[ProviderError],
) -> None:
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        body = exc.response.text[:500]
        code = classify_status(status, body)
        raise error_cls(code, f"{provider} HTTP {status}: {body}", status_code=status) from exc
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        raise error_cls(ErrorCode.TRANSIENT, f"{provider} unreachable: {exc}") from exc
    raise error_cls(ErrorCode.TRANSIENT, f"{provider} request failed: {exc}") from exc


def _request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    timeout: float,
    *,
    provider: str = "",
    error_cls: Type[ProviderError] = TransformError,
    max_retries: Optional[int] = None,
    backoff: Optional[float] = None,
    **kwargs: Any,
) -> requests.Response:
    """
    Send one request; retry only retryable classified failures
    (rate limit, 5xx, timeouts) with ``backoff ** attempt`` seconds between tries.
    The last failure is raised as *error_cls*.
    """
    if max_retries is None:
        max_retries = settings.llm.max_retries
    if backoff is None:
        backoff = settings.llm.retry_backoff
    for attempt in range(max_retries + 1):
        try:
            resp = session.request(method, url, timeout=timeout, **kwargs)
            resp.raise_for_status()
            return resp
        except requests.exceptions.RequestException as e:
            try:
                _raise_classified(e, provider, error_cls)
            except ProviderError as classified:
                if not classified.retryable or attempt >= max_retries:
                    raise
                logger.warning(
                    "[llm] %s attempt %d/%d failed (%s), retrying",
                    provider, attempt + 1, max_retries + 1, classified.code.value,
                )
                time.sleep(backoff ** attempt)
    raise error_cls(ErrorCode.TRANSIENT, f"{provider} request failed")


# ============================================================
# Provider Classes
# ============================================================

class Provider(ABC):
    """Base provider: owns the HTTP session"""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._session = requests.Session()

    @abstractmethod
    def request(self, payload: Dict[str, Any], timeout: Optional[float] = None, **retry: Any) -> Dict[str, Any]:
        """Send the payload and return the raw JSON response."""
        raise NotImplementedError

    def embed(self, payload: Dict[str, Any], timeout: Optional[float] = None, **retry: Any) -> Dict[str, Any]:
        raise ProviderError(
            ErrorCode.MODEL_UNAVAILABLE,
            f"Provider '{self.config.name}' has no embedding endpoint",
        )


class OpenAICompatProvider(Provider):
    """
    OpenAI-compatible protocol.
    Works with OpenAI, DeepSeek, Gemini (OpenAI endpoint) and similar.
    """

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def request(self, payload: Dict[str, Any], timeout: Optional[float] = None, **retry: Any) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        resp = _request_with_retry(
            self._session, "POST", url, timeout or DEFAULT_TIMEOUT,
            provider=self.config.name, headers=self._headers(), json=payload, **retry,
        )
        return resp.json()

    def embed(self, payload: Dict[str, Any], timeout: Optional[float] = None, **retry: Any) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/embeddings"
        resp = _request_with_retry(
            self._session, "POST", url, timeout or DEFAULT_TIMEOUT,
            provider=self.config.name, headers=self._headers(), json=payload, **retry,
        )
        return resp.json()


class AnthropicProvider(Provider):
    """
    Anthropic protocol (Claude models).
    """

    def request(self, payload: Dict[str, Any], timeout: Optional[float] = None, **retry: Any) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/v1/messages"
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        resp = _request_with_retry(
            self._session, "POST", url, timeout or DEFAULT_TIMEOUT,
            provider=self.config.name, headers=headers, json=payload, **retry,
        )
        return resp.json()


def build_provider(config: ProviderConfig) -> Provider:
    if config.is_anthropic():
        return AnthropicProvider(config)
    return OpenAICompatProvider(config)


# ============================================================
# Response Normalization
# ============================================================

def normalize_response(raw: Dict[str, Any], is_anthropic: bool = False) -> Dict[str, Any]:
    """
    Extract final_text / reasoning_text / usage / refusal from a raw response.
    Extraction errors leave fields as None.
    """
    result = {
        "final_text": None,
        "reasoning_text": None,
        "usage": None,
        "refusal": None,
    }
    try:
        if is_anthropic:
            result.update(_normalize_anthropic(raw))
        else:
            result.update(_normalize_openai_compat(raw))
    except (AttributeError, TypeError, KeyError, IndexError):
        logger.debug("[llm] response normalization failed", exc_info=True)
    return result


def _normalize_openai_compat(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    final_text: choices[0].message.content (str, or text parts of a list)
    reasoning_text: content parts of type reasoning/thinking, or message.reasoning_content
    """
    result: Dict[str, Any] = {"usage": raw.get("usage")}
    choices = raw.get("choices") or []
    if not choices:
        return result

    message = choices[0].get("message") or {}
    content = message.get("content")
    if message.get("refusal"):
        result["refusal"] = True

    if isinstance(content, str):
        result["final_text"] = content
    elif isinstance(content, list):
        text_parts, reasoning_parts = [], []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") in ("reasoning", "thinking"):
                reasoning_parts.append(block.get("text", ""))
        result["final_text"] = "".join(text_parts) or None
        result["reasoning_text"] = "".join(reasoning_parts) or None

    if not result.get("reasoning_text"):
        for field_name in ("reasoning", "thoughts", "reasoning_content"):
            reasoning = message.get(field_name)
            if reasoning and isinstance(reasoning, str):
                result["reasoning_text"] = reasoning
                break
    return result


def _normalize_anthropic(raw: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {"usage": raw.get("usage")}
    if raw.get("stop_reason") == "refusal":
        result["refusal"] = True
    text_parts, thinking_parts = [], []
    for block in raw.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        elif block.get("type") == "thinking":
            thinking_parts.append(block.get("thinking", ""))
    result["final_text"] = "".join(text_parts) or None
    result["reasoning_text"] = "".join(thinking_parts) or None
    return result


# ============================================================
# Chat Clients
# ============================================================

class BaseChatClient(ABC):
    """Chat client base"""

    provider_name: str = ""

    @abstractmethod
    def chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        **overrides: Any,
    ) -> Dict[str, Any]:
        """
        Send messages and return:
            {
                "provider": str,
                "model": str,
                "final_text": str,
                "reasoning_text": str | None,
                "raw": dict,
                "meta": {"usage": dict, "latency_ms": int, "refusal": bool}
            }
        Raises TransformError (classified) on provider failure.
        """
        raise NotImplementedError


_FENCE_RE = re.compile(r"```[\w+\-.#]*\n(.*?)```", re.DOTALL)


class DryRunChatClient(BaseChatClient):
    """
    Dry-run client: no API call.
    Echoes the last fenced code block of the last user message, so a transform
    returns the source unchanged.
    """

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.provider_name = config.name

    def chat(self, messages: List[Dict[str, Any]], model: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
        resolved_model = self.config.resolve_model(model)
        last_user = next(
            (str(m.get("content") or "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        blocks = _FENCE_RE.findall(last_user)
        if blocks:
            text = f"```\n{blocks[-1]}```\nRationale: dry run, source returned unchanged.\nRisks: none"
        else:
            text = f"[DRY_RUN] provider={self.config.name}, model={resolved_model}"
        return {
            "provider": self.config.name,
            "model": resolved_model,
            "final_text": text,
            "reasoning_text": None,
            "raw": {"dry_run": True, "messages_count": len(messages)},
            "meta": {"usage": None, "latency_ms": 0, "refusal": None},
        }


class HTTPChatClient(BaseChatClient):
    """
    Real HTTP client; picks the OpenAI-compatible or Anthropic payload shape.
    """

    def __init__(
        self,
        config: ProviderConfig,
        provider: Provider,
        semaphore: Optional[threading.Semaphore] = None,
    ):
        self.config = config
        self.provider = provider
        self.provider_name = config.name
        self._semaphore = semaphore

    def chat(self, messages: List[Dict[str, Any]], model: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
        resolved_model = self.config.resolve_model(model)
        timeout = overrides.pop("timeout_seconds", None) or overrides.pop("timeout", None)
        retry_kwargs = {}
        if "max_retries" in overrides:
            retry_kwargs["max_retries"] = int(overrides.pop("max_retries"))
        merged_params = deep_merge(self.config.params, overrides)
        is_anthropic = self.config.is_anthropic()

        if is_anthropic:
            payload = self._build_anthropic_payload(messages, resolved_model, merged_params)
        else:
            payload = self._build_openai_payload(messages, resolved_model, merged_params)

        start_time = time.time()
        raw: Dict[str, Any] = {}
        failed = False
        with tracer.start_as_current_span(
            "llm.chat", attributes={"llm.provider": self.config.name, "llm.model": resolved_model}
        ):
            try:
                if self._semaphore:
                    with self._semaphore:
                        raw = self.provider.request(payload, timeout=timeout, **retry_kwargs)
                else:
                    raw = self.provider.request(payload, timeout=timeout, **retry_kwargs)
            except ProviderError:
                failed = True
                raise
            finally:
                latency_ms = int((time.time() - start_time) * 1000)
                self._record_metrics(resolved_model, latency_ms, failed, raw, is_anthropic)

        normalized = normalize_response(raw, is_anthropic)
        return {
            "provider": self.config.name,
            "model": resolved_model,
            "final_text": normalized["final_text"] or "",
            "reasoning_text": normalized["reasoning_text"],
            "raw": raw,
            "meta": {
                "usage": normalized["usage"],
                "latency_ms": latency_ms,
                "refusal": normalized["refusal"],
            },
        }

    def _record_metrics(self, model: str, latency_ms: int, failed: bool, raw: Dict[str, Any], is_anthropic: bool) -> None:
        prov = self.config.name
        metrics.llm_requests_total.labels(provider=prov, model=model).inc()
        metrics.llm_duration_seconds.labels(provider=prov, model=model).observe(latency_ms / 1000.0)
        if failed:
            metrics.llm_errors_total.labels(provider=prov, model=model).inc()
            return
        usage = normalize_response(raw, is_anthropic).get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens") or usage.get("input_tokens")
        completion_tokens = usage.get("completion_tokens") or usage.get("output_tokens")
        if prompt_tokens:
            metrics.llm_tokens_used.labels(provider=prov, model=model, direction="input").inc(prompt_tokens)
        if completion_tokens:
            metrics.llm_tokens_used.labels(provider=prov, model=model, direction="output").inc(completion_tokens)

    def _build_openai_payload(self, messages: List[Dict[str, Any]], model: str, params: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.get("role", "user"), "content": str(m.get("content") or "")} for m in messages],
        }
        payload.update(params)
        if payload.get("max_tokens") is None:
            payload.pop("max_tokens", None)
        # OpenAI's newer API names the limit max_completion_tokens
        if "api.openai.com" in (self.config.base_url or "") and "max_tokens" in payload:
            payload["max_completion_tokens"] = payload.pop("max_tokens")
        return payload

    def _build_anthropic_payload(self, messages: List[Dict[str, Any]], model: str, params: Dict[str, Any]) -> Dict[str, Any]:
        system_content = None
        user_messages = []
        for msg in messages:
            if msg.get("role") == "system":
                system_content = msg.get("content", "")
            else:
                user_messages.append(msg)

        payload: Dict[str, Any] = {"model": model, "messages": user_messages}
        if system_content:
            payload["system"] = system_content
        payload.update(params)
        # Anthropic requires a positive integer max_tokens
        if payload.get("max_tokens") is None:
            payload["max_tokens"] = 8192
        return payload


# ============================================================
# LLMManager
# ============================================================

class LLMManager:
    """
    Builds chat clients and raw providers from settings.llm.
    One semaphore per provider caps concurrent calls.
    """

    def __init__(self, dry_run: Optional[bool] = None, default: Optional[str] = None):
        self.dry_run = settings.llm.dry_run if dry_run is None else dry_run
        self.default = default or settings.llm.default
        self._semaphores: Dict[str, threading.Semaphore] = {}
        self._sem_lock = threading.Lock()

    def get_provider_names(self) -> List[str]:
        return settings.llm.provider_names()

    def get_config(self, provider: Optional[str] = None) -> ProviderConfig:
        name = provider or self.default
        if name not in self.get_provider_names():
            raise ValueError(f"Unknown provider: {name}. Available: {self.get_provider_names()}")
        return ProviderConfig.from_settings(name)

    def get_provider(self, provider: Optional[str] = None) -> Provider:
        """Raw provider, used by the embedding client."""
        pcfg = self.get_config(provider)
        self._check_key(pcfg)
        return build_provider(pcfg)

    def get_client(self, provider: Optional[str] = None) -> BaseChatClient:
        pcfg = self.get_config(provider)
        if self.dry_run:
            return DryRunChatClient(pcfg)
        self._check_key(pcfg)
        with self._sem_lock:
            if pcfg.name not in self._semaphores:
                self._semaphores[pcfg.name] = threading.Semaphore(settings.llm.max_concurrent_per_provider)
            semaphore = self._semaphores[pcfg.name]
        return HTTPChatClient(pcfg, build_provider(pcfg), semaphore=semaphore)

    @staticmethod
    def _check_key(pcfg: ProviderConfig) -> None:
        if not has_valid_key(pcfg):
            raise ProviderError(
                ErrorCode.AUTH_FAILED,
                f"Invalid or missing API key for provider '{pcfg.name}' "
                f"(set MIGRATE_LLM__{pcfg.name.upper().replace('-', '_')}__API_KEY). "
                f"Current key: {mask_secret(pcfg.api_key)}",
            )


# ============================================================
# Convenience
# ============================================================

_manager: Optional[LLMManager] = None


def get_manager() -> LLMManager:
    """Process-wide LLMManager singleton."""
    global _manager
    if _manager is None:
        _manager = LLMManager()
    return _manager
