"""
dispatcher.py — Chat dispatch with capability adaptation.

Combines:
  • CapabilityStore   — whether a model still accepts ``temperature``
  • RateLimitTracker  — quota telemetry from every upstream response
  • CallLog           — one entry per attempt and per local decision

Decision flow for every request:

  1.  No upstream key → MissingCredential, no call made
  2.  Reasoning-family model with effort != off → reasoning path
      (litellm.aresponses); everything else → standard path
      (litellm.acompletion)
  3.  On each path, send ``temperature`` unless the store says the
      model rejects it.  A temperature rejection is recorded in the
      store and the call retried once without the parameter.
  4.  Any other reasoning-path failure, or an empty reasoning reply,
      falls through to the standard path.  Standard-path failures are
      raised to the caller.
  5.  Empty reply after both paths → NoReplyProduced

Dependencies: litellm
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from litellm import acompletion, aresponses

from .calllog import CallLog
from .capabilities import CapabilityStore
from .discovery import is_reasoning_model
from .errors import (
    MissingCredential,
    NoReplyProduced,
    TemperatureUnsupported,
    UpstreamCallFailure,
)
from .models import (
    CallPath,
    ChatRequest,
    DispatchResult,
    LogKind,
    ReasoningEffort,
    Usage,
    as_plain_dict,
)
from .quota import RateLimitTracker, response_headers

logger = logging.getLogger(__name__)

UPSTREAM_PROVIDER = "openai"

_ROUTES = {
    CallPath.REASONING: "responses",
    CallPath.STANDARD: "chat.completions",
}

# Phrasings the provider (and litellm's own parameter check) use when
# refusing a parameter. Matching on message text breaks if the wording
# changes; keep every such check inside is_temperature_rejection().
_REJECTION_PHRASES: tuple = (
    "unsupported",
    "not supported",
    "does not support",
    "only the default",
)


def is_temperature_rejection(error: BaseException | str) -> bool:
    """True if an upstream error says the temperature parameter is unsupported."""
    msg = str(error).lower()
    if "temperature" not in msg:
        return False
    return any(p in msg for p in _REJECTION_PHRASES)


def select_path(model: str, effort: ReasoningEffort) -> CallPath:
    if effort != ReasoningEffort.OFF and is_reasoning_model(model):
        return CallPath.REASONING
    return CallPath.STANDARD


def build_messages(request: ChatRequest) -> List[Dict[str, str]]:
    """System prompt (if any) followed by the conversation."""
    out: List[Dict[str, str]] = []
    system = (request.system_prompt or "").strip()
    if system:
        out.append({"role": "system", "content": system})
    out.extend(request.messages)
    return out


# ══════════════════════════════════════════════════════════════════════════════
# Response normalisation
# ══════════════════════════════════════════════════════════════════════════════


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def reply_from_responses(raw: Any) -> str:
    """Reasoning path: ``output_text``, else the first text segment of ``output[].content[]``."""
    text = _get(raw, "output_text")
    if isinstance(text, str) and text:
        return text
    for item in _get(raw, "output") or []:
        content = _get(item, "content")
        if isinstance(content, str):
            if content:
                return content
            continue
        for part in content or []:
            if _get(part, "type") in ("output_text", "text"):
                segment = _get(part, "text")
                if segment:
                    return str(segment)
    return ""


def reply_from_completion(raw: Any) -> str:
    """Standard path: ``choices[0].message.content``."""
    choices = _get(raw, "choices") or []
    if not choices:
        return ""
    content = _get(_get(choices[0], "message"), "content")
    return content if isinstance(content, str) else ""


def _first_int(obj: Any, *keys: str) -> Optional[int]:
    for key in keys:
        val = _get(obj, key)
        if isinstance(val, (int, float)):
            return int(val)
    return None


def normalize_usage(raw: Any) -> Optional[Usage]:
    """Map either path's token fields onto promptTokens / completionTokens / totalTokens."""
    usage = _get(raw, "usage")
    if not usage:
        return None
    prompt = _first_int(usage, "prompt_tokens", "input_tokens")
    completion = _first_int(usage, "completion_tokens", "output_tokens")
    total = _first_int(usage, "total_tokens")
    if prompt is None and completion is None and total is None:
        return None
    p, c = prompt or 0, completion or 0
    return Usage(prompt_tokens=p, completion_tokens=c, total_tokens=total if total is not None else p + c)


# ══════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ══════════════════════════════════════════════════════════════════════════════


class Dispatcher:
    """
    Sends one chat request upstream, adapting to what the model accepts.

    Entry point: ``await dispatcher.dispatch(chat_request)``
    """

    def __init__(
        self,
        store: CapabilityStore,
        rate_limits: RateLimitTracker,
        call_log: CallLog,
        *,
        api_key: str = "",
        api_base: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        temperature: float = 0.7,
    ) -> None:
        self.store = store
        self.rate_limits = rate_limits
        self.call_log = call_log
        self._api_key = api_key
        self._api_base = api_base
        self.default_model = default_model
        self.temperature = temperature

    async def dispatch(self, request: ChatRequest) -> DispatchResult:
        model = (request.model or "").strip() or self.default_model
        if not self._api_key:
            self.call_log.record(
                LogKind.INTERNAL,
                "chat",
                "error",
                meta={"model": model},
                error="OPENAI_API_KEY not set on server",
            )
            raise MissingCredential()

        messages = build_messages(request)
        effort = request.reasoning_effort

        if select_path(model, effort) == CallPath.REASONING:
            try:
                result = await self._run_path(CallPath.REASONING, model, messages, effort)
            except UpstreamCallFailure as exc:
                logger.warning("Reasoning path failed for %s, falling back to standard: %s", model, exc)
                self._note(model, "reasoning path failed; trying standard path", error=exc.message)
            else:
                if result.reply:
                    return result
                logger.info("Reasoning path returned no text for %s, trying standard", model)
                self._note(model, "reasoning path returned no text; trying standard path")

        result = await self._run_path(CallPath.STANDARD, model, messages, effort)
        if not result.reply:
            self.call_log.record(
                LogKind.INTERNAL,
                "chat",
                "error",
                meta={"model": model},
                error="no reply produced",
            )
            raise NoReplyProduced(model)
        return result

    # ── Adaptive-temperature protocol ─────────────────────────────────────────

    async def _run_path(
        self,
        path: CallPath,
        model: str,
        messages: List[Dict[str, str]],
        effort: ReasoningEffort,
    ) -> DispatchResult:
        """At most two attempts: the second only after a temperature rejection."""
        include_temperature = self.store.get(model).accepts_temperature

        for attempt in (1, 2):
            try:
                return await self._attempt(path, model, messages, effort, include_temperature, attempt)
            except TemperatureUnsupported as exc:
                if attempt == 1 and include_temperature:
                    result = self.store.record_temperature_unsupported(model)
                    self._note(
                        model,
                        "temperature rejected; retrying without it",
                        meta={"path": path.value, "persisted": result.ok},
                    )
                    include_temperature = False
                    continue
                raise UpstreamCallFailure(exc.detail or exc.message, path=path.value) from exc

        raise UpstreamCallFailure(f"{path.value} path exhausted", path=path.value)

    async def _attempt(
        self,
        path: CallPath,
        model: str,
        messages: List[Dict[str, str]],
        effort: ReasoningEffort,
        include_temperature: bool,
        attempt: int,
    ) -> DispatchResult:
        route = _ROUTES[path]
        meta: Dict[str, Any] = {
            "model": model,
            "path": path.value,
            "attempt": attempt,
            "temperature": include_temperature,
        }
        if path == CallPath.REASONING:
            meta["effort"] = effort.value

        start = time.monotonic()
        try:
            if path == CallPath.REASONING:
                raw = await self._call_reasoning(model, messages, effort, include_temperature)
            else:
                raw = await self._call_standard(model, messages, include_temperature)
        except Exception as exc:
            latency = (time.monotonic() - start) * 1000.0
            self._observe_error_headers(exc)
            self.call_log.record(
                LogKind.UPSTREAM,
                route,
                "error",
                method="POST",
                duration_ms=latency,
                meta=meta,
                error=str(exc),
            )
            if is_temperature_rejection(exc):
                raise TemperatureUnsupported(model, str(exc)) from exc
            logger.warning("%s %s failed: %s", route, model, exc)
            raise UpstreamCallFailure(str(exc), path=path.value) from exc

        latency = (time.monotonic() - start) * 1000.0
        self.rate_limits.observe(response_headers(raw))

        if path == CallPath.REASONING:
            reply = reply_from_responses(raw)
        else:
            reply = reply_from_completion(raw)
        usage = normalize_usage(raw)

        meta["usage"] = usage.to_api() if usage else None
        self.call_log.record(
            LogKind.UPSTREAM,
            route,
            "ok",
            method="POST",
            duration_ms=latency,
            meta=meta,
            note=None if reply else "empty reply",
        )
        logger.debug("%s %s ok in %.0fms", route, model, latency)
        return DispatchResult(reply=reply, usage=usage, raw=as_plain_dict(raw), path=path, model=model)

    # ── Upstream calls ────────────────────────────────────────────────────────

    def _credentials(self) -> Dict[str, str]:
        # Catalogue ids litellm has no mapping for would otherwise fail provider lookup
        creds = {"api_key": self._api_key, "custom_llm_provider": UPSTREAM_PROVIDER}
        if self._api_base:
            creds["api_base"] = self._api_base
        return creds

    async def _call_reasoning(
        self,
        model: str,
        messages: List[Dict[str, str]],
        effort: ReasoningEffort,
        include_temperature: bool,
    ) -> Any:
        params: Dict[str, Any] = {"reasoning": {"effort": effort.value}}
        if include_temperature:
            params["temperature"] = self.temperature
        return await aresponses(model=model, input=messages, **params, **self._credentials())

    async def _call_standard(
        self,
        model: str,
        messages: List[Dict[str, str]],
        include_temperature: bool,
    ) -> Any:
        params: Dict[str, Any] = {}
        if include_temperature:
            params["temperature"] = self.temperature
        return await acompletion(model=model, messages=messages, **params, **self._credentials())

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _observe_error_headers(self, exc: Exception) -> None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
        if headers:
            self.rate_limits.observe(headers)

    def _note(
        self,
        model: str,
        note: str,
        meta: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        self.call_log.record(
            LogKind.INTERNAL,
            "chat",
            "info",
            meta={"model": model, **(meta or {})},
            note=note,
            error=error,
        )
