from __future__ import annotations

import logging
import re
import threading
from collections import deque
from typing import Any, Deque, Dict, List

from reply_orchestrator.config import prompts, settings

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("anthropic", "gemini", "openai")


class GenerationError(RuntimeError):
    """Text generation failed on every provider; the message goes unanswered."""


class RateLimitError(GenerationError):
    def __init__(self, *, provider: str, retry_after_seconds: float) -> None:
        super().__init__(f"Rate limited by {provider}; retry after {retry_after_seconds:.1f}s")
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds


class ConversationMemory:
    """Last N turns per conversation, oldest first."""

    def __init__(self, max_turns: int = settings.CONVERSATION_MEMORY) -> None:
        self.max_turns = max(1, max_turns)
        self._turns: Dict[str, Deque[dict[str, str]]] = {}
        self._lock = threading.Lock()

    def add(self, conversation_id: str, role: str, text: str) -> None:
        with self._lock:
            turns = self._turns.setdefault(conversation_id, deque(maxlen=self.max_turns))
            turns.append({"role": role, "text": text})

    def history(self, conversation_id: str) -> List[dict[str, str]]:
        with self._lock:
            return list(self._turns.get(conversation_id, ()))


def format_user_turn(context: dict[str, Any]) -> str:
    text = str(context.get("text", "")).strip()
    if context.get("is_group"):
        return f"[{context.get('sender', 'unknown')}]: {text}"
    return text


class Delegate:
    """Execution service: LLM call to generate the reply text."""

    def __init__(
        self,
        provider: str | None = None,
        *,
        failover_chain: List[str] | None = None,
        memory: ConversationMemory | None = None,
    ) -> None:
        self.provider = (provider if provider is not None else settings.LLM_PROVIDER).lower()
        self._explicit_chain = failover_chain if failover_chain is not None else settings.LLM_FAILOVER_CHAIN
        self.memory = memory or ConversationMemory()

    def is_configured(self) -> bool:
        return bool(self._get_failover_chain())

    def _has_credentials(self, provider: str) -> bool:
        return bool(
            {
                "anthropic": settings.ANTHROPIC_API_KEY,
                "gemini": settings.GEMINI_API_KEY,
                "openai": settings.OPENAI_API_KEY,
            }.get(provider)
        )

    def _get_failover_chain(self) -> list[str]:
        """Return the ordered list of providers to try.

        Primary provider first, then any configured failover providers,
        filtered to those that actually have credentials available.
        """
        chain: list[str] = [self.provider] if self.provider else []

        if self._explicit_chain:
            chain.extend(p for p in self._explicit_chain if p not in chain)
        else:
            chain.extend(p for p in SUPPORTED_PROVIDERS if p not in chain)

        return [p for p in chain if p in SUPPORTED_PROVIDERS and self._has_credentials(p)]

    def build_system_prompt(self, context: dict[str, Any]) -> str:
        calendar = str(context.get("calendar_context") or "").strip() or "No calendar info available."
        return prompts.PERSONA_SYSTEM_PROMPT.replace("{CALENDAR_CONTEXT}", calendar)

    def generate(self, conversation_id: str, context: dict[str, Any]) -> str:
        """Generate a reply for the newest message in *context*.

        ``context`` carries ``text``, ``sender``, ``is_group`` and optionally
        ``calendar_context``. Raises ``GenerationError`` when every provider
        fails or returns nothing usable, or ``RateLimitError`` when every
        provider failed and at least one of them was throttling.
        """
        self.memory.add(conversation_id, "user", format_user_turn(context))
        system_prompt = self.build_system_prompt(context)
        history = self.memory.history(conversation_id)

        chain = self._get_failover_chain()
        if not chain:
            raise GenerationError("No LLM provider configured")

        last_error: Exception | None = None
        rate_limited: RateLimitError | None = None
        for provider in chain:
            try:
                cleaned = self._clean_output(self._dispatch(provider, system_prompt, history))
                if cleaned:
                    if provider != chain[0]:
                        logger.warning("[FAILOVER] Succeeded on fallback provider: %s", provider)
                    self.memory.add(conversation_id, "assistant", cleaned)
                    return cleaned
                logger.warning("[FAILOVER] Provider %s returned empty after cleaning", provider)
            except RateLimitError as exc:
                # Report the shortest retry window if nothing answers
                if rate_limited is None or exc.retry_after_seconds < rate_limited.retry_after_seconds:
                    rate_limited = exc
                last_error = exc
                logger.warning("[FAILOVER] Provider %s rate limited: %s", provider, exc)
            except Exception as exc:
                last_error = exc
                logger.warning("[FAILOVER] Provider %s failed: %s", provider, exc)

        if rate_limited is not None:
            raise rate_limited
        if last_error:
            raise GenerationError(f"All LLM providers failed: {last_error}") from last_error
        raise GenerationError("All LLM providers returned empty responses")

    def _clean_output(self, text: str) -> str:
        """Strip preamble, thinking tags and wrapping quotes from model output."""
        text = (text or "").strip()
        if not text:
            return ""
        text = re.sub(r"<thinking>.*?</thinking>", "", text, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(r"^(?:response|draft|message|reply|kyle):\s*", "", text.strip(), flags=re.IGNORECASE)
        text = re.sub(
            r"^(?:here\'?s?|my)\s+(?:is\s+)?(?:my\s+)?(?:draft|response|reply|message)(?: is)?[:\.]?\s*",
            "",
            text,
            flags=re.IGNORECASE,
        )
        text = text.strip()
        if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
            text = text[1:-1]
        return text.strip()

    def _dispatch(self, provider: str, system_prompt: str, history: list[dict[str, str]]) -> str:
        """Route to the correct provider method."""
        if provider == "anthropic":
            return self._anthropic_reply(system_prompt, history)
        elif provider == "gemini":
            return self._gemini_reply(system_prompt, history)
        elif provider == "openai":
            return self._openai_reply(system_prompt, history)
        else:
            raise ValueError(f"Unsupported LLM provider: {provider}")

    def _anthropic_reply(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        if not settings.ANTHROPIC_API_KEY:
            raise RuntimeError("ANTHROPIC_API_KEY is not set")

        import anthropic

        client = anthropic.Anthropic(api_key=settings.ANTHROPIC_API_KEY)

        messages = [{"role": h["role"], "content": h["text"]} for h in history if h.get("text")]
        try:
            resp = client.messages.create(
                model=settings.ANTHROPIC_MODEL,
                system=system_prompt,
                messages=messages,
                max_tokens=settings.GENERATION_MAX_TOKENS,
            )
        except anthropic.RateLimitError as exc:
            raise RateLimitError(provider="anthropic", retry_after_seconds=60.0) from exc
        return (resp.content[0].text or "").strip()

    def _gemini_reply(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        if not settings.GEMINI_API_KEY:
            raise RuntimeError("GEMINI_API_KEY is not set")

        import google.generativeai as genai

        genai.configure(api_key=settings.GEMINI_API_KEY)

        # Gemini's SDK takes a single prompt string; merge system + chat history.
        parts: list[str] = [system_prompt.strip(), "\n\nConversation:\n"]
        for item in history:
            text = str(item.get("text", "")).strip()
            if not text:
                continue
            speaker = "Kyle" if item.get("role") == "assistant" else "Them"
            parts.append(f"{speaker}: {text}\n")
        parts.append(prompts.FLAT_PROMPT_SUFFIX)
        prompt = "".join(parts)

        model = genai.GenerativeModel(settings.GEMINI_MODEL)
        try:
            resp = model.generate_content(
                prompt,
                generation_config={"max_output_tokens": settings.GENERATION_MAX_TOKENS},
            )
        except Exception as exc:
            msg = str(exc).lower()
            if "429" in msg or "quota" in msg or "rate" in msg:
                retry_after = 30.0
                m = re.search(r"retry in ([0-9]+\.?[0-9]*)s", str(exc), re.IGNORECASE)
                if m:
                    retry_after = float(m.group(1))
                raise RateLimitError(provider="gemini", retry_after_seconds=retry_after) from exc
            raise

        return str(getattr(resp, "text", "") or "").strip()

    def _openai_reply(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        if not settings.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is not set")

        from openai import OpenAI

        client = OpenAI(api_key=settings.OPENAI_API_KEY)

        messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": h["role"], "content": h["text"]} for h in history if h.get("text"))

        resp = client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=messages,
            max_tokens=settings.GENERATION_MAX_TOKENS,
        )
        return (resp.choices[0].message.content or "").strip()
