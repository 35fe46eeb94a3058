"""Narration client — turns a session context and a player action into story text.

Retry policy:
  up to max_attempts calls (default 2); before attempt n+1 sleep
  backoff_ms * n milliseconds. An error is retried only when
  "<ExceptionName>: <message>" looks transient (timeout, network, 502/503/504).
  A permanent error or exhausted attempts yields FALLBACK_TEXT with
  degraded=True. Callers must never apply effect resolution to degraded text.

Post-processing: the first <thinking>...</thinking> block becomes the
`reasoning` field; every such block is stripped from the narrative text.
"""

from __future__ import annotations

import asyncio
import logging
import re

from rpg_session.llm import LLM, ChatMessage
from rpg_session.models import NarrationResult, Player, SessionContext
from rpg_session.prompts import SYSTEM_PROMPT, PromptError, player_turn, render_summary

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "Sorry, the AI service is unavailable. Please try again later."
SILENT_TEXT = "The DM is silent."

_TRANSIENT = re.compile(r"timeout|timed out|network|502|503|504", re.IGNORECASE)
_THINKING = re.compile(r"<thinking>(.*?)</thinking>", re.IGNORECASE | re.DOTALL)


def is_retryable(error: BaseException) -> bool:
    return bool(_TRANSIENT.search(f"{type(error).__name__}: {error}"))


def extract_reasoning(raw: str) -> tuple[str, str]:
    """Split raw narrator output into (text, reasoning)."""
    match = _THINKING.search(raw)
    reasoning = match.group(1).strip() if match else ""
    text = _THINKING.sub("", raw).strip()
    return text, reasoning


class Narrator:
    """Wraps the narration backend with prompt construction, retries and fallback.

    Args:
        llm:          Backend callable (see rpg_session.llm.LLM).
        max_attempts: Total backend calls per narration, at least 1.
        backoff_ms:   Base delay; the wait before attempt n+1 is backoff_ms * n.
        max_tokens:   Output length requested from the backend.
    """

    def __init__(
        self,
        llm: LLM,
        *,
        max_attempts: int = 2,
        backoff_ms: int = 250,
        max_tokens: int = 1000,
    ) -> None:
        self._llm = llm
        self.max_attempts = max(1, max_attempts)
        self.backoff_ms = max(0, backoff_ms)
        self.max_tokens = max_tokens

    def build_messages(self, context: SessionContext, player: Player, action: str) -> list[ChatMessage]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "assistant", "content": render_summary(context)},
            {"role": "user", "content": player_turn(player, action)},
        ]

    async def narrate(self, context: SessionContext, player: Player, action: str) -> NarrationResult:
        try:
            messages = self.build_messages(context, player, action)
        except PromptError as e:
            logger.error("Narration prompt failed: %s", e)
            return self._fallback()

        for attempt in range(1, self.max_attempts + 1):
            logger.debug(
                "narration request attempt=%d/%d player=%s players=%d messages=%d enemies=%d",
                attempt, self.max_attempts, player.id,
                len(context.players), len(context.messages), len(context.combat.enemies),
            )
            try:
                raw = await self._llm("narrator", messages, self.max_tokens)
            except Exception as e:
                retryable = is_retryable(e)
                logger.warning(
                    "Narration failed (attempt %d/%d, retryable=%s): %s",
                    attempt, self.max_attempts, retryable, e,
                )
                if not retryable or attempt == self.max_attempts:
                    break
                await self._backoff(attempt)
                continue

            text, reasoning = extract_reasoning(raw or SILENT_TEXT)
            return NarrationResult(text=text or SILENT_TEXT, reasoning=reasoning, degraded=False)

        logger.error("Narration unavailable for player %s, using fallback text", player.id)
        return self._fallback()

    async def _backoff(self, attempt: int) -> None:
        delay_ms = self.backoff_ms * attempt
        if delay_ms <= 0:
            return
        await asyncio.sleep(delay_ms / 1000)

    @staticmethod
    def _fallback() -> NarrationResult:
        return NarrationResult(text=FALLBACK_TEXT, reasoning="", degraded=True)
