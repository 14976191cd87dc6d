"""
LLM-powered nudge copywriter.

Turns a trigger context (trip, task, recipient, day count) into a short
``{subject, body}`` pair. Any failure along the way – no API key, transport
errors after retries, unparsable output – yields a fixed fallback message
for the trigger type, so callers never see an exception.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Dict, List, Optional

import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam
from tenacity import (
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type,
)

from app.types.nudge_contract import NudgeMessage, NudgeMessageInput
from config import settings

_LOGGER = logging.getLogger(__name__)

MAX_SUBJECT_CHARS = 300
MAX_BODY_CHARS = 1000

# ──────────────────────────────────────────────────────────────────────────
# Prompt & fallbacks
# ──────────────────────────────────────────────────────────────────────────

_DEFAULT_SYSTEM_PROMPT = (
    "You write short, friendly reminder messages for members of a fishing trip. "
    "You receive `key: value` lines describing why the reminder fires "
    "(trigger_type is one of deadline, countdown, overdue, event) and the trip "
    "and task involved. Address the participant by name when given. "
    "Keep the subject under 80 characters and the body under 400 characters. "
    "Never invent dates, prices or vendors that are not in the input.\n\n"
    "Return ONLY JSON of the form:\n"
    "{\n  \"subject\": \"...\",\n  \"body\": \"...\"\n}\n"
)

FALLBACK_MESSAGES: Dict[str, NudgeMessage] = {
    "deadline": NudgeMessage(
        subject="Task reminder for your fishing trip",
        body="You have an upcoming task deadline. Check your trip plan for details.",
    ),
    "countdown": NudgeMessage(
        subject="Your fishing trip is coming up!",
        body="Your trip is approaching. Make sure everything is ready!",
    ),
    "overdue": NudgeMessage(
        subject="Overdue task on your fishing trip",
        body="You have an overdue task. Please take action soon.",
    ),
    "event": NudgeMessage(
        subject="Update on your fishing trip",
        body="There's a new update on your trip. Check the details.",
    ),
}


def fallback_message(trigger_type: str) -> NudgeMessage:
    return FALLBACK_MESSAGES.get(trigger_type, FALLBACK_MESSAGES["event"])


_FENCE_RE = re.compile(r"```(?:json)?\s*")


def parse_message(raw: str) -> Optional[NudgeMessage]:
    """Extract subject/body from model output, tolerating code fences."""
    cleaned = _FENCE_RE.sub("", raw or "").strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    subject, body = parsed.get("subject"), parsed.get("body")
    if not subject or not body:
        return None
    return NudgeMessage(
        subject=str(subject)[:MAX_SUBJECT_CHARS],
        body=str(body)[:MAX_BODY_CHARS],
    )


# Retry only on transport / rate-limit / backend errors
RETRY_ERRORS = (
    openai.APIStatusError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.APITimeoutError,
)


class NudgeMessageGenerator:
    """Generates nudge copy; owns its OpenAI client and cached prompt."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        prompt_file: Optional[str] = None,
    ):
        self._client = client
        self._model = model
        self._timeout = timeout
        self._prompt_file = prompt_file
        self._system_prompt: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "NudgeMessageGenerator":
        client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY) if settings.OPENAI_API_KEY else None
        return cls(
            client=client,
            model=settings.OPENAI_MODEL,
            timeout=settings.OPENAI_TIMEOUT,
            prompt_file=settings.NUDGE_PROMPT_FILE,
        )

    async def aclose(self) -> None:
        """Close the HTTP pool; it is bound to the running event loop."""
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()

    @property
    def system_prompt(self) -> str:
        if self._system_prompt is None:
            prompt = None
            if self._prompt_file and os.path.exists(self._prompt_file):
                with open(self._prompt_file, encoding="utf-8") as fh:
                    prompt = fh.read().strip()
            self._system_prompt = prompt or _DEFAULT_SYSTEM_PROMPT
        return self._system_prompt

    def _build_messages(self, ctx: NudgeMessageInput) -> List[ChatCompletionMessageParam]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": ctx.as_prompt_lines()},
        ]

    @retry(
        wait=wait_random_exponential(multiplier=1, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRY_ERRORS),
        reraise=True,
    )
    async def _call_openai(self, messages: List[ChatCompletionMessageParam]) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            temperature=0.7,
            max_tokens=200,
            messages=messages,
            timeout=self._timeout,
        )
        return response.choices[0].message.content or ""

    async def generate(self, ctx: NudgeMessageInput) -> NudgeMessage:
        if self._client is None:
            # local dev shortcut
            return fallback_message(ctx.trigger_type)
        try:
            raw = await self._call_openai(self._build_messages(ctx))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("Nudge generation failed: %s", exc)
            return fallback_message(ctx.trigger_type)
        message = parse_message(raw)
        if message is None:
            _LOGGER.warning("Failed to parse nudge output, using fallback: %s", raw[:200])
            return fallback_message(ctx.trigger_type)
        return message
