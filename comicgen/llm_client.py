"""
Comicgen - LLM client.

Thin async wrapper around Claude. Every call is bounded by a single
deadline so no stage can wait forever on the model. Responses come back
as {"content": str, "usage": {...}} dicts, which is all the stages need.

Also holds the tolerant JSON extraction helpers shared by the story and
dialogue stages: model output is untyped text and must never crash the
pipeline.
"""

import asyncio
import json
import logging
import re
from typing import Optional

import anthropic

from comicgen.config import Settings

logger = logging.getLogger(__name__)

FENCED_ARRAY = re.compile(r"```(?:json)?\s*(\[[\s\S]*?\])\s*```")
BARE_ARRAY = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")


class LLMClient:
    """Claude chat client with a per-call deadline."""

    def __init__(self, settings: Optional[Settings] = None, client=None):
        self.settings = settings or Settings()
        self._client = client

    def _get_client(self):
        """Lazy-load the Anthropic client."""
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.anthropic_api_key or None,
            )
        return self._client

    async def invoke(
        self,
        messages: list[dict],
        system: str = "",
        max_tokens: Optional[int] = None,
    ) -> dict:
        """
        Send one chat request.

        Args:
            messages: [{"role": "user", "content": "..."}]
            system: Optional system prompt
            max_tokens: Defaults to settings.llm_max_tokens

        Returns:
            {"content": text, "usage": {"input_tokens": n, "output_tokens": n}}

        Raises:
            asyncio.TimeoutError when the deadline passes, or whatever the
            Anthropic SDK raises. Callers treat both as recoverable.
        """
        client = self._get_client()
        kwargs = {
            "model": self.settings.llm_model,
            "max_tokens": max_tokens or self.settings.llm_max_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system

        response = await asyncio.wait_for(
            client.messages.create(**kwargs),
            timeout=self.settings.llm_timeout,
        )

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = getattr(response, "usage", None)
        return {
            "content": text,
            "usage": {
                "input_tokens": getattr(usage, "input_tokens", 0),
                "output_tokens": getattr(usage, "output_tokens", 0),
            },
        }

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None


# ============================================================
# JSON extraction
# ============================================================

def extract_json(text: str) -> str:
    """Strip markdown fences from a model response."""
    if "```json" in text:
        text = text.split("```json", 1)[1]
        text = text.rsplit("```", 1)[0]
    elif "```" in text:
        text = text.split("```", 1)[1]
        text = text.rsplit("```", 1)[0]
    return text.strip()


def parse_json_object(text: str) -> Optional[dict]:
    """Parse a JSON object out of a response, or None."""
    candidate = extract_json(text)
    if not candidate.startswith("{"):
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            return None
        candidate = candidate[start:end + 1]
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_json_array(text: str, wrapper_key: str = "") -> Optional[list]:
    """
    Find a non-empty JSON array in a model response.

    Tries, in order: a fenced code block, the first [ {...} ] run in the
    text, then the whole response. The whole-response attempt also accepts
    an object wrapping the array under ``wrapper_key``.
    """
    attempts = []

    match = FENCED_ARRAY.search(text)
    if match:
        attempts.append(("fenced block", match.group(1)))

    match = BARE_ARRAY.search(text)
    if match:
        attempts.append(("bracket block", match.group(0)))

    attempts.append(("whole response", text.strip()))

    for strategy, candidate in attempts:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and wrapper_key:
            data = data.get(wrapper_key)
        if isinstance(data, list) and data:
            logger.debug(f"Parsed JSON array via {strategy} ({len(data)} items)")
            return data

    return None
