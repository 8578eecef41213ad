# voxnote/app/services/summary_service.py
"""
Summaries of transcribed voice notes.

The model is asked for a shape (a few sentences, or four titled sections)
and the answer is then forced into that shape, because the model does not
always comply. Any failure means "no summary", never a pipeline failure.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional


from voxnote.app.domain.errors import SummaryGenerationError
from voxnote.app.domain.models import SummaryLevel
from voxnote.services.errors import ServiceError
from voxnote.services.gemini_client import GeminiClient

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("fr", "en")
FALLBACK_LANGUAGE = "fr"
CONCISE_MAX_SENTENCES = 3

DETAILED_HEADERS = {
    "fr": ("Contexte", "Points clés", "Actions", "Conclusion"),
    "en": ("Context", "Key points", "Actions", "Conclusion"),
}
NO_ACTIONS = {
    "fr": "Aucune action identifiée.",
    "en": "No action identified.",
}

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?…])\s+")
_MARKUP = re.compile(r"^[\s#*_\-•>]+|[\s*_:]+$")


@dataclass(frozen=True)
class PromptPair:
    system: str
    user: str


PROMPTS: dict[SummaryLevel, dict[str, PromptPair]] = {
    SummaryLevel.CONCISE: {
        "fr": PromptPair(
            system=(
                "Tu es un assistant qui crée des résumés ultra-concis. Maximum 2-3 phrases courtes. "
                "Garde uniquement l'essentiel : QUI, QUOI, QUAND. Sois direct et factuel."
            ),
            user="Résume ce message en 2-3 phrases maximum :\n\n",
        ),
        "en": PromptPair(
            system=(
                "You are an assistant creating ultra-concise summaries. Maximum 2-3 short sentences. "
                "Keep only the essential: WHO, WHAT, WHEN. Be direct and factual."
            ),
            user="Summarize this message in maximum 2-3 sentences:\n\n",
        ),
    },
    SummaryLevel.DETAILED: {
        "fr": PromptPair(
            system=(
                "Tu es un assistant qui crée des résumés détaillés et structurés. "
                "Réponds avec exactement quatre sections, chacune précédée de son titre seul sur "
                "une ligne : Contexte, Points clés, Actions, Conclusion."
            ),
            user="Crée un résumé détaillé et structuré de ce message :\n\n",
        ),
        "en": PromptPair(
            system=(
                "You are an assistant creating detailed and structured summaries. "
                "Answer with exactly four sections, each preceded by its title alone on a line: "
                "Context, Key points, Actions, Conclusion."
            ),
            user="Create a detailed and structured summary of this message:\n\n",
        ),
    },
}


def resolve_language(language: Optional[str]) -> str:
    return language if language in SUPPORTED_LANGUAGES else FALLBACK_LANGUAGE


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text.strip()) if part.strip()]


def enforce_concise(text: str, max_sentences: int = CONCISE_MAX_SENTENCES) -> str:
    flattened = " ".join(line.strip() for line in text.splitlines() if line.strip())
    return " ".join(split_sentences(flattened)[:max_sentences])


def _header_of(line: str, headers: tuple[str, ...]) -> Optional[str]:
    candidate = _MARKUP.sub("", line).strip().lower()
    for header in headers:
        if candidate == header.lower():
            return header
    return None


def parse_sections(text: str, headers: tuple[str, ...]) -> dict[str, str]:
    sections: dict[str, list[str]] = {}
    current: Optional[str] = None
    for line in text.splitlines():
        header = _header_of(line, headers)
        if header is not None:
            current = header
            sections.setdefault(current, [])
        elif current is not None and line.strip():
            sections[current].append(line.strip())
    return {header: "\n".join(lines) for header, lines in sections.items() if lines}


def enforce_detailed(text: str, language: str) -> str:
    """
    Return the four required sections in order.
    Missing ones are rebuilt from the sentences of the raw answer.
    """
    lang = resolve_language(language)
    headers = DETAILED_HEADERS[lang]
    sections = parse_sections(text, headers)

    if len(sections) < len(headers):
        sentences = split_sentences(" ".join(line.strip() for line in text.splitlines() if line.strip()))
        if sentences:
            middle = sentences[1:-1] or sentences[:1]
            fallback = {
                headers[0]: sentences[0],
                headers[1]: "\n".join(f"- {sentence}" for sentence in middle),
                headers[2]: NO_ACTIONS[lang],
                headers[3]: sentences[-1],
            }
        else:
            fallback = {header: "-" for header in headers}
            fallback[headers[2]] = NO_ACTIONS[lang]
        for header in headers:
            sections.setdefault(header, fallback[header])

    return "\n\n".join(f"*{header}*\n{sections[header]}" for header in headers)


class SummaryService:
    def __init__(self, client: Optional[GeminiClient], timeout_seconds: float = 60):
        self._client = client
        self._timeout = timeout_seconds

    @property
    def available(self) -> bool:
        return self._client is not None

    async def summarize(
        self,
        text: str,
        level: SummaryLevel,
        language: Optional[str] = None,
    ) -> Optional[str]:
        if level == SummaryLevel.NONE or self._client is None or not text.strip():
            return None

        lang = resolve_language(language)
        try:
            raw = await self._generate(text, level, lang)
        except SummaryGenerationError as error:
            logger.warning("summary.failed level=%s error=%s", level.value, error)
            return None

        if level == SummaryLevel.CONCISE:
            summary = enforce_concise(raw)
        else:
            summary = enforce_detailed(raw, lang)

        logger.info("summary.generated level=%s language=%s chars=%d", level.value, lang, len(summary))
        return summary or None

    async def _generate(self, text: str, level: SummaryLevel, language: str) -> str:
        prompt = PROMPTS[level][language]
        # to_thread so a timed-out call is abandoned instead of awaited
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._client.generate_content, prompt.user + text, prompt.system),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as error:
            raise SummaryGenerationError(f"timed out after {self._timeout}s") from error
        except ServiceError as error:
            raise SummaryGenerationError(str(error)) from error

        if not raw or not raw.strip():
            raise SummaryGenerationError("empty answer")
        return raw
