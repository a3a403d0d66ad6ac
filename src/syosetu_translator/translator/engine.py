"""Chapter translation: translated text plus candidate glossary terms."""

import json
import re
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel, Field, ValidationError

from syosetu_translator.config import LLMConfig, get_config
from syosetu_translator.translator.glossary import GlossarySnapshot, ProposedTerm
from syosetu_translator.translator.llm import LLMClient

logger = structlog.get_logger()


class TranslationResult(BaseModel):
    """Output of translating one chapter."""

    translated_text: str
    proposed_terms: list[ProposedTerm] = Field(default_factory=list)


class Translator(Protocol):
    """Anything that can translate a chapter against a glossary snapshot."""

    async def translate(self, raw_text: str, glossary: GlossarySnapshot) -> TranslationResult:
        ...


TRANSLATE_PROMPT = """Translate the following {source_language} web novel chapter into {target_language}, completely and accurately.
Requirements:
1. Keep the paragraph structure of the original, one output line per input line.
2. Do not add explanations, notes or any extra information.
3. Output only the translation, never the original text.
4. Preserve the tone of the original; dialogue must reflect each character's voice.
{glossary_section}
## Chapter
{text}"""

GLOSSARY_SECTION = """5. Render these known terms exactly as given (term: translation):
{pairs}
"""

TERM_EXTRACTION_PROMPT = """Compare the {source_language} original with its {target_language} translation below and find NEW proper nouns in the original (character names, place names, technique names, uncommon item names) together with the rendering the translation used.
Requirements:
1. Output only new pairs; skip every term listed under "Known terms".
2. Output JSON Lines, one object per line, for example: {{"term": "トウリ", "translation": "托莉"}}
3. No explanations, no markdown, no code fences. Output nothing if there are no new terms.

## Known terms
{known_terms}

## Original
{source_text}

## Translation
{translated_text}"""

_FENCE_RE = re.compile(r"^```[a-zA-Z]*$")


def parse_proposed_terms(response: str) -> list[ProposedTerm]:
    """Parse JSON Lines term pairs, skipping lines that are not valid pairs."""
    terms = []
    for line in response.splitlines():
        line = line.strip().rstrip(",")
        if not line or _FENCE_RE.match(line):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("term_line_unparseable", line=line[:100])
            continue
        if not isinstance(data, dict):
            continue
        try:
            terms.append(ProposedTerm.model_validate(data))
        except ValidationError:
            logger.debug("term_line_invalid", line=line[:100])
    return terms


class TranslationEngine:
    """Translate a chapter, then ask the model for new glossary candidates."""

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        config: Optional[LLMConfig] = None,
        glossary_hint_limit: int = 200,
    ):
        """Initialize the engine.

        Args:
            llm: Client for the translation API
            config: Language settings, uses global config if None
            glossary_hint_limit: Max glossary entries included in one prompt
        """
        self.config = config or (llm.config if llm else get_config().llm)
        self.llm = llm or LLMClient(self.config)
        self.glossary_hint_limit = glossary_hint_limit
        # Translations whose term extraction has not succeeded yet, by original text
        self._translated: dict[str, str] = {}

    def build_translate_prompt(self, raw_text: str, glossary: GlossarySnapshot) -> str:
        hints = glossary.relevant_to(raw_text, self.glossary_hint_limit)
        glossary_section = (
            GLOSSARY_SECTION.format(pairs=glossary.to_prompt_format(hints)) if hints else ""
        )
        return TRANSLATE_PROMPT.format(
            source_language=self.config.source_language,
            target_language=self.config.target_language,
            glossary_section=glossary_section,
            text=raw_text,
        )

    def build_extraction_prompt(
        self, raw_text: str, translated_text: str, glossary: GlossarySnapshot
    ) -> str:
        return TERM_EXTRACTION_PROMPT.format(
            source_language=self.config.source_language,
            target_language=self.config.target_language,
            known_terms=glossary.to_prompt_format(
                glossary.relevant_to(raw_text, self.glossary_hint_limit)
            )
            or "(none)",
            source_text=raw_text,
            translated_text=translated_text,
        )

    async def translate(self, raw_text: str, glossary: GlossarySnapshot) -> TranslationResult:
        """Translate one chapter.

        When only the term extraction call fails, the translation is kept and
        the next attempt for the same text repeats just the extraction.

        Args:
            raw_text: Canonical chapter text
            glossary: Read-only glossary view used as hints

        Returns:
            Translated text and new term candidates found in this chapter

        Raises:
            TranslateError: Either API call failed
        """
        translated = self._translated.get(raw_text)
        if translated is None:
            translated = await self.llm.complete(self.build_translate_prompt(raw_text, glossary))
            self._translated[raw_text] = translated
        else:
            logger.debug("translation_reused", chars=len(translated))

        response = await self.llm.complete(
            self.build_extraction_prompt(raw_text, translated, glossary), allow_empty=True
        )
        self._translated.pop(raw_text, None)
        proposed = []
        seen = set()
        for candidate in parse_proposed_terms(response):
            term = candidate.term.strip()
            if not term or term in seen or term in glossary or term not in raw_text:
                continue
            seen.add(term)
            proposed.append(candidate)

        logger.debug("chapter_terms_proposed", terms=len(proposed))
        return TranslationResult(translated_text=translated, proposed_terms=proposed)
