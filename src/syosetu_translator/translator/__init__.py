"""Translation module: API client, chapter engine and glossary."""

from syosetu_translator.translator.engine import TranslationEngine, TranslationResult, Translator
from syosetu_translator.translator.glossary import (
    Glossary,
    GlossaryEntry,
    GlossarySnapshot,
    GlossaryStore,
    ProposedTerm,
)
from syosetu_translator.translator.llm import LLMClient

__all__ = [
    "LLMClient",
    "Glossary",
    "GlossaryEntry",
    "GlossarySnapshot",
    "GlossaryStore",
    "ProposedTerm",
    "TranslationEngine",
    "TranslationResult",
    "Translator",
]
