"""Pytest configuration and fixtures."""

import asyncio
import os
from collections import Counter
from typing import Optional

import pytest
from dotenv import load_dotenv

from syosetu_translator.config import PipelineConfig
from syosetu_translator.errors import FetchError, FetchErrorKind
from syosetu_translator.pipeline.events import EventBus
from syosetu_translator.pipeline.streaming import StreamingPipeline
from syosetu_translator.translator.engine import TranslationResult
from syosetu_translator.translator.glossary import GlossarySnapshot, ProposedTerm
from syosetu_translator.utils.progress import ChapterRef, resolve_source
from syosetu_translator.utils.storage import BookStore

# Load .env at import time for pytest
load_dotenv()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")


@pytest.fixture(scope="session")
def llm_api_available():
    """Check if a translation API key is configured."""
    api_key = os.getenv("LLM_API_KEY", "")
    return bool(api_key) and not api_key.startswith("sk-your")


class FakeClock:
    """Clock whose sleeps advance virtual time instantly."""

    def __init__(self):
        self.time = 0.0
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.time += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeSite:
    """In-memory site adapter.

    ``errors`` maps a chapter index to exceptions raised by successive
    fetches of that chapter before its text is returned.
    """

    def __init__(
        self,
        pages: dict[int, str],
        errors: Optional[dict[int, list[Exception]]] = None,
        toc_errors: Optional[list[Exception]] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.pages = pages
        self.errors = {i: list(errs) for i, errs in (errors or {}).items()}
        self.toc_errors = list(toc_errors or [])
        self.gate = gate
        self.calls: Counter = Counter()
        self.toc_calls = 0

    async def list_chapters(self) -> list[ChapterRef]:
        self.toc_calls += 1
        if self.toc_errors:
            raise self.toc_errors.pop(0)
        return [
            ChapterRef(index=i, url=f"https://ncode.syosetu.com/n1234ab/{i}/", title=f"第{i}話")
            for i in sorted(self.pages)
        ]

    async def fetch_chapter(self, ref: ChapterRef) -> str:
        self.calls[ref.index] += 1
        if self.gate is not None:
            await self.gate.wait()
        errors = self.errors.get(ref.index)
        if errors:
            raise errors.pop(0)
        await asyncio.sleep(0)
        if ref.index not in self.pages:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"HTTP 404 for {ref.url}", url=ref.url)
        return self.pages[ref.index]


class FakeTranslator:
    """Translator returning ``[zh] <text>``, keyed by raw text.

    ``proposals`` maps raw text to the term pairs proposed for it and
    ``errors`` maps raw text to exceptions raised by successive calls.
    ``fail_all`` is raised on every call.
    """

    def __init__(
        self,
        proposals: Optional[dict[str, dict[str, str]]] = None,
        errors: Optional[dict[str, list[Exception]]] = None,
        fail_all: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.proposals = proposals or {}
        self.errors = {t: list(errs) for t, errs in (errors or {}).items()}
        self.fail_all = fail_all
        self.gate = gate
        self.calls: list[tuple[str, GlossarySnapshot]] = []

    async def translate(self, raw_text: str, glossary: GlossarySnapshot) -> TranslationResult:
        self.calls.append((raw_text, glossary))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_all is not None:
            raise self.fail_all
        errors = self.errors.get(raw_text)
        if errors:
            raise errors.pop(0)
        await asyncio.sleep(0)
        return TranslationResult(
            translated_text=f"[zh] {raw_text}",
            proposed_terms=[
                ProposedTerm(term=term, translation=translation)
                for term, translation in self.proposals.get(raw_text, {}).items()
            ],
        )

    def texts(self) -> list[str]:
        return [text for text, _ in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source():
    return resolve_source("https://ncode.syosetu.com/n1234ab/")


@pytest.fixture
def store(tmp_path):
    return BookStore(tmp_path / "ncode-n1234ab")


@pytest.fixture
def pipeline_config():
    """Small pools and short delays; no politeness delay."""
    return PipelineConfig(
        fetch_workers=2,
        translator_workers=2,
        queue_size=4,
        max_attempts=3,
        retry_base_delay=1.0,
        retry_max_delay=8.0,
        rate_limit_base_delay=5.0,
        rate_limit_max_delay=40.0,
        fetch_timeout_seconds=5.0,
        translate_timeout_seconds=5.0,
        crawl_delay_ms=0,
    )


@pytest.fixture
def make_pipeline(source, store, pipeline_config, clock):
    """Factory building a pipeline around fake site/translator objects."""

    def _make(site, translator, **overrides) -> StreamingPipeline:
        config = pipeline_config.model_copy(update=overrides)
        return StreamingPipeline(
            source=source,
            site=site,
            translator=translator,
            store=store,
            config=config,
            clock=clock,
            events=EventBus(),
        )

    return _make
