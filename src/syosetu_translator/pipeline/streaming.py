"""Concurrent fetch + translate pipeline with resume support."""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Optional

import structlog
from pydantic import BaseModel

from syosetu_translator.clock import Clock, SystemClock
from syosetu_translator.config import PipelineConfig, get_config
from syosetu_translator.crawler.sites import SiteAdapter
from syosetu_translator.errors import (
    FetchError,
    FetchErrorKind,
    PersistenceError,
    PipelineError,
    TranslateError,
    TranslateErrorKind,
)
from syosetu_translator.pipeline.backoff import BackoffState, RateLimitGate, retry_delay
from syosetu_translator.pipeline.events import EventBus
from syosetu_translator.translator.engine import TranslationResult, Translator
from syosetu_translator.translator.glossary import GlossaryStore
from syosetu_translator.utils.progress import (
    Chapter,
    ChapterRef,
    ChapterStatus,
    NovelSource,
    RunState,
    parse_chapter_range,
)
from syosetu_translator.utils.storage import BookStore, reset_chapter

logger = structlog.get_logger()

_STOPPED = object()


class RunStatus(str, Enum):
    """Global run state."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"

    @property
    def active(self) -> bool:
        return self in (RunStatus.RUNNING, RunStatus.PAUSED)


class ChapterView(BaseModel):
    """Read-only per-chapter progress."""

    index: int
    title: str
    status: ChapterStatus
    attempts: int
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class PipelineSnapshot(BaseModel):
    """Point-in-time progress for display layers."""

    status: RunStatus
    chapters: list[ChapterView]
    counts: dict[str, int]
    glossary_size: int
    backoff: BackoffState
    fatal_error: Optional[str] = None


class PipelineResult(BaseModel):
    """Result of a pipeline run."""

    status: RunStatus
    total_chapters: int = 0
    fetched: int = 0
    translated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_chapters: list[int] = []
    errors: list[str] = []
    glossary_size: int = 0
    fatal_error: Optional[str] = None

    @property
    def all_done(self) -> bool:
        """Every chapter in scope is translated."""
        return self.status == RunStatus.COMPLETED and self.failed == 0


@dataclass
class PipelineStats:
    """Counters for the current run."""

    fetched: int = 0
    translated: int = 0
    skipped: int = 0
    fetch_retries: int = 0
    translate_retries: int = 0
    errors: list[str] = field(default_factory=list)


class StreamingPipeline:
    """Fetch workers feed translate workers through a bounded priority queue.

    - Fetch workers take pending chapters in index order, save the raw text,
      then hand the index to the translate queue (blocking when it is full).
    - Translate workers take the lowest available index, translate against a
      glossary snapshot, commit proposed terms, and save the result.

    A durable transition is saved before it becomes visible through
    ``chapters``/``snapshot`` or is announced on the event bus. Fetching and
    translating exist only in memory.
    """

    def __init__(
        self,
        source: NovelSource,
        site: SiteAdapter,
        translator: Translator,
        store: BookStore,
        config: Optional[PipelineConfig] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
        glossary: Optional[GlossaryStore] = None,
    ):
        """Initialize the pipeline.

        Args:
            source: Novel being translated
            site: Adapter for the novel's site
            translator: Chapter translator
            store: Durable storage of the book directory
            config: Pipeline configuration, uses global config if None
            clock: Time source for retry and backoff delays
            events: Event bus for progress notifications
            glossary: Glossary store; loaded from ``store`` at run start if None
        """
        self.source = source
        self.site = site
        self.translator = translator
        self.store = store
        self.config = config or get_config().pipeline
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self._injected_glossary = glossary
        self.glossary = glossary or GlossaryStore()
        self.gate = RateLimitGate(
            self.clock, self.config.rate_limit_base_delay, self.config.rate_limit_max_delay
        )

        self.chapters: dict[int, Chapter] = {}
        self.status = RunStatus.IDLE
        self.fatal_error: Optional[str] = None
        self.stats = PipelineStats()

        self._fetch_queue: asyncio.Queue[int] = asyncio.Queue()
        self._translate_queue: asyncio.PriorityQueue[int] = asyncio.PriorityQueue(
            maxsize=max(1, self.config.queue_size)
        )
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._outstanding: set[int] = set()
        self._scope: set[int] = set()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def run(self, chapters_spec: Optional[str] = None) -> PipelineResult:
        """Load state, discover chapters, and process them until done or stopped.

        Args:
            chapters_spec: Optional chapter range (e.g., "1-100")

        Returns:
            PipelineResult with the final run status and counts

        Raises:
            ValueError: The book directory belongs to another novel
            asyncio.CancelledError: The task running the pipeline was cancelled;
                workers are stopped and progress is saved first
        """
        if self.status.active:
            raise RuntimeError("Pipeline is already running")
        self._prepare()

        try:
            self._load()
            await self._discover()
        except ValueError:
            self.status = RunStatus.IDLE
            raise
        except (PersistenceError, FetchError) as e:
            self._abort(e)
            return self._result()

        if self._stopping:
            return self._result()

        max_index = max(self.chapters, default=0)
        self._scope = {
            i for i in parse_chapter_range(chapters_spec or "", max_index) if i in self.chapters
        }
        to_translate = self._seed()

        logger.info(
            "pipeline_start",
            novel=self.source.slug,
            total=len(self._scope),
            to_fetch=self._fetch_queue.qsize(),
            to_translate=len(to_translate),
            already_done=self.stats.skipped,
            glossary_entries=len(self.glossary),
        )

        if not self._outstanding:
            self._finish(RunStatus.COMPLETED)

        tasks = [
            asyncio.create_task(self._guard(self._seed_translate(to_translate)), name="seed")
        ]
        for i in range(self.config.fetch_workers):
            tasks.append(
                asyncio.create_task(self._guard(self._fetch_worker(i + 1)), name=f"fetch-{i + 1}")
            )
        for i in range(self.config.translator_workers):
            tasks.append(
                asyncio.create_task(
                    self._guard(self._translate_worker(i + 1)), name=f"translate-{i + 1}"
                )
            )

        interrupted: Optional[asyncio.CancelledError] = None
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError as e:
            logger.warning("pipeline_shutdown_requested")
            interrupted = e
            self.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for chapter in self.chapters.values():
            if chapter.status == ChapterStatus.FETCHING:
                self._revert(chapter, ChapterStatus.PENDING)
            elif chapter.status == ChapterStatus.TRANSLATING:
                self._revert(chapter, ChapterStatus.FETCHED)

        result = self._result()
        logger.info(
            "pipeline_complete" if result.status == RunStatus.COMPLETED else "pipeline_stopped",
            status=result.status.value,
            fetched=result.fetched,
            translated=result.translated,
            failed=result.failed,
            glossary_entries=result.glossary_size,
        )
        self.events.emit("run_finished", status=result.status.value, failed=result.failed)
        if interrupted is not None:
            raise interrupted
        return result

    def pause(self) -> None:
        """Stop taking new work; requests in flight complete."""
        if self.status == RunStatus.RUNNING:
            self.status = RunStatus.PAUSED
            self._resume_event.clear()
            logger.info("pipeline_paused")

    def resume(self) -> None:
        if self.status == RunStatus.PAUSED:
            self.status = RunStatus.RUNNING
            self._resume_event.set()
            logger.info("pipeline_resumed")

    def cancel(self) -> None:
        """Stop both pools between chapters. Durable state is left as last saved."""
        if self.status.active:
            logger.info("pipeline_cancel_requested")
            self._finish(RunStatus.CANCELLED)

    def retry(self, index: int) -> bool:
        """Reset a failed chapter to pending and send it back to the fetch stage.

        When no run is active the reset is only persisted; the next run picks
        the chapter up.

        Returns:
            True if the chapter was failed and has been reset

        Raises:
            KeyError: Unknown chapter index
            PersistenceError: The reset could not be saved while idle
        """
        chapter = self.chapters[index]
        if chapter.status != ChapterStatus.FAILED:
            return False

        reset = reset_chapter(chapter)
        if self.status.active:
            if not self._persist(reset):
                return False
            self._scope.add(index)
            self._outstanding.add(index)
            self._fetch_queue.put_nowait(index)
        else:
            self.store.save(reset)
            self.chapters[index] = reset

        logger.info("chapter_reset", chapter=index)
        self.events.emit("chapter_reset", chapter=index)
        return True

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def snapshot(self) -> PipelineSnapshot:
        chapters = [self.chapters[i] for i in sorted(self.chapters)]
        counts = {status.value: 0 for status in ChapterStatus}
        counts.update(Counter(c.status.value for c in chapters))
        return PipelineSnapshot(
            status=self.status,
            chapters=[
                ChapterView(
                    index=c.index,
                    title=c.title,
                    status=c.status,
                    attempts=c.attempts,
                    error_kind=c.error_kind,
                    error_message=c.error_message,
                )
                for c in chapters
            ],
            counts=counts,
            glossary_size=len(self.glossary),
            backoff=self.gate.state(),
            fatal_error=self.fatal_error,
        )

    def run_state(self) -> RunState:
        return RunState.from_chapters(
            self.source, [self.chapters[i] for i in sorted(self.chapters)]
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _prepare(self) -> None:
        self.status = RunStatus.RUNNING
        self.fatal_error = None
        self.stats = PipelineStats()
        self._fetch_queue = asyncio.Queue()
        self._translate_queue = asyncio.PriorityQueue(maxsize=max(1, self.config.queue_size))
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._outstanding = set()
        self._scope = set()

    def _load(self) -> None:
        state = self.store.load(self.source)
        if self.store.load_novel() is None:
            self.store.save_novel(self.source)
        self.chapters = {c.index: c for c in state.chapters}
        if self._injected_glossary is None:
            self.glossary = GlossaryStore(self.store.load_glossary())
        logger.debug(
            "run_state_loaded",
            chapters=len(self.chapters),
            unfinished=len(state.run_state.unfinished),
            next_fetch=state.run_state.next_fetch_index,
        )

    async def _discover(self) -> None:
        """Extend the chapter list from the site's table of contents."""
        attempts = 0
        while True:
            try:
                refs = await asyncio.wait_for(
                    self.site.list_chapters(), timeout=self.config.fetch_timeout_seconds
                )
                break
            except asyncio.TimeoutError:
                error = FetchError(
                    FetchErrorKind.NETWORK, "Table of contents timed out", url=self.source.url
                )
            except FetchError as e:
                error = e

            attempts += 1
            if not error.retryable or attempts >= self.config.max_attempts:
                if self.chapters:
                    logger.warning(
                        "toc_unavailable_using_saved", error=str(error), chapters=len(self.chapters)
                    )
                    return
                raise error
            logger.warning("toc_retry", attempt=attempts, error=str(error))
            if not await self._sleep(
                retry_delay(attempts, self.config.retry_base_delay, self.config.retry_max_delay)
            ):
                return

        added = 0
        for ref in refs:
            if ref.index in self.chapters:
                continue
            chapter = Chapter.from_ref(ref)
            self.store.save(chapter)
            self.chapters[ref.index] = chapter
            added += 1
        logger.info("toc_discovered", listed=len(refs), new=added)

    def _seed(self) -> list[int]:
        """Queue the chapters in scope; return fetched ones awaiting translation."""
        to_translate = []
        for index in sorted(self._scope):
            chapter = self.chapters[index]
            if chapter.status == ChapterStatus.TRANSLATED:
                self.stats.skipped += 1
            elif chapter.status == ChapterStatus.FETCHED and chapter.raw_text:
                self._outstanding.add(index)
                to_translate.append(index)
            elif chapter.status in (ChapterStatus.PENDING, ChapterStatus.FETCHED):
                chapter.status = ChapterStatus.PENDING
                self._outstanding.add(index)
                self._fetch_queue.put_nowait(index)
        return to_translate

    async def _seed_translate(self, indices: list[int]) -> None:
        for index in indices:
            if not await self._put_translate(index):
                return

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _guard(self, worker: Awaitable[None]) -> None:
        """Abort the run instead of leaving the other workers waiting forever."""
        try:
            await worker
        except Exception as e:
            logger.exception("pipeline_worker_crashed", error=str(e))
            self._abort(e)

    async def _fetch_worker(self, worker_id: int) -> None:
        delay = self.config.crawl_delay_ms / 1000
        while await self._wait_running():
            index = await self._wait_or_stop(self._fetch_queue.get())
            if index is _STOPPED or self._stopping:
                return
            chapter = self.chapters[index]
            if chapter.status != ChapterStatus.PENDING:
                continue

            if await self._fetch_chapter(chapter, worker_id):
                if not await self._put_translate(index):
                    return
            if delay and not await self._sleep(delay):
                return

    async def _fetch_chapter(self, chapter: Chapter, worker_id: int) -> bool:
        """Fetch with retries. Returns True once the raw text is saved."""
        ref = ChapterRef(index=chapter.index, url=chapter.url, title=chapter.title)
        chapter.status = ChapterStatus.FETCHING

        while True:
            try:
                text = await asyncio.wait_for(
                    self.site.fetch_chapter(ref), timeout=self.config.fetch_timeout_seconds
                )
            except asyncio.TimeoutError:
                error = FetchError(FetchErrorKind.NETWORK, "Fetch timed out", url=chapter.url)
            except FetchError as e:
                error = e
            except Exception as e:
                logger.exception("chapter_fetch_unexpected_error", chapter=chapter.index)
                error = FetchError(
                    FetchErrorKind.PARSE_FAILURE, f"{type(e).__name__}: {e}", url=chapter.url
                )
            else:
                fetched = chapter.model_copy(
                    update={
                        "status": ChapterStatus.FETCHED,
                        "raw_text": text,
                        "attempts": 0,
                        "error_kind": None,
                        "error_message": None,
                        "fetched_at": datetime.now(),
                    }
                )
                if not self._persist(fetched):
                    self._revert(chapter, ChapterStatus.PENDING)
                    return False
                self.stats.fetched += 1
                logger.info("chapter_fetched", worker=worker_id, chapter=chapter.index)
                self.events.emit("chapter_fetched", chapter=chapter.index)
                return True

            chapter.attempts += 1
            if not error.retryable or chapter.attempts >= self.config.max_attempts:
                self._fail(chapter, error, stage="fetch")
                return False

            self.stats.fetch_retries += 1
            self._report_retry(chapter, error, stage="fetch")
            delay = retry_delay(
                chapter.attempts, self.config.retry_base_delay, self.config.retry_max_delay
            )
            if not await self._sleep(delay) or not await self._wait_running():
                self._revert(chapter, ChapterStatus.PENDING)
                return False

    async def _translate_worker(self, worker_id: int) -> None:
        while await self._wait_running():
            index = await self._wait_or_stop(self._translate_queue.get())
            if index is _STOPPED or self._stopping:
                return
            chapter = self.chapters[index]
            if chapter.status != ChapterStatus.FETCHED:
                continue
            await self._translate_chapter(chapter, worker_id)

    async def _translate_chapter(self, chapter: Chapter, worker_id: int) -> None:
        chapter.status = ChapterStatus.TRANSLATING

        while True:
            generation = await self._wait_or_stop(self.gate.wait())
            if generation is _STOPPED or not await self._wait_running():
                self._revert(chapter, ChapterStatus.FETCHED)
                return
            if self.gate.active:
                # Another worker tripped the gate while we were paused
                continue

            logger.debug("chapter_translating", worker=worker_id, chapter=chapter.index)
            snapshot = self.glossary.snapshot()
            try:
                result = await asyncio.wait_for(
                    self.translator.translate(chapter.raw_text or "", snapshot),
                    timeout=self.config.translate_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = TranslateError(TranslateErrorKind.TRANSIENT, "Translation timed out")
            except TranslateError as e:
                error = e
            except Exception as e:
                logger.exception("chapter_translate_unexpected_error", chapter=chapter.index)
                error = TranslateError(
                    TranslateErrorKind.INVALID_RESPONSE, f"{type(e).__name__}: {e}"
                )
            else:
                self.gate.reset()
                await self._complete_translation(chapter, result, worker_id)
                return

            chapter.attempts += 1
            if error.fatal:
                self._revert(chapter, ChapterStatus.FETCHED)
                self._report_failure(chapter, error, stage="translate")
                self._abort(error)
                return

            if error.kind == TranslateErrorKind.RATE_LIMITED:
                delay = self.gate.trip(error.retry_after, generation)
                self.events.emit(
                    "rate_limited", chapter=chapter.index, delay=delay, attempts=chapter.attempts
                )

            if chapter.attempts >= self.config.max_attempts:
                self._fail(chapter, error, stage="translate")
                return

            self.stats.translate_retries += 1
            self._report_retry(chapter, error, stage="translate")
            if error.kind != TranslateErrorKind.RATE_LIMITED:
                delay = retry_delay(
                    chapter.attempts, self.config.retry_base_delay, self.config.retry_max_delay
                )
                if not await self._sleep(delay):
                    self._revert(chapter, ChapterStatus.FETCHED)
                    return

    async def _complete_translation(
        self, chapter: Chapter, result: TranslationResult, worker_id: int
    ) -> None:
        """Commit glossary terms, then save the chapter, then report it."""
        accepted = await self.glossary.commit(result.proposed_terms, chapter.index)
        if accepted:
            try:
                self.store.save_glossary(self.glossary.glossary)
            except PersistenceError as e:
                self._revert(chapter, ChapterStatus.FETCHED)
                self._abort(e)
                return
            logger.info(
                "glossary_terms_added",
                chapter=chapter.index,
                terms=[e.term for e in accepted],
                total=len(self.glossary),
            )
            self.events.emit(
                "glossary_updated",
                chapter=chapter.index,
                terms={e.term: e.translation for e in accepted},
                size=len(self.glossary),
            )

        translated = chapter.model_copy(
            update={
                "status": ChapterStatus.TRANSLATED,
                "translated_text": result.translated_text,
                "attempts": 0,
                "error_kind": None,
                "error_message": None,
                "translated_at": datetime.now(),
            }
        )
        if not self._persist(translated):
            self._revert(chapter, ChapterStatus.FETCHED)
            return

        self.stats.translated += 1
        self._outstanding.discard(chapter.index)
        logger.info("chapter_translated", worker=worker_id, chapter=chapter.index)
        self.events.emit("chapter_translated", chapter=chapter.index)
        self._check_done()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _persist(self, chapter: Chapter) -> bool:
        """Save, then publish. A storage failure aborts the run."""
        try:
            self.store.save(chapter)
        except PersistenceError as e:
            self._abort(e)
            return False
        self.chapters[chapter.index] = chapter
        return True

    def _revert(self, chapter: Chapter, status: ChapterStatus) -> None:
        """Drop in-memory progress so the chapter matches its saved record."""
        chapter.status = status
        chapter.attempts = 0

    def _fail(self, chapter: Chapter, error: PipelineError, stage: str) -> None:
        failed = chapter.model_copy(
            update={
                "status": ChapterStatus.FAILED,
                "error_kind": error.kind.value,
                "error_message": str(error),
            }
        )
        if not self._persist(failed):
            return
        self._outstanding.discard(chapter.index)
        self._report_failure(failed, error, stage)
        self._check_done()

    def _report_failure(self, chapter: Chapter, error: PipelineError, stage: str) -> None:
        message = f"Chapter {chapter.index} ({stage}, {error.kind.value}, attempt {chapter.attempts}): {error}"
        self.stats.errors.append(message)
        logger.error(
            "chapter_failed",
            chapter=chapter.index,
            stage=stage,
            kind=error.kind.value,
            attempts=chapter.attempts,
            error=str(error),
        )
        self.events.emit(
            "chapter_failed",
            chapter=chapter.index,
            stage=stage,
            kind=error.kind.value,
            attempts=chapter.attempts,
            error=str(error),
        )

    def _report_retry(self, chapter: Chapter, error: PipelineError, stage: str) -> None:
        logger.warning(
            "chapter_retry",
            chapter=chapter.index,
            stage=stage,
            kind=error.kind.value,
            attempts=chapter.attempts,
            error=str(error),
        )
        self.events.emit(
            "chapter_retry",
            chapter=chapter.index,
            stage=stage,
            kind=error.kind.value,
            attempts=chapter.attempts,
        )

    def _check_done(self) -> None:
        """Complete the run once every chapter in scope is translated or failed."""
        if not self._outstanding and self.status.active:
            self._finish(RunStatus.COMPLETED)

    def _abort(self, error: Exception) -> None:
        kind = getattr(error, "kind", None)
        self.fatal_error = f"{kind.value}: {error}" if kind is not None else str(error)
        logger.error("pipeline_aborted", error=self.fatal_error)
        self._finish(RunStatus.ABORTED)

    def _finish(self, status: RunStatus) -> None:
        if self._stop_event.is_set():
            return
        self.status = status
        self._stop_event.set()
        self._resume_event.set()

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    @property
    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    async def _wait_or_stop(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the run stops first (then return _STOPPED)."""
        if self._stopping:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return _STOPPED

        task = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            stop.cancel()
            raise
        if task in done:
            stop.cancel()
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return _STOPPED

    async def _wait_running(self) -> bool:
        """Block while paused. False once the run is stopping."""
        if not self._resume_event.is_set():
            if await self._wait_or_stop(self._resume_event.wait()) is _STOPPED:
                return False
        return not self._stopping

    async def _sleep(self, seconds: float) -> bool:
        if seconds <= 0:
            return not self._stopping
        return await self._wait_or_stop(self.clock.sleep(seconds)) is not _STOPPED

    async def _put_translate(self, index: int) -> bool:
        """Queue a fetched chapter, waiting while the queue is at its high-water mark."""
        return await self._wait_or_stop(self._translate_queue.put(index)) is not _STOPPED

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _result(self) -> PipelineResult:
        scope = [self.chapters[i] for i in sorted(self._scope) if i in self.chapters]
        failed = [c.index for c in scope if c.status == ChapterStatus.FAILED]
        return PipelineResult(
            status=self.status,
            total_chapters=len(scope),
            fetched=self.stats.fetched,
            translated=self.stats.translated,
            skipped=self.stats.skipped,
            failed=len(failed),
            failed_chapters=failed,
            errors=list(self.stats.errors),
            glossary_size=len(self.glossary),
            fatal_error=self.fatal_error,
        )
