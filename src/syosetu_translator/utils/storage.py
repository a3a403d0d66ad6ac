"""Durable per-novel storage of chapters and glossary."""

import json
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, ValidationError

from syosetu_translator.errors import PersistenceError
from syosetu_translator.translator.glossary import Glossary, GlossaryEntry
from syosetu_translator.utils.progress import Chapter, ChapterStatus, NovelSource, RunState

logger = structlog.get_logger()


class LoadedState(BaseModel):
    """Everything ``BookStore.load`` recovers for a novel."""

    run_state: RunState
    chapters: list[Chapter]


def _atomic_write(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers see the old or new file, never a mix."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class BookStore:
    """JSON files under one book directory.

    Layout::

        novel.json            NovelSource
        chapters/0001.json    one Chapter per file
        glossary.json         ordered glossary entries
    """

    def __init__(self, book_dir: Path):
        self.book_dir = Path(book_dir)
        self.chapters_dir = self.book_dir / "chapters"

    @property
    def novel_path(self) -> Path:
        return self.book_dir / "novel.json"

    @property
    def glossary_path(self) -> Path:
        return self.book_dir / "glossary.json"

    def chapter_path(self, index: int) -> Path:
        return self.chapters_dir / f"{index:04d}.json"

    def _ensure_dirs(self) -> None:
        self.chapters_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, path: Path, content: str) -> None:
        try:
            self._ensure_dirs()
            _atomic_write(path, content)
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    # ------------------------------------------------------------------
    # Novel
    # ------------------------------------------------------------------

    def save_novel(self, source: NovelSource) -> None:
        self._write(self.novel_path, source.model_dump_json(indent=2))

    def load_novel(self) -> Optional[NovelSource]:
        content = self._read(self.novel_path)
        if content is None:
            return None
        try:
            return NovelSource.model_validate_json(content)
        except ValidationError as e:
            raise PersistenceError(f"Corrupt {self.novel_path}: {e}") from e

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    def save(self, chapter: Chapter) -> None:
        """Durably record one chapter.

        Raises:
            ValueError: The chapter is in an in-memory only status
            PersistenceError: The file could not be written
        """
        if chapter.status.transitional:
            raise ValueError(
                f"Chapter {chapter.index} has transitional status {chapter.status.value}"
            )
        self._write(self.chapter_path(chapter.index), chapter.model_dump_json(indent=2))

    def load_chapters(self) -> list[Chapter]:
        if not self.chapters_dir.exists():
            return []
        chapters = []
        for path in sorted(self.chapters_dir.glob("*.json")):
            content = self._read(path)
            if content is None:
                continue
            try:
                chapters.append(Chapter.model_validate_json(content))
            except ValidationError as e:
                raise PersistenceError(f"Corrupt chapter file {path}: {e}") from e
        return sorted(chapters, key=lambda c: c.index)

    def load(self, novel: Optional[NovelSource] = None) -> LoadedState:
        """Reconstruct the run state and all known chapters.

        Args:
            novel: Expected novel; required when the book has no novel.json yet

        Raises:
            ValueError: The book directory belongs to a different novel
        """
        stored = self.load_novel()
        if stored and novel and stored != novel:
            raise ValueError(
                f"{self.book_dir} holds {stored.slug}, not {novel.slug}"
            )
        source = stored or novel
        if source is None:
            raise ValueError(f"No novel.json in {self.book_dir}")

        chapters = self.load_chapters()
        for chapter in chapters:
            # Files are never written in these states; treat one as its predecessor
            if chapter.status == ChapterStatus.FETCHING:
                chapter.status = ChapterStatus.PENDING
            elif chapter.status == ChapterStatus.TRANSLATING:
                chapter.status = ChapterStatus.FETCHED
        return LoadedState(
            run_state=RunState.from_chapters(source, chapters),
            chapters=chapters,
        )

    def reset_failed(self, indices: Optional[Iterable[int]] = None) -> list[int]:
        """Set failed chapters back to pending so the next run fetches them again.

        Args:
            indices: Chapters to reset; all failed chapters if None

        Returns:
            Indices that were reset
        """
        wanted = set(indices) if indices is not None else None
        reset = []
        for chapter in self.load_chapters():
            if chapter.status != ChapterStatus.FAILED:
                continue
            if wanted is not None and chapter.index not in wanted:
                continue
            self.save(reset_chapter(chapter))
            reset.append(chapter.index)
        logger.info("chapters_reset", chapters=reset)
        return reset

    def export_text(self, output: Path) -> int:
        """Write translated chapters, in index order, to one text file.

        Returns:
            Number of chapters written
        """
        chapters = [
            c for c in self.load_chapters() if c.status == ChapterStatus.TRANSLATED
        ]
        parts = []
        for chapter in chapters:
            heading = f"# {chapter.index}. {chapter.title}".rstrip()
            parts.append(f"{heading}\n\n{chapter.translated_text or ''}".rstrip())
        output = Path(output)
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            _atomic_write(output, "\n\n".join(parts) + "\n")
        except OSError as e:
            raise PersistenceError(f"Cannot write {output}: {e}") from e
        return len(chapters)

    # ------------------------------------------------------------------
    # Glossary
    # ------------------------------------------------------------------

    def save_glossary(self, glossary: Glossary) -> None:
        data = [entry.model_dump() for entry in glossary.entries]
        self._write(self.glossary_path, json.dumps(data, ensure_ascii=False, indent=2))

    def load_glossary(self) -> Glossary:
        content = self._read(self.glossary_path)
        if content is None:
            return Glossary()
        try:
            return Glossary(GlossaryEntry.model_validate(e) for e in json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PersistenceError(f"Corrupt {self.glossary_path}: {e}") from e


def reset_chapter(chapter: Chapter) -> Chapter:
    """Copy of a failed chapter ready to re-enter the pipeline at the fetch stage."""
    return chapter.model_copy(
        update={
            "status": ChapterStatus.PENDING,
            "attempts": 0,
            "error_kind": None,
            "error_message": None,
        }
    )
