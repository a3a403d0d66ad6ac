"""Tests for per-novel durable storage."""

import json

import pytest

from syosetu_translator.errors import PersistenceError
from syosetu_translator.translator.glossary import Glossary, GlossaryEntry
from syosetu_translator.utils.progress import Chapter, ChapterStatus, resolve_source
from syosetu_translator.utils.storage import BookStore, reset_chapter


def _chapter(index, status=ChapterStatus.PENDING, **kwargs):
    return Chapter(
        index=index,
        url=f"https://ncode.syosetu.com/n1234ab/{index}/",
        title=f"第{index}話",
        status=status,
        **kwargs,
    )


class TestBookStore:
    """Tests for BookStore."""

    def test_chapter_layout(self, store):
        """Chapters are stored one file each, zero padded."""
        store.save(_chapter(7))
        assert store.chapter_path(7).name == "0007.json"
        assert store.chapter_path(7).exists()

    def test_save_and_load(self, store, source):
        """Saved chapters and novel come back unchanged."""
        store.save_novel(source)
        chapter = _chapter(1, ChapterStatus.FETCHED, raw_text="本文")
        store.save(chapter)

        state = store.load()

        assert state.chapters == [chapter]
        assert state.run_state.novel == source
        assert state.run_state.unfinished == {1}
        assert state.run_state.next_fetch_index is None

    def test_save_overwrites(self, store):
        """A later save replaces the earlier record."""
        store.save(_chapter(1))
        store.save(_chapter(1, ChapterStatus.FETCHED, raw_text="本文"))

        assert store.load_chapters()[0].status == ChapterStatus.FETCHED
        assert list(store.chapters_dir.glob("*.tmp")) == []

    @pytest.mark.parametrize("status", [ChapterStatus.FETCHING, ChapterStatus.TRANSLATING])
    def test_transitional_status_refused(self, store, status):
        """In-memory statuses are never written."""
        with pytest.raises(ValueError):
            store.save(_chapter(1, status))
        assert not store.chapter_path(1).exists()

    def test_load_normalizes_transitional(self, store, source):
        """A transitional status found on disk is read as the preceding durable one."""
        store.save_novel(source)
        store.chapters_dir.mkdir(parents=True, exist_ok=True)
        for chapter in (_chapter(1), _chapter(2)):
            store.save(chapter)
        for index, status in ((1, "fetching"), (2, "translating")):
            path = store.chapter_path(index)
            data = json.loads(path.read_text(encoding="utf-8"))
            data["status"] = status
            path.write_text(json.dumps(data), encoding="utf-8")

        statuses = {c.index: c.status for c in store.load().chapters}

        assert statuses == {1: ChapterStatus.PENDING, 2: ChapterStatus.FETCHED}

    def test_load_other_novel(self, store, source):
        """Loading with a different novel is refused."""
        store.save_novel(source)
        with pytest.raises(ValueError):
            store.load(resolve_source("https://novel18.syosetu.com/n1234ab/"))

    def test_load_without_novel(self, store):
        """A directory without novel.json needs an explicit novel."""
        with pytest.raises(ValueError):
            store.load()

    def test_corrupt_chapter(self, store):
        """An unreadable chapter file is a persistence error."""
        store.chapters_dir.mkdir(parents=True)
        store.chapter_path(1).write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceError):
            store.load_chapters()

    def test_write_failure(self, tmp_path):
        """A directory that cannot be created is a persistence error."""
        blocker = tmp_path / "file"
        blocker.write_text("x")
        store = BookStore(blocker / "book")
        with pytest.raises(PersistenceError):
            store.save(_chapter(1))

    def test_reset_failed(self, store):
        """Failed chapters go back to pending with a fresh attempt budget."""
        store.save(_chapter(1, ChapterStatus.FAILED, attempts=3, error_kind="network"))
        store.save(_chapter(2, ChapterStatus.FAILED, attempts=1, error_kind="not_found"))
        store.save(_chapter(3, ChapterStatus.TRANSLATED, translated_text="x"))

        assert store.reset_failed([2, 3]) == [2]
        assert store.reset_failed() == [1]

        chapters = {c.index: c for c in store.load_chapters()}
        assert chapters[1].status == ChapterStatus.PENDING
        assert chapters[1].attempts == 0
        assert chapters[1].error_kind is None
        assert chapters[3].status == ChapterStatus.TRANSLATED

    def test_reset_chapter_keeps_text(self):
        """Reset keeps title and any fetched text."""
        failed = _chapter(1, ChapterStatus.FAILED, raw_text="本文", error_message="boom")
        reset = reset_chapter(failed)
        assert reset.raw_text == "本文"
        assert reset.error_message is None
        assert failed.status == ChapterStatus.FAILED

    def test_export_text(self, store, tmp_path):
        """Only translated chapters are exported, in index order."""
        store.save(_chapter(2, ChapterStatus.TRANSLATED, translated_text="第二章"))
        store.save(_chapter(1, ChapterStatus.TRANSLATED, translated_text="第一章"))
        store.save(_chapter(3, ChapterStatus.FETCHED, raw_text="本文"))
        output = tmp_path / "out" / "book.txt"

        count = store.export_text(output)

        text = output.read_text(encoding="utf-8")
        assert count == 2
        assert text.index("第一章") < text.index("第二章")
        assert "本文" not in text

    def test_glossary_round_trip(self, store):
        """Glossary entries keep their order."""
        glossary = Glossary([GlossaryEntry(term="B", translation="b"), GlossaryEntry(term="A", translation="a", first_seen_chapter=2)])

        store.save_glossary(glossary)

        assert store.load_glossary().entries == glossary.entries
        assert "\"B\"" in store.glossary_path.read_text(encoding="utf-8")

    def test_missing_glossary_is_empty(self, store):
        """No glossary file means an empty glossary."""
        assert len(store.load_glossary()) == 0

    def test_corrupt_glossary(self, store):
        """A broken glossary file is a persistence error."""
        store.book_dir.mkdir(parents=True)
        store.glossary_path.write_text("[{]", encoding="utf-8")
        with pytest.raises(PersistenceError):
            store.load_glossary()
