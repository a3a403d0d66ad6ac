"""Tests for the command line interface."""

import logging
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from syosetu_translator.cli import cli
from syosetu_translator.translator.glossary import Glossary, GlossaryEntry
from syosetu_translator.utils.progress import Chapter, ChapterStatus
from syosetu_translator.utils.storage import BookStore

from conftest import FakeSite, FakeTranslator


@pytest.fixture(autouse=True)
def restore_logging(monkeypatch):
    """The CLI reconfigures root logging; put pytest's handlers back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    monkeypatch.setattr("syosetu_translator.config._config", None)
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def book(store, source):
    """A book with one chapter in each durable status and a small glossary."""
    store.save_novel(source)
    store.save(
        Chapter(
            index=1,
            url="https://ncode.syosetu.com/n1234ab/1/",
            title="第1話",
            raw_text="アリアが来た。",
            translated_text="艾莉亚来了。",
            status=ChapterStatus.TRANSLATED,
        )
    )
    store.save(
        Chapter(
            index=2,
            url="https://ncode.syosetu.com/n1234ab/2/",
            title="第2話",
            status=ChapterStatus.FAILED,
            attempts=3,
            error_kind="network",
            error_message="HTTP 503",
        )
    )
    store.save(Chapter(index=3, url="https://ncode.syosetu.com/n1234ab/3/", title="第3話"))
    store.save_glossary(
        Glossary([GlossaryEntry(term="アリア", translation="艾莉亚", first_seen_chapter=1)])
    )
    return store


@pytest.fixture
def runner():
    return CliRunner()


class TestStatusCommand:
    """Tests for the status command."""

    def test_shows_counts_and_errors(self, runner, book):
        """Counts per status and the failed chapter's error are shown."""
        result = runner.invoke(cli, ["status", "--book-dir", str(book.book_dir)])

        assert result.exit_code == 0, result.output
        assert "translated: 1" in result.output
        assert "failed: 1" in result.output
        assert "HTTP 503" in result.output

    def test_not_a_book(self, runner, tmp_path):
        """A directory without novel.json is rejected."""
        result = runner.invoke(cli, ["status", "--book-dir", str(tmp_path)])
        assert result.exit_code == 1


class TestRetryCommand:
    """Tests for the retry command."""

    def test_retry_chapter(self, runner, book):
        """A failed chapter is reset to pending."""
        result = runner.invoke(cli, ["retry", "--book-dir", str(book.book_dir), "-c", "2", "-c", "1"])

        assert result.exit_code == 0, result.output
        statuses = {c.index: c.status for c in book.load_chapters()}
        assert statuses[2] == ChapterStatus.PENDING
        assert statuses[1] == ChapterStatus.TRANSLATED
        assert "Not failed, left unchanged: 1" in result.output

    def test_requires_selection(self, runner, book):
        result = runner.invoke(cli, ["retry", "--book-dir", str(book.book_dir)])
        assert result.exit_code == 1


class TestExportCommand:
    """Tests for the export command."""

    def test_export_text(self, runner, book, tmp_path):
        """Translated chapters are written to the output file."""
        output = tmp_path / "book.txt"
        result = runner.invoke(
            cli, ["export", "--book-dir", str(book.book_dir), "--output", str(output)]
        )

        assert result.exit_code == 0, result.output
        assert "艾莉亚来了。" in output.read_text(encoding="utf-8")
        assert "Exported 1 chapters" in result.output


class TestGlossaryCommands:
    """Tests for glossary export/import/show."""

    def test_export_and_show(self, runner, book, tmp_path):
        output = tmp_path / "glossary.csv"
        result = runner.invoke(
            cli, ["glossary", "export", "--book-dir", str(book.book_dir), "-o", str(output)]
        )
        assert result.exit_code == 0, result.output
        assert "アリア,艾莉亚,1" in output.read_text(encoding="utf-8")

        result = runner.invoke(cli, ["glossary", "show", "--book-dir", str(book.book_dir)])
        assert "アリア → 艾莉亚" in result.output

    def test_import_keeps_known_terms(self, runner, book, tmp_path):
        """Without --override an imported row cannot change a known term."""
        csv_path = tmp_path / "in.csv"
        csv_path.write_text(
            "term,translation,first_seen_chapter\nアリア,阿莉娅,\nレオ,雷欧,\n", encoding="utf-8"
        )

        result = runner.invoke(
            cli, ["glossary", "import", "--book-dir", str(book.book_dir), "-i", str(csv_path)]
        )

        assert result.exit_code == 0, result.output
        glossary = book.load_glossary()
        assert glossary.lookup("アリア").translation == "艾莉亚"
        assert glossary.lookup("レオ").translation == "雷欧"

    def test_import_override(self, runner, book, tmp_path):
        """--override replaces known translations."""
        csv_path = tmp_path / "in.csv"
        csv_path.write_text("term,translation\nアリア,阿莉娅\n", encoding="utf-8")

        result = runner.invoke(
            cli,
            [
                "glossary",
                "import",
                "--book-dir",
                str(book.book_dir),
                "-i",
                str(csv_path),
                "--override",
            ],
        )

        assert result.exit_code == 0, result.output
        entry = book.load_glossary().lookup("アリア")
        assert entry.translation == "阿莉娅"
        assert entry.first_seen_chapter == 1


class TestRunCommand:
    """Tests for the run command."""

    def test_requires_url_or_book(self, runner):
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 1

    def test_unsupported_url(self, runner, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "sk-test")
        result = runner.invoke(cli, ["run", "--url", "https://kakuyomu.jp/works/1"])
        assert result.exit_code == 1

    def test_missing_api_key(self, runner, monkeypatch, tmp_path):
        monkeypatch.setenv("LLM_API_KEY", "")
        monkeypatch.setenv("BOOKS_DIR", str(tmp_path))
        result = runner.invoke(cli, ["run", "--url", "https://ncode.syosetu.com/n1234ab/"])
        assert result.exit_code == 1

    def test_run_translates_book(self, runner, monkeypatch, tmp_path):
        """A full run with fake site and translator translates every chapter."""
        monkeypatch.setenv("LLM_API_KEY", "sk-test")
        monkeypatch.setenv("BOOKS_DIR", str(tmp_path))
        monkeypatch.setenv("PIPELINE_CRAWL_DELAY_MS", "0")
        pages = {1: "一話", 2: "二話"}

        with patch(
            "syosetu_translator.crawler.sites.create_site_adapter",
            side_effect=lambda source, crawler: FakeSite(pages),
        ), patch(
            "syosetu_translator.translator.engine.TranslationEngine",
            side_effect=lambda **kwargs: FakeTranslator(),
        ):
            result = runner.invoke(
                cli, ["--quiet", "run", "--url", "https://ncode.syosetu.com/n1234ab/", "--workers", "1"]
            )

        assert result.exit_code == 0, result.output
        assert "completed: 2 translated" in result.output
        store = BookStore(tmp_path / "ncode-n1234ab")
        assert {c.status for c in store.load_chapters()} == {ChapterStatus.TRANSLATED}

    def test_interrupted_run_exits_130(self, runner, monkeypatch, tmp_path):
        """Ctrl+C reaching the event loop ends the command as cancelled."""
        monkeypatch.setenv("LLM_API_KEY", "sk-test")
        monkeypatch.setenv("BOOKS_DIR", str(tmp_path))

        with patch(
            "syosetu_translator.crawler.sites.create_site_adapter",
            side_effect=lambda source, crawler: FakeSite({1: "一話"}),
        ), patch(
            "syosetu_translator.translator.engine.TranslationEngine",
            side_effect=lambda **kwargs: FakeTranslator(),
        ), patch(
            "syosetu_translator.pipeline.streaming.StreamingPipeline.run",
            new=AsyncMock(side_effect=KeyboardInterrupt),
        ):
            result = runner.invoke(
                cli, ["--quiet", "run", "--url", "https://ncode.syosetu.com/n1234ab/"]
            )

        assert result.exit_code == 130
        assert "Cancelled" in result.output
