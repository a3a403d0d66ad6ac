"""Main CLI entry point for syosetu-translator."""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import click
import structlog
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from syosetu_translator import __version__
from syosetu_translator.config import AppConfig, get_config, set_config

logger = structlog.get_logger()
console = Console()


def setup_config(env_file: Optional[Path] = None) -> None:
    """Load configuration from environment."""
    set_config(AppConfig.load(env_file))


def _open_store(book_dir: str):
    from syosetu_translator.utils.storage import BookStore

    store = BookStore(Path(book_dir))
    if store.load_novel() is None:
        logger.error("not_a_book_dir", path=book_dir)
        raise SystemExit(1)
    return store


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output")
@click.option("--log-file", type=click.Path(), help="Write JSON logs to file")
@click.option("--env-file", type=click.Path(exists=True), help="Path to .env file")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, verbose: bool, quiet: bool, log_file: Optional[str], env_file: Optional[str]) -> None:
    """Japanese web novel translation tool.

    Fetch chapters from syosetu.com / syosetu.org and translate them with an
    OpenAI-compatible API, keeping names consistent through a glossary.
    """
    from syosetu_translator.log import configure_logging

    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet

    verbosity = 1 if verbose else (-1 if quiet else 0)
    configure_logging(verbosity=verbosity, log_file=Path(log_file) if log_file else None)

    setup_config(Path(env_file) if env_file else None)


# =============================================================================
# Run Command (Main Workflow)
# =============================================================================


@cli.command()
@click.option("--url", help="Novel URL (required for new books)")
@click.option("--book-dir", type=click.Path(), help="Existing book directory")
@click.option("--chapters", help="Chapter range (e.g., 1-100, 5-)")
@click.option("--fetch-workers", type=int, help="Number of fetch workers")
@click.option("--workers", type=int, help="Number of translation workers")
@click.option("--retry-failed", is_flag=True, help="Reset failed chapters before running")
@click.pass_context
def run(
    ctx,
    url: Optional[str],
    book_dir: Optional[str],
    chapters: Optional[str],
    fetch_workers: Optional[int],
    workers: Optional[int],
    retry_failed: bool,
) -> None:
    """Fetch and translate a novel (concurrently).

    Re-running the same command resumes where the last run stopped.

    Examples:

        syosetu-translator run --url "https://ncode.syosetu.com/n1234ab/"

        syosetu-translator run --book-dir books/ncode-n1234ab --chapters 1-50
    """
    from syosetu_translator.crawler.sites import create_crawler, create_site_adapter
    from syosetu_translator.pipeline.streaming import RunStatus, StreamingPipeline
    from syosetu_translator.translator.engine import TranslationEngine
    from syosetu_translator.utils.progress import resolve_source
    from syosetu_translator.utils.storage import BookStore

    config = get_config()

    if not url and not book_dir:
        logger.error("missing_argument", detail="Either --url or --book-dir is required")
        raise SystemExit(1)

    if url:
        try:
            source = resolve_source(url)
        except ValueError as e:
            logger.error("unsupported_url", url=url, error=str(e))
            raise SystemExit(1)
        store = BookStore(Path(book_dir) if book_dir else config.books_dir / source.slug)
    else:
        store = _open_store(book_dir)
        source = store.load_novel()

    if not config.llm.api_key:
        logger.error("missing_api_key", detail="Set LLM_API_KEY in the environment or .env")
        raise SystemExit(1)

    pipeline_config = config.pipeline.model_copy(
        update={
            k: v
            for k, v in {"fetch_workers": fetch_workers, "translator_workers": workers}.items()
            if v is not None
        }
    )

    if retry_failed and store.load_novel() is not None:
        reset = store.reset_failed()
        if reset:
            click.echo(f"Reset {len(reset)} failed chapters")

    async def _run():
        engine = TranslationEngine(
            config=config.llm, glossary_hint_limit=pipeline_config.glossary_hint_limit
        )
        async with create_crawler(source, config.crawler) as crawler:
            pipeline_obj = StreamingPipeline(
                source=source,
                site=create_site_adapter(source, crawler),
                translator=engine,
                store=store,
                config=pipeline_config,
            )

            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, pipeline_obj.cancel)
            except NotImplementedError:
                # Windows: Ctrl+C cancels the run task instead
                pass

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.fields[note]}"),
                console=console,
                disable=ctx.obj.get("quiet", False),
            ) as progress:
                fetched = progress.add_task("Fetched", total=None, note="")
                translated = progress.add_task("Translated", total=None, note="")

                def _refresh(event) -> None:
                    snap = pipeline_obj.snapshot()
                    total = len(snap.chapters)
                    done = snap.counts["translated"]
                    progress.update(
                        fetched,
                        total=total,
                        completed=done + snap.counts["fetched"] + snap.counts["translating"],
                        note=f"failed: {snap.counts['failed']}",
                    )
                    note = f"glossary: {snap.glossary_size}"
                    if snap.backoff.active:
                        note += f"  rate limited ({snap.backoff.remaining:.0f}s)"
                    progress.update(translated, total=total, completed=done, note=note)

                sub_id = pipeline_obj.events.subscribe(_refresh)
                try:
                    result = await pipeline_obj.run(chapters_spec=chapters)
                finally:
                    pipeline_obj.events.unsubscribe(sub_id)
                    try:
                        loop.remove_signal_handler(signal.SIGINT)
                    except NotImplementedError:
                        pass
        return result

    try:
        result = asyncio.run(_run())
    except ValueError as e:
        logger.error("book_dir_mismatch", error=str(e))
        raise SystemExit(1)
    except KeyboardInterrupt:
        # Progress was saved before the run task gave up
        click.echo("Cancelled. Re-run the same command to resume.")
        raise SystemExit(130)

    click.echo(
        f"{result.status.value}: {result.translated} translated, {result.fetched} fetched, "
        f"{result.skipped} already done, {result.failed} failed "
        f"(glossary: {result.glossary_size} terms)"
    )
    if result.failed_chapters:
        click.echo(f"Failed chapters: {', '.join(str(i) for i in result.failed_chapters)}")
        click.echo(f"Retry with: syosetu-translator retry --book-dir {store.book_dir} --all")

    if result.status == RunStatus.ABORTED:
        logger.error("run_aborted", error=result.fatal_error)
        raise SystemExit(1)
    if result.status == RunStatus.CANCELLED:
        click.echo("Cancelled. Re-run the same command to resume.")
        raise SystemExit(130)


# =============================================================================
# Status / Retry Commands
# =============================================================================


@cli.command()
@click.option("--book-dir", required=True, type=click.Path(exists=True), help="Book directory")
@click.option("--failed", "only_failed", is_flag=True, help="List only failed chapters")
def status(book_dir: str, only_failed: bool) -> None:
    """Show chapter progress of a book."""
    from syosetu_translator.utils.progress import ChapterStatus

    store = _open_store(book_dir)
    state = store.load()

    counts = {s: 0 for s in ChapterStatus if not s.transitional}
    for chapter in state.chapters:
        counts[chapter.status] += 1
    click.echo(f"Novel: {state.run_state.novel.slug} ({state.run_state.novel.url})")
    click.echo(
        "  " + ", ".join(f"{s.value}: {n}" for s, n in counts.items())
        + f", glossary: {len(store.load_glossary())}"
    )

    rows = [
        c for c in state.chapters if not only_failed or c.status == ChapterStatus.FAILED
    ]
    if not rows:
        return
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Error")
    for chapter in rows:
        error = f"{chapter.error_kind}: {chapter.error_message}" if chapter.error_kind else ""
        table.add_row(str(chapter.index), chapter.title, chapter.status.value, error)
    console.print(table)


@cli.command()
@click.option("--book-dir", required=True, type=click.Path(exists=True), help="Book directory")
@click.option("--chapter", "-c", "indices", multiple=True, type=int, help="Chapter to retry")
@click.option("--all", "retry_all", is_flag=True, help="Retry every failed chapter")
def retry(book_dir: str, indices: tuple[int, ...], retry_all: bool) -> None:
    """Reset failed chapters to pending for the next run."""
    if not indices and not retry_all:
        logger.error("missing_argument", detail="Pass --chapter N or --all")
        raise SystemExit(1)

    store = _open_store(book_dir)
    reset = store.reset_failed(None if retry_all else indices)
    skipped = sorted(set(indices) - set(reset))
    if skipped:
        click.echo(f"Not failed, left unchanged: {', '.join(str(i) for i in skipped)}")
    click.echo(f"Reset {len(reset)} chapters. Resume with: syosetu-translator run --book-dir {book_dir}")


# =============================================================================
# Export Command
# =============================================================================


@cli.command()
@click.option("--book-dir", required=True, type=click.Path(exists=True), help="Book directory")
@click.option("--output", "-o", type=click.Path(), help="Output text file")
def export(book_dir: str, output: Optional[str]) -> None:
    """Export translated chapters to a single text file."""
    store = _open_store(book_dir)
    output_path = Path(output) if output else store.book_dir / "translated.txt"
    count = store.export_text(output_path)
    logger.info("export_complete", path=str(output_path), chapters=count)
    click.echo(f"Exported {count} chapters to {output_path}")


# =============================================================================
# Glossary Commands
# =============================================================================


@cli.group()
def glossary():
    """Manage translation glossaries."""
    pass


@glossary.command("export")
@click.option("--book-dir", required=True, type=click.Path(exists=True), help="Book directory")
@click.option("--output", "-o", required=True, type=click.Path(), help="Output CSV path")
def glossary_export(book_dir: str, output: str) -> None:
    """Export glossary to CSV file."""
    g = _open_store(book_dir).load_glossary()
    if len(g) == 0:
        click.echo(f"No glossary found in {book_dir}")
        return

    g.to_csv(Path(output))
    click.echo(f"Exported {len(g)} entries to {output}")


@glossary.command("import")
@click.option("--book-dir", required=True, type=click.Path(exists=True), help="Book directory")
@click.option(
    "--input",
    "-i",
    "input_file",
    required=True,
    type=click.Path(exists=True),
    help="Input CSV file",
)
@click.option(
    "--override/--keep",
    default=False,
    help="Replace translations of known terms instead of keeping them",
)
def glossary_import(book_dir: str, input_file: str, override: bool) -> None:
    """Import glossary entries from CSV file."""
    from syosetu_translator.translator.glossary import Glossary, GlossaryStore, ProposedTerm

    store = _open_store(book_dir)
    imported = Glossary.from_csv(Path(input_file))
    glossary_store = GlossaryStore(store.load_glossary())

    async def merge() -> int:
        if override:
            for entry in imported:
                await glossary_store.override(entry.term, entry.translation)
            return len(imported)
        accepted = await glossary_store.commit(
            ProposedTerm(term=e.term, translation=e.translation) for e in imported
        )
        return len(accepted)

    changed = asyncio.run(merge())
    store.save_glossary(glossary_store.glossary)
    click.echo(f"Merged {changed} of {len(imported)} entries (total: {len(glossary_store)})")


@glossary.command("show")
@click.option("--book-dir", required=True, type=click.Path(exists=True), help="Book directory")
@click.option("--limit", default=50, help="Maximum entries to show")
def glossary_show(book_dir: str, limit: int) -> None:
    """Display glossary contents."""
    g = _open_store(book_dir).load_glossary()
    if len(g) == 0:
        click.echo(f"No glossary found in {book_dir}")
        return

    click.echo(f"Glossary ({len(g)} entries):")
    for entry in g.entries[:limit]:
        chapter = f" [ch. {entry.first_seen_chapter}]" if entry.first_seen_chapter else ""
        click.echo(f"  {entry.term} → {entry.translation}{chapter}")

    if len(g) > limit:
        click.echo(f"  ... and {len(g) - limit} more")


if __name__ == "__main__":
    cli()
