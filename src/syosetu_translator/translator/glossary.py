"""Glossary management for consistent term translation."""

import asyncio
import csv
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()


class GlossaryEntry(BaseModel):
    """A single glossary entry."""

    model_config = ConfigDict(frozen=True)

    term: str = Field(description="Source-language spelling")
    translation: str = Field(description="Chosen rendering")
    first_seen_chapter: Optional[int] = Field(
        default=None, description="Chapter whose translation introduced the term"
    )


class ProposedTerm(BaseModel):
    """A term pair suggested by a translation, not yet committed."""

    term: str
    translation: str


class Glossary:
    """Ordered term -> entry mapping. Insertion order is order of first encounter."""

    def __init__(self, entries: Optional[Iterable[GlossaryEntry]] = None):
        self._entries: dict[str, GlossaryEntry] = {}
        for entry in entries or []:
            self._entries.setdefault(entry.term, entry)

    @property
    def entries(self) -> list[GlossaryEntry]:
        return list(self._entries.values())

    def add(self, entry: GlossaryEntry) -> bool:
        """Insert an entry unless its term is known.

        Returns:
            True if the entry was inserted
        """
        if entry.term in self._entries:
            return False
        self._entries[entry.term] = entry
        return True

    def replace(self, entry: GlossaryEntry) -> None:
        """Set an entry, keeping the original position of a known term."""
        self._entries[entry.term] = entry

    def lookup(self, term: str) -> Optional[GlossaryEntry]:
        return self._entries.get(term)

    def to_csv(self, path: Path) -> None:
        """Export glossary to CSV file.

        Args:
            path: Path to save CSV file
        """
        path = Path(path)
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=["term", "translation", "first_seen_chapter"])
            writer.writeheader()
            for entry in self._entries.values():
                writer.writerow(entry.model_dump())

    @classmethod
    def from_csv(cls, path: Path) -> "Glossary":
        """Import glossary from CSV file.

        Rows with an empty term or translation are skipped; for duplicate
        terms the first row wins.

        Args:
            path: Path to CSV file

        Returns:
            New Glossary instance
        """
        entries = []
        with open(Path(path), "r", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                term = (row.get("term") or "").strip()
                translation = (row.get("translation") or "").strip()
                if not term or not translation:
                    continue
                chapter = (row.get("first_seen_chapter") or "").strip()
                entries.append(
                    GlossaryEntry(
                        term=term,
                        translation=translation,
                        first_seen_chapter=int(chapter) if chapter else None,
                    )
                )

        logger.info("glossary_imported", entries=len(entries), path=str(path))
        return cls(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, term: str) -> bool:
        return term in self._entries

    def __iter__(self):
        return iter(self._entries.values())


class GlossarySnapshot:
    """Read-only copy of a glossary taken at one point in time."""

    def __init__(self, entries: Iterable[GlossaryEntry], version: int = 0):
        self.entries: tuple[GlossaryEntry, ...] = tuple(entries)
        self.mapping: Mapping[str, str] = MappingProxyType(
            {e.term: e.translation for e in self.entries}
        )
        self.version = version

    def relevant_to(self, text: str, limit: Optional[int] = None) -> list[GlossaryEntry]:
        """Entries whose term occurs in ``text``, in glossary order."""
        relevant = [e for e in self.entries if e.term in text]
        return relevant[:limit] if limit else relevant

    def to_prompt_format(self, entries: Optional[Iterable[GlossaryEntry]] = None) -> str:
        """One ``term: translation`` pair per line for inclusion in a prompt."""
        if entries is None:
            entries = self.entries
        return "\n".join(f"{e.term}: {e.translation}" for e in entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, term: str) -> bool:
        return term in self.mapping


class GlossaryStore:
    """Single-writer owner of the run's glossary.

    ``snapshot`` never waits. ``commit`` and ``override`` hold one lock, so
    exactly one mutation is in progress at a time and the first commit of a
    term decides its translation.
    """

    def __init__(self, glossary: Optional[Glossary] = None):
        self._glossary = glossary or Glossary()
        self._lock = asyncio.Lock()
        self.version = 0

    def snapshot(self) -> GlossarySnapshot:
        return GlossarySnapshot(self._glossary.entries, self.version)

    async def commit(
        self,
        proposed: Iterable[ProposedTerm],
        chapter_index: Optional[int] = None,
    ) -> list[GlossaryEntry]:
        """Insert proposed terms that are not yet known.

        Args:
            proposed: Candidate term pairs from one chapter's translation
            chapter_index: Chapter the candidates came from

        Returns:
            The entries that were accepted, in proposal order
        """
        async with self._lock:
            accepted = []
            for candidate in proposed:
                term = candidate.term.strip()
                translation = candidate.translation.strip()
                if not term or not translation:
                    continue
                entry = GlossaryEntry(
                    term=term, translation=translation, first_seen_chapter=chapter_index
                )
                if self._glossary.add(entry):
                    accepted.append(entry)
                else:
                    logger.debug(
                        "glossary_term_rejected",
                        term=term,
                        proposed=translation,
                        kept=self._glossary.lookup(term).translation,
                        chapter=chapter_index,
                    )
            if accepted:
                self.version += 1
            return accepted

    async def override(self, term: str, translation: str) -> GlossaryEntry:
        """Explicitly change (or add) the translation of a term."""
        async with self._lock:
            existing = self._glossary.lookup(term)
            entry = GlossaryEntry(
                term=term,
                translation=translation,
                first_seen_chapter=existing.first_seen_chapter if existing else None,
            )
            self._glossary.replace(entry)
            self.version += 1
            logger.info("glossary_term_overridden", term=term, translation=translation)
            return entry

    @property
    def glossary(self) -> Glossary:
        """The live glossary. Callers must not mutate it directly."""
        return self._glossary

    def __len__(self) -> int:
        return len(self._glossary)
