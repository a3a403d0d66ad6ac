"""Novel, chapter and run state models for resumable runs."""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SiteKind(str, Enum):
    """Supported novel sites."""

    NCODE = "ncode"
    NOVEL18 = "novel18"
    HAMELN = "hameln"


_SOURCE_PATTERNS: list[tuple[SiteKind, re.Pattern]] = [
    (SiteKind.NCODE, re.compile(r"^https?://ncode\.syosetu\.com/(n\d+[a-z]+)", re.I)),
    (SiteKind.NOVEL18, re.compile(r"^https?://novel18\.syosetu\.com/(n\d+[a-z]+)", re.I)),
    (SiteKind.HAMELN, re.compile(r"^https?://syosetu\.org/novel/(\d+)", re.I)),
]

_INDEX_URLS = {
    SiteKind.NCODE: "https://ncode.syosetu.com/{novel_id}/",
    SiteKind.NOVEL18: "https://novel18.syosetu.com/{novel_id}/",
    SiteKind.HAMELN: "https://syosetu.org/novel/{novel_id}/",
}


class NovelSource(BaseModel):
    """Site + novel id of the novel being translated. Fixed for a run."""

    model_config = ConfigDict(frozen=True)

    site: SiteKind
    novel_id: str
    url: str = Field(description="Table of contents URL")

    @property
    def slug(self) -> str:
        """Directory-safe identifier, e.g. ``ncode-n1234ab``."""
        return f"{self.site.value}-{self.novel_id}"


def resolve_source(url: str) -> NovelSource:
    """Match a novel URL against the supported sites.

    Chapter URLs resolve to their novel, so
    ``https://ncode.syosetu.com/n1234ab/5/`` gives the same source as the index.

    Raises:
        ValueError: URL does not belong to a supported site
    """
    url = url.strip()
    for site, pattern in _SOURCE_PATTERNS:
        match = pattern.match(url)
        if match:
            novel_id = match.group(1).lower()
            index_url = _INDEX_URLS[site].format(novel_id=novel_id)
            return NovelSource(site=site, novel_id=novel_id, url=index_url)
    raise ValueError(f"Unsupported novel URL: {url}")


class ChapterStatus(str, Enum):
    """Chapter processing status."""

    PENDING = "pending"
    FETCHING = "fetching"
    FETCHED = "fetched"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    FAILED = "failed"

    @property
    def transitional(self) -> bool:
        """In-memory only states that are never written to disk."""
        return self in (ChapterStatus.FETCHING, ChapterStatus.TRANSLATING)

    @property
    def terminal(self) -> bool:
        return self in (ChapterStatus.TRANSLATED, ChapterStatus.FAILED)


class ChapterRef(BaseModel):
    """A table of contents entry."""

    index: int = Field(description="Chapter index (1-based)")
    url: str
    title: str = ""


class Chapter(BaseModel):
    """Chapter text and status."""

    index: int = Field(description="Chapter index (1-based)")
    url: str = Field(description="Chapter URL")
    title: str = Field(default="", description="Original chapter title")
    raw_text: Optional[str] = None
    translated_text: Optional[str] = None
    status: ChapterStatus = Field(default=ChapterStatus.PENDING)
    attempts: int = Field(default=0, description="Attempts spent in the current stage")
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    fetched_at: Optional[datetime] = None
    translated_at: Optional[datetime] = None

    @classmethod
    def from_ref(cls, ref: ChapterRef) -> "Chapter":
        return cls(index=ref.index, url=ref.url, title=ref.title)


class RunState(BaseModel):
    """Resume point of a novel, derived from its persisted chapters."""

    novel: NovelSource
    next_fetch_index: Optional[int] = None
    unfinished: set[int] = Field(default_factory=set)

    @classmethod
    def from_chapters(cls, novel: NovelSource, chapters: list[Chapter]) -> "RunState":
        pending = [c.index for c in chapters if c.status == ChapterStatus.PENDING]
        return cls(
            novel=novel,
            next_fetch_index=min(pending) if pending else None,
            unfinished={c.index for c in chapters if c.status != ChapterStatus.TRANSLATED},
        )


def parse_chapter_range(spec: str, max_chapter: int) -> list[int]:
    """Parse chapter range specification.

    Args:
        spec: Range specification like "1-100" or "1,5,10-20"
        max_chapter: Maximum chapter number

    Returns:
        List of chapter indices (1-based)

    Examples:
        "1-10" -> [1, 2, 3, ..., 10]
        "1,5,10" -> [1, 5, 10]
        "1-5,10,15-20" -> [1, 2, 3, 4, 5, 10, 15, 16, 17, 18, 19, 20]
    """
    if not spec:
        return list(range(1, max_chapter + 1))

    result = set()
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = part.split("-", 1)
            start_idx = max(1, int(start.strip()))
            end_idx = int(end.strip()) if end.strip() else max_chapter
            result.update(range(start_idx, min(end_idx, max_chapter) + 1))
        else:
            idx = int(part)
            if 1 <= idx <= max_chapter:
                result.add(idx)

    return sorted(result)
