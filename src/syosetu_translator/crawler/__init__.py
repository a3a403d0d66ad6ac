"""Crawler module for fetching chapters from Japanese web novel sites."""

from syosetu_translator.crawler.base import BaseCrawler
from syosetu_translator.crawler.sites import (
    HamelnSite,
    NcodeSite,
    Novel18Site,
    SiteAdapter,
    create_crawler,
    create_site_adapter,
)

__all__ = [
    "BaseCrawler",
    "SiteAdapter",
    "NcodeSite",
    "Novel18Site",
    "HamelnSite",
    "create_crawler",
    "create_site_adapter",
]
