"""Build the automotive glass daily briefing page from a set of RSS feeds."""
from __future__ import annotations

import argparse
import csv
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from html import escape
from pathlib import Path
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import feedparser
import requests
from dateutil import parser as dt_parser

DEFAULT_OUTPUT = "docs/index.html"
DEFAULT_TIMEOUT = 20
DEFAULT_TZ = "America/Los_Angeles"
USER_AGENT = "glass-briefing/1.0"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# RFC-822 zone names that dateutil does not resolve on its own.
RFC822_ZONES = {
    "UT": 0,
    "GMT": 0,
    "Z": 0,
    "EST": -5 * 3600,
    "EDT": -4 * 3600,
    "CST": -6 * 3600,
    "CDT": -5 * 3600,
    "MST": -7 * 3600,
    "MDT": -6 * 3600,
    "PST": -8 * 3600,
    "PDT": -7 * 3600,
}
UNTITLED = "(untitled)"
EMPTY_MESSAGE = "No recent headlines matched yet. Please check back soon."

PAGE_TITLE = "Automotive Glass Daily Briefing"
PAGE_DESCRIPTION = (
    "Curated headlines on automotive glass: windshield replacement, "
    "ADAS calibration, supply chain, and industry news."
)
SOURCES_NOTE = (
    "Sources: Google News queries, glassBYTEs, AGRR Magazine, "
    "Repairer Driven News, IIHS, NHTSA."
)

DEFAULT_FEEDS = [
    # Google News targeted queries
    "https://news.google.com/rss/search?q=%28automotive+windshield+OR+windscreen+OR+%22auto+glass%22+OR+%22windshield+replacement%22+OR+%22windshield+repair%22+OR+%22ADAS+calibration%22%29&hl=en-US&gl=US&ceid=US:en",
    "https://news.google.com/rss/search?q=%28windshield+recall+OR+windshield+crack+OR+laminated+glass%29&hl=en-US&gl=US&ceid=US:en",
    "https://news.google.com/rss/search?q=%28Safelite+OR+Belron+OR+Pilkington+OR+NSG+OR+Xinyi+Glass%29+%28windshield+OR+glass%29&hl=en-US&gl=US&ceid=US:en",
    # Industry / trade
    "https://www.glassbytes.com/feed/",
    "https://www.agrrmag.com/feed/",
    "https://www.repairerdrivennews.com/feed/",
    # Safety / testing orgs; NHTSA moves its RSS endpoint now and then
    "https://www.iihs.org/rss/news",
    "https://www.nhtsa.gov/rss",
]

RELEVANCE_KEYWORDS = (
    "windshield",
    "windscreen",
    r"auto\s*glass",
    "adas",
    "calibration",
    "glassbyte",
    "safelite",
    "belron",
    "pilkington",
    "laminated",
)


class FeedFetchError(RuntimeError):
    """Raised when a feed cannot be downloaded or parsed."""


def load_env_file(path: str = ".env") -> None:
    """Populate environment variables from a simple KEY=VALUE .env file."""
    if not os.path.exists(path):
        return
    try:
        with open(path, encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                os.environ.setdefault(key, value)
    except OSError as exc:
        raise SystemExit(f"Failed to read {path}: {exc}")


load_env_file()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("glass_briefing")


@dataclass(frozen=True)
class BriefingItem:
    source: str
    title: str
    link: str
    date: datetime


@dataclass
class FeedResult:
    """Outcome of fetching one feed: its items, or the reason it failed."""

    url: str
    items: List[BriefingItem] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SelectionConfig:
    tight_window: timedelta
    loose_window: Optional[timedelta] = None
    min_items: int = 0
    max_items: int = 40
    relevance_filter: bool = False
    keywords: Sequence[str] = RELEVANCE_KEYWORDS


FULL_SELECTION = SelectionConfig(
    tight_window=timedelta(hours=72),
    loose_window=timedelta(days=14),
    min_items=10,
    max_items=40,
    relevance_filter=True,
)

SIMPLE_SELECTION = SelectionConfig(
    tight_window=timedelta(hours=36),
    max_items=25,
)

VARIANTS = {"full": FULL_SELECTION, "simple": SIMPLE_SELECTION}


def load_feeds(csv_path: str) -> List[str]:
    """Return the feed URLs listed in the ``rss_url`` column of a CSV file."""
    try:
        with open(csv_path, newline="", encoding="utf-8") as handle:
            urls = [
                (row.get("rss_url") or "").strip()
                for row in csv.DictReader(handle)
            ]
    except OSError as exc:
        raise SystemExit(f"Failed to read {csv_path}: {exc}")
    return [url for url in urls if url]


def parse_date(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 or RFC-822 timestamp; anything unusable maps to the epoch."""
    if not value:
        return EPOCH
    try:
        dt = dt_parser.parse(value, tzinfos=RFC822_ZONES)
    except (ValueError, TypeError, OverflowError):
        return EPOCH
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _entry_date_text(entry: dict) -> Optional[str]:
    # Publication date first; ``updated`` only stands in when it is missing.
    # Membership test: feedparser aliases a missing ``updated`` to ``published``.
    for key in ("published", "updated"):
        if key in entry and entry[key]:
            return entry[key]
    return None


def normalize_entry(entry: dict, source: str) -> BriefingItem:
    """Map one raw feed entry onto a :class:`BriefingItem`."""
    title = (entry.get("title") or "").strip()
    link = (entry.get("link") or "").strip()
    return BriefingItem(
        source=source,
        title=title or UNTITLED,
        link=link,
        date=parse_date(_entry_date_text(entry)),
    )


def feed_source(parsed, url: str) -> str:
    title = (parsed.feed.get("title") or "").strip()
    return title or url


def _download(session: requests.Session, url: str, timeout: float) -> bytes:
    try:
        response = session.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedFetchError(str(exc)) from exc
    return response.content


def _parse_feed(payload: bytes):
    parsed = feedparser.parse(payload)
    if getattr(parsed, "bozo", 0) and not parsed.entries:
        exc = getattr(parsed, "bozo_exception", None)
        raise FeedFetchError(f"Invalid RSS/Atom feed ({exc})" if exc else "Invalid RSS/Atom feed")
    return parsed


def fetch_feed(session: requests.Session, url: str, timeout: float = DEFAULT_TIMEOUT) -> FeedResult:
    """Fetch and normalise a single feed, capturing any failure in the result."""
    try:
        parsed = _parse_feed(_download(session, url, timeout))
    except FeedFetchError as exc:
        logger.warning("Feed error %s: %s", url, exc)
        return FeedResult(url=url, error=str(exc))
    source = feed_source(parsed, url)
    items = [normalize_entry(entry, source) for entry in parsed.entries]
    logger.debug("Fetched %d items from %s", len(items), url)
    return FeedResult(url=url, items=items)


def fetch_all(
    urls: Sequence[str],
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
    workers: int = 1,
) -> List[FeedResult]:
    """Fetch every feed, returning one result per URL in input order."""
    owns_session = session is None
    if session is None:
        session = requests.Session()
    try:
        if workers <= 1 or len(urls) <= 1:
            return [fetch_feed(session, url, timeout) for url in urls]
        # Workers only issue GETs on the shared session and never touch its
        # cookies, auth or adapters.
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda url: fetch_feed(session, url, timeout), urls))
    finally:
        if owns_session:
            session.close()


def collect_items(results: Iterable[FeedResult]) -> List[BriefingItem]:
    items: List[BriefingItem] = []
    for result in results:
        items.extend(result.items)
    return items


def dedupe_key(link: str) -> str:
    return link.split("?", 1)[0].lower()


def dedupe(items: Iterable[BriefingItem]) -> List[BriefingItem]:
    """Keep the first item per query-stripped link; unlinked items are always kept."""
    seen: set[str] = set()
    unique: List[BriefingItem] = []
    for item in items:
        key = dedupe_key(item.link)
        if key:
            if key in seen:
                continue
            seen.add(key)
        unique.append(item)
    return unique


@lru_cache(maxsize=None)
def _keyword_pattern(keywords: tuple) -> re.Pattern:
    return re.compile("|".join(keywords), re.IGNORECASE)


def is_relevant(item: BriefingItem, keywords: Sequence[str] = RELEVANCE_KEYWORDS) -> bool:
    """Return True when the title or link mentions one of the topical keywords."""
    return bool(_keyword_pattern(tuple(keywords)).search(f"{item.title} {item.link}"))


def filter_recent(items: Iterable[BriefingItem], now: datetime, window: timedelta) -> List[BriefingItem]:
    cutoff = now - window
    return [item for item in items if item.date > cutoff]


def select_items(
    items: Iterable[BriefingItem],
    config: SelectionConfig = FULL_SELECTION,
    now: Optional[datetime] = None,
) -> List[BriefingItem]:
    """Deduplicate, filter, sort and cap the items that make it onto the page."""
    if now is None:
        now = datetime.now(timezone.utc)
    candidates = dedupe(items)
    if config.relevance_filter:
        candidates = [item for item in candidates if is_relevant(item, config.keywords)]

    selected = filter_recent(candidates, now, config.tight_window)
    if config.loose_window is not None and len(selected) < config.min_items:
        logger.info(
            "Only %d items in the last %s; widening to %s",
            len(selected),
            config.tight_window,
            config.loose_window,
        )
        selected = filter_recent(candidates, now, config.loose_window)

    selected.sort(key=lambda item: item.date, reverse=True)
    return selected[: config.max_items]


def briefing_timezone() -> ZoneInfo:
    tz_name = os.environ.get("BRIEFING_TZ", DEFAULT_TZ)
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Invalid BRIEFING_TZ %s; defaulting to UTC", tz_name)
        return ZoneInfo("UTC")


def format_generated(now: datetime, tz: ZoneInfo) -> str:
    local = now.astimezone(tz)
    return (
        f"{local.strftime('%A, %B')} {local.day}, {local.year}"
        f" · {local.strftime('%I:%M %p %Z')}"
    )


def format_item_time(date: datetime, tz: ZoneInfo) -> str:
    local = date.astimezone(tz)
    return f"{local.strftime('%b')} {local.day}, {local.strftime('%I:%M %p')}"


def _render_item(item: BriefingItem, tz: ZoneInfo) -> str:
    return f"""
      <li>
        <a href="{escape(item.link, quote=True)}" target="_blank" rel="noopener">{escape(item.title)}</a>
        <span class="src">{escape(item.source)}</span>
        <time datetime="{item.date.isoformat()}">{escape(format_item_time(item.date, tz))}</time>
      </li>"""


def render_page(
    items: Sequence[BriefingItem],
    now: datetime,
    tz: ZoneInfo,
    sources_note: str = SOURCES_NOTE,
) -> str:
    """Build the standalone HTML briefing page."""
    entries = "\n".join(_render_item(item, tz) for item in items)
    if not entries:
        entries = f"<li class=\"empty\">{escape(EMPTY_MESSAGE)}</li>"

    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{escape(PAGE_TITLE)}</title>
  <meta name="description" content="{escape(PAGE_DESCRIPTION, quote=True)}" />
  <style>
    :root {{ color-scheme: light dark; }}
    body {{ margin: 0; font: 16px/1.5 -apple-system, BlinkMacSystemFont, Segoe UI, Roboto, Helvetica, Arial, sans-serif; }}
    header {{ padding: 32px 20px; text-align: center; background: #0b132b; color: #e0e6f8; }}
    h1 {{ margin: 0 0 8px; font-size: 28px; }}
    .date {{ opacity: 0.9; }}
    main {{ max-width: 820px; margin: 24px auto; padding: 0 16px 40px; }}
    ul {{ list-style: none; padding: 0; margin: 0; }}
    li {{ padding: 14px 12px; border-bottom: 1px solid rgba(0,0,0,0.08); display: grid; grid-template-columns: 1fr auto; gap: 8px; align-items: baseline; }}
    li a {{ color: #174ea6; text-decoration: none; font-weight: 600; }}
    li a:hover {{ text-decoration: underline; }}
    .src {{ font-size: 12px; opacity: 0.7; margin-left: 8px; }}
    time {{ font-size: 12px; opacity: 0.7; }}
    footer {{ text-align: center; padding: 20px; opacity: 0.7; font-size: 13px; }}
  </style>
</head>
<body>
  <header>
    <h1>{escape(PAGE_TITLE)}</h1>
    <div class="date">{escape(format_generated(now, tz))}</div>
  </header>
  <main>
    <ul>
      {entries}
    </ul>
  </main>
  <footer>
    {escape(sources_note)}
  </footer>
</body>
</html>
"""


def write_page(html: str, path: str | Path) -> Path:
    """Write the page, replacing any previous build. Filesystem errors propagate."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(html, encoding="utf-8")
    return target


def build_config(args: argparse.Namespace) -> SelectionConfig:
    config = VARIANTS[args.variant]
    overrides = {}
    if args.tight_hours is not None:
        overrides["tight_window"] = timedelta(hours=args.tight_hours)
    if args.loose_days is not None:
        overrides["loose_window"] = timedelta(days=args.loose_days)
    if args.no_fallback:
        overrides["loose_window"] = None
    if args.min_items is not None:
        overrides["min_items"] = args.min_items
    if args.max_items is not None:
        overrides["max_items"] = args.max_items
    if args.no_relevance:
        overrides["relevance_filter"] = False
    return replace(config, **overrides) if overrides else config


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Build the automotive glass daily briefing page.")
    parser.add_argument("--csv", help="CSV file with an rss_url column; defaults to the built-in feed list")
    parser.add_argument(
        "--output",
        default=os.environ.get("BRIEFING_OUTPUT", DEFAULT_OUTPUT),
        help="Path of the HTML file to write",
    )
    parser.add_argument("--variant", choices=sorted(VARIANTS), default="full", help="Selection preset")
    parser.add_argument("--tight-hours", type=float, help="Preferred look-back window in hours")
    parser.add_argument("--loose-days", type=float, help="Fallback look-back window in days")
    parser.add_argument("--no-fallback", action="store_true", help="Disable the fallback window")
    parser.add_argument("--min-items", type=int, help="Widen to the fallback window below this many items")
    parser.add_argument("--max-items", type=int, help="Maximum number of headlines on the page")
    parser.add_argument("--no-relevance", action="store_true", help="Skip the keyword relevance filter")
    parser.add_argument(
        "--timeout",
        type=float,
        default=os.environ.get("BRIEFING_TIMEOUT", str(DEFAULT_TIMEOUT)),
        help="Per-feed HTTP timeout in seconds",
    )
    parser.add_argument("--workers", type=int, default=1, help="Number of feeds fetched in parallel")
    args = parser.parse_args(argv)

    feeds = load_feeds(args.csv) if args.csv else list(DEFAULT_FEEDS)
    if not feeds:
        raise SystemExit(f"No feeds found in {args.csv}.")

    config = build_config(args)
    results = fetch_all(feeds, timeout=args.timeout, workers=args.workers)
    failed = [result.url for result in results if not result.ok]
    if failed:
        logger.info("%d of %d feeds failed", len(failed), len(results))

    now = datetime.now(timezone.utc)
    items = select_items(collect_items(results), config, now)
    html = render_page(items, now, briefing_timezone())
    target = write_page(html, args.output)
    logger.info("Wrote %d items to %s", len(items), target)


if __name__ == "__main__":
    main()
