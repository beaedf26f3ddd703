import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from cardcrawler.config import Config
from cardcrawler.errors import NavigationError
from cardcrawler.extract import Document
from cardcrawler.scheduler import CrawlScheduler
from cardcrawler.store import PersistentStore

BASE_URL = "https://shoob.gg"
EMPTY_PAGE = "<html><body><div class='loading'></div></body></html>"
END_PAGE = "<html><body><div class='cards'><p>No cards found</p></div></body></html>"


def list_url(partition: str, page: int) -> str:
    return f"{BASE_URL}/cards?page={page}&tier={partition}"


def detail_url(slug: str) -> str:
    return f"{BASE_URL}/cards/info/{slug}"


def image_url(slug: str) -> str:
    return f"https://cdn.shoob.gg/images/cards/{slug}.webp"


def listing_html(cards: Sequence[Tuple[str, str]]) -> str:
    links = "".join(
        f'<div class="card-main"><a href="/cards/info/{slug}"><img src="{image_url(slug)}" alt="{name}"></a></div>'
        for slug, name in cards
    )
    return (
        "<html><body>"
        '<a href="/"><img src="https://cdn.shoob.gg/logo.png" alt="Shoob Logo"></a>'
        f'<div class="cards">{links}</div>'
        "</body></html>"
    )


def detail_html(category: Optional[str], maker: Optional[str], name: str = "Card") -> str:
    crumbs = ["Home", "Cards", category, name] if category else ["Cards"]
    items = "".join(
        '<li itemprop="itemListElement">'
        f'<span itemprop="name">{label}</span><meta itemprop="position" content="{index}">'
        "</li>"
        for index, label in enumerate(crumbs, start=1)
    )
    maker_block = ""
    if maker:
        maker_block = (
            f'<div class="maker">Card Maker: <a href="/u/42">{maker}</a> '
            '<a href="/u/42">See the Maker</a></div>'
        )
    return f'<html><body><ol class="breadcrumb-new">{items}</ol>{maker_block}</body></html>'


class FakeSite:
    """URL -> HTML map with scripted navigation failures."""

    def __init__(self, delay: float = 0.0) -> None:
        self.pages: Dict[str, str] = {}
        self.failures: Dict[str, List[str]] = {}
        self.always_fail: Dict[str, str] = {}
        self.visits: List[str] = []
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.delay = delay
        self._lock = threading.Lock()

    def add(self, url: str, html: str) -> None:
        self.pages[url] = html

    def add_listing(self, partition: str, page: int, cards: Sequence[Tuple[str, str]]) -> None:
        self.add(list_url(partition, page), listing_html(cards))

    def add_card(self, slug: str, category: Optional[str] = "Re:Zero", maker: Optional[str] = "Mell") -> None:
        self.add(detail_url(slug), detail_html(category, maker, slug))

    def fail(self, url: str, reason: str, times: int = 1) -> None:
        self.failures.setdefault(url, []).extend([reason] * times)

    def fail_always(self, url: str, reason: str) -> None:
        self.always_fail[url] = reason

    def visit(self, url: str) -> str:
        if self.delay:
            time.sleep(self.delay)
        hook = self.hooks.get(url)
        if hook is not None:
            hook()
        with self._lock:
            self.visits.append(url)
            if url in self.always_fail:
                raise NavigationError(url, self.always_fail[url])
            queued = self.failures.get(url)
            if queued:
                raise NavigationError(url, queued.pop(0))
        return self.pages.get(url, EMPTY_PAGE)

    def visit_count(self, url: str) -> int:
        with self._lock:
            return self.visits.count(url)


class FakeSession:
    def __init__(self, site: FakeSite) -> None:
        self.site = site
        self.leases = 0
        self.current_url = ""
        self.html = ""
        self.closed = False

    def navigate(self, url, wait_policy=None) -> None:
        self.current_url = url
        self.html = self.site.visit(url)

    def _document(self) -> Document:
        return Document.from_html(self.html, self.current_url)

    def wait_for(self, condition, timeout) -> bool:
        return bool(condition(self._document()))

    def extract(self, logic):
        return logic(self._document())

    def save_diagnostic(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.with_suffix(".html").write_text(self.html, encoding="utf-8")

    def close(self) -> None:
        self.closed = True


class FakePool:
    def __init__(self, site: FakeSite, size: int = 1) -> None:
        self.site = site
        self.size = size
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.discarded = 0
        self.shut_down = False

    def acquire_session(self, timeout=None) -> FakeSession:
        self._slots.acquire()
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        return FakeSession(self.site)

    def release_session(self, session, discard=False) -> None:
        with self._lock:
            self.active -= 1
            if discard:
                self.discarded += 1
        self._slots.release()

    def shutdown(self, grace=5.0) -> None:
        self.shut_down = True


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += max(0.0, seconds)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.update(
        {
            "base_url": BASE_URL,
            "output_dir": str(tmp_path / "out"),
            "partitions": ["1"],
            "partition_limits": {"1": 2},
            "page_concurrency": 1,
            "item_concurrency": 2,
            "max_attempts": 2,
            "scan_attempts": 2,
            "page_rounds": 0,
            "request_delay_min": 0,
            "request_delay_max": 0,
            "snapshot_every": 0,
            "connectivity_probe_url": "",
        }
    )
    return cfg


@pytest.fixture
def make_scheduler(site, clock):
    def build(cfg: Config, **overrides) -> CrawlScheduler:
        store = PersistentStore.from_config(cfg)
        kwargs = dict(
            clock=clock,
            sleep=clock.sleep,
            probe=lambda: True,
        )
        kwargs.update(overrides)
        return CrawlScheduler(
            cfg,
            store,
            FakePool(site, int(cfg.get("page_concurrency"))),
            FakePool(site, int(cfg.get("item_concurrency"))),
            **kwargs,
        )

    return build
