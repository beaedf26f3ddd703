"""Pure extraction logic over a loaded document.

Everything here works on :class:`Document`, a scrapy ``Selector`` plus the URL
it was loaded from, so it runs the same against a live browser page and a
static HTML fixture.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from scrapy import Selector

from .errors import ExtractionAmbiguous
from .models import CandidateItem

NAV_BLACKLIST = ("shoob home", "home", "shoob logo", "navigation", "nav", "menu", "header", "footer")
PLACEHOLDER_IMAGE_MARKERS = ("card_back",)
NO_RESULTS_MARKERS = ("No cards found",)

BREADCRUMB_ITEMS = 'ol.breadcrumb-new li[itemprop="itemListElement"]'
BREADCRUMB_POSITION = "3"
ATTRIBUTION_LINKS = 'a[href*="/u/"]'
ATTRIBUTION_PATTERN = re.compile(r"Card Maker:\s*(?P<value>.+?)\s*See the Maker", re.S)
ATTRIBUTION_LABEL_PATTERN = re.compile(r"(?:Card Maker|Creator|Made by|Author)\s*:\s*(?P<value>[^\n:]{1,80})")

CHALLENGE_MARKERS = (
    "checking your browser",
    "just a moment",
    "ddos protection",
    "access denied",
    "attention required",
)


def _normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(str(value).split()).strip()


@dataclass
class Document:
    selector: Selector
    url: str = ""

    @classmethod
    def from_html(cls, html: str, url: str = "") -> "Document":
        return cls(Selector(text=html or "<html></html>", type="html"), url)

    def css(self, query: str):
        return self.selector.css(query)

    def urljoin(self, href: str) -> str:
        if not href:
            return ""
        return urljoin(self.url, href) if self.url else href

    def body_text(self) -> str:
        parts = self.selector.xpath("//body//text()[not(ancestor::script) and not(ancestor::style)]").getall()
        return _normalize_text(" ".join(parts))

    def raw_body_text(self) -> str:
        return "".join(self.selector.xpath("//body//text()[not(ancestor::script) and not(ancestor::style)]").getall())


Strategy = Callable[[Document], List[CandidateItem]]


def is_blacklisted(name: str, image_url: str = "") -> bool:
    lowered = _normalize_text(name).lower()
    if any(term == lowered or term in lowered for term in NAV_BLACKLIST):
        return True
    return any(marker in (image_url or "") for marker in PLACEHOLDER_IMAGE_MARKERS)


def _candidate(doc: Document, image_src: str, href: str, alt: str) -> Optional[CandidateItem]:
    image_url = doc.urljoin(_normalize_text(image_src))
    detail_ref = doc.urljoin(_normalize_text(href))
    if not image_url or not detail_ref:
        return None
    name = _normalize_text(alt) or "Unknown"
    if is_blacklisted(name, image_url):
        return None
    return CandidateItem(identity=image_url, detail_ref=detail_ref, display_name=name)


def card_link_strategy(doc: Document) -> List[CandidateItem]:
    """Anchors pointing at card detail pages that wrap an image."""
    found: List[CandidateItem] = []
    for link in doc.css('a[href*="/cards/info/"], a[href*="/card/"]'):
        img = link.css("img")
        if not img:
            continue
        item = _candidate(
            doc,
            img[0].attrib.get("src", ""),
            link.attrib.get("href", ""),
            img[0].attrib.get("alt", ""),
        )
        if item:
            found.append(item)
    return found


def image_anchor_strategy(doc: Document) -> List[CandidateItem]:
    """Any image whose closest anchor points into the site's card pages."""
    found: List[CandidateItem] = []
    for img in doc.css("img"):
        anchors = img.xpath("ancestor::a[1]")
        if not anchors:
            continue
        href = anchors[0].attrib.get("href", "")
        absolute = doc.urljoin(href)
        if "shoob.gg" not in absolute and "/card" not in absolute:
            continue
        item = _candidate(doc, img.attrib.get("src", ""), href, img.attrib.get("alt", ""))
        if item:
            found.append(item)
    return found


DEFAULT_STRATEGIES: Tuple[Strategy, ...] = (card_link_strategy, image_anchor_strategy)


def dedupe_candidates(items: Iterable[CandidateItem]) -> List[CandidateItem]:
    seen = set()
    unique: List[CandidateItem] = []
    for item in items:
        if item.identity in seen:
            continue
        seen.add(item.identity)
        unique.append(item)
    return unique


def select_best(doc: Document, strategies: Sequence[Strategy]) -> Tuple[List[CandidateItem], int]:
    """Run every strategy and keep the largest result; ties go to the earlier one."""
    if not strategies:
        raise ExtractionAmbiguous("no extraction strategies configured")
    best: List[CandidateItem] = []
    best_index = -1
    for index, strategy in enumerate(strategies):
        result = list(strategy(doc))
        if best_index < 0 or len(result) > len(best):
            best = result
            best_index = index
    return dedupe_candidates(best), best_index


def has_no_results_marker(doc: Document, markers: Sequence[str] = NO_RESULTS_MARKERS) -> bool:
    text = doc.body_text()
    return any(marker in text for marker in markers)


def looks_like_browser_challenge(html_payload: str) -> bool:
    body = str(html_payload or "").lower()
    if not body:
        return False
    return any(marker in body for marker in CHALLENGE_MARKERS)


def extract_category(doc: Document) -> str:
    """Breadcrumb node at position 3, else the second-to-last node."""
    items = doc.css(BREADCRUMB_ITEMS)
    for item in items:
        position = item.css('meta[itemprop="position"]::attr(content)').get()
        if _normalize_text(position) == BREADCRUMB_POSITION:
            name = _normalize_text(item.css('span[itemprop="name"]::text').get())
            if name:
                return name
    if len(items) >= 2:
        name = _normalize_text(items[len(items) - 2].css('span[itemprop="name"]::text').get())
        if name:
            return name
    return ""


def extract_attribution(doc: Document) -> str:
    """Card maker from the labelled text block, else the first user profile link."""
    raw_text = doc.raw_body_text()
    match = ATTRIBUTION_PATTERN.search(raw_text)
    if match:
        value = _normalize_text(match.group("value"))
        if value:
            return value
    for link in doc.css(ATTRIBUTION_LINKS):
        text = _normalize_text(" ".join(link.css("::text").getall()))
        if text and "See" not in text:
            return text
    match = ATTRIBUTION_LABEL_PATTERN.search(raw_text)
    if match:
        return _normalize_text(match.group("value"))
    return ""


def detail_ready(doc: Document) -> bool:
    """Both the breadcrumb and an attribution block have rendered."""
    if not doc.css(BREADCRUMB_ITEMS):
        return False
    if doc.css(ATTRIBUTION_LINKS):
        return True
    return bool(ATTRIBUTION_PATTERN.search(doc.raw_body_text()))
