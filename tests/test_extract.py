import pytest

from cardcrawler.errors import ExtractionAmbiguous
from cardcrawler.extract import (
    Document,
    card_link_strategy,
    detail_ready,
    extract_attribution,
    extract_category,
    has_no_results_marker,
    image_anchor_strategy,
    is_blacklisted,
    looks_like_browser_challenge,
    select_best,
)
from cardcrawler.models import CandidateItem

from conftest import END_PAGE, detail_html, listing_html

PAGE_URL = "https://shoob.gg/cards?page=1&tier=1"


def doc(html, url=PAGE_URL):
    return Document.from_html(html, url)


def test_card_link_strategy_resolves_relative_links():
    items = card_link_strategy(doc(listing_html([("rem", "Rem"), ("ram", "Ram")])))
    assert [i.display_name for i in items] == ["Rem", "Ram"]
    assert items[0].detail_ref == "https://shoob.gg/cards/info/rem"
    assert items[0].identity.endswith("/rem.webp")


def test_largest_strategy_wins():
    def one(_doc):
        return [CandidateItem("a", "da", "A")]

    def three(_doc):
        return [CandidateItem("b", "db", "B"), CandidateItem("c", "dc", "C"), CandidateItem("d", "dd", "D")]

    items, index = select_best(doc("<html></html>"), [one, three])
    assert index == 1
    assert [i.identity for i in items] == ["b", "c", "d"]


def test_tie_goes_to_first_declared_strategy():
    def first(_doc):
        return [CandidateItem("a", "da", "A")]

    def second(_doc):
        return [CandidateItem("z", "dz", "Z")]

    items, index = select_best(doc("<html></html>"), [first, second])
    assert index == 0
    assert items[0].identity == "a"


def test_duplicates_removed_in_first_seen_order():
    def noisy(_doc):
        return [
            CandidateItem("a", "d1", "A"),
            CandidateItem("b", "d2", "B"),
            CandidateItem("a", "d3", "A again"),
        ]

    items, _ = select_best(doc("<html></html>"), [noisy])
    assert [(i.identity, i.detail_ref) for i in items] == [("a", "d1"), ("b", "d2")]


def test_blacklist_filters_chrome_and_card_backs():
    assert is_blacklisted("Shoob Logo")
    assert is_blacklisted("footer")
    assert is_blacklisted("Rem", "https://cdn.shoob.gg/card_back.png")
    assert not is_blacklisted("Rem", "https://cdn.shoob.gg/images/cards/rem.webp")


def test_image_anchor_strategy_skips_logo():
    html = listing_html([("rem", "Rem")])
    items = image_anchor_strategy(doc(html))
    assert [i.display_name for i in items] == ["Rem"]


def test_missing_alt_becomes_unknown():
    html = '<html><body><a href="/cards/info/x"><img src="/img/x.webp"></a></body></html>'
    items = card_link_strategy(doc(html))
    assert items[0].display_name == "Unknown"
    assert items[0].identity == "https://shoob.gg/img/x.webp"


def test_no_results_marker():
    assert has_no_results_marker(doc(END_PAGE))
    assert not has_no_results_marker(doc("<html><body><div>loading...</div></body></html>"))


def test_browser_challenge_detection():
    assert looks_like_browser_challenge("<title>Just a moment...</title>")
    assert not looks_like_browser_challenge("<html><body>cards</body></html>")
    assert not looks_like_browser_challenge("")


def test_category_from_breadcrumb_position_three():
    page = doc(detail_html("Demon Slayer", "Mell", "Tanjiro"), "https://shoob.gg/cards/info/t")
    assert extract_category(page) == "Demon Slayer"


def test_category_falls_back_to_second_to_last():
    html = (
        '<html><body><ol class="breadcrumb-new">'
        '<li itemprop="itemListElement"><span itemprop="name">Cards</span></li>'
        '<li itemprop="itemListElement"><span itemprop="name">Naruto</span></li>'
        '<li itemprop="itemListElement"><span itemprop="name">Itachi</span></li>'
        "</ol></body></html>"
    )
    assert extract_category(doc(html)) == "Naruto"


def test_category_missing():
    assert extract_category(doc("<html><body><p>nothing</p></body></html>")) == ""


def test_attribution_from_labelled_block():
    page = doc(detail_html("Naruto", "Kaito  Arts", "Itachi"))
    assert extract_attribution(page) == "Kaito Arts"


def test_attribution_falls_back_to_profile_link():
    html = (
        "<html><body>"
        '<a href="/u/1">See the Maker</a>'
        '<a href="/u/2">Pixel Sage</a>'
        "</body></html>"
    )
    assert extract_attribution(doc(html)) == "Pixel Sage"


def test_attribution_falls_back_to_label_pattern():
    html = "<html><body><p>Creator: Lune</p></body></html>"
    assert extract_attribution(doc(html)) == "Lune"


def test_detail_ready_needs_both_fields():
    assert detail_ready(doc(detail_html("Naruto", "Mell")))
    assert not detail_ready(doc(detail_html("Naruto", None)))
    assert not detail_ready(doc('<html><body><a href="/u/1">Mell</a></body></html>'))


def test_no_strategies_is_an_error():
    with pytest.raises(ExtractionAmbiguous):
        select_best(doc("<html></html>"), [])
