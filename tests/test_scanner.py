import pytest

from cardcrawler.errors import NetworkDown
from cardcrawler.models import WorkCoordinate
from cardcrawler.scanner import ListPageScanner

from conftest import END_PAGE, FakePool, FakeSession, list_url


def scanner(tmp_path=None, sleeps=None, attempts=3):
    return ListPageScanner(
        url_for=lambda c: list_url(c.partition, c.page_index),
        attempts=attempts,
        backoff_seconds=5,
        diagnostics_dir=tmp_path,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
    )


def test_scan_returns_candidates(site):
    site.add_listing("1", 1, [("rem", "Rem"), ("ram", "Ram"), ("rem", "Rem")])
    result = scanner().scan(WorkCoordinate("1", 1), FakeSession(site))

    assert not result.is_partition_end
    assert [i.display_name for i in result.items] == ["Rem", "Ram"]
    assert result.strategy == "card_link_strategy"


def test_scan_detects_partition_end(site):
    site.add(list_url("2", 9), END_PAGE)
    result = scanner().scan(WorkCoordinate("2", 9), FakeSession(site))

    assert result.is_partition_end
    assert result.items == []
    assert not result.is_transient_failure


def test_empty_page_is_transient_and_captures_diagnostic(site, tmp_path):
    sleeps = []
    pool = FakePool(site)
    result = scanner(tmp_path, sleeps).scan_with_retry(WorkCoordinate("1", 7), pool)

    assert result.is_transient_failure
    assert site.visit_count(list_url("1", 7)) == 3
    assert sleeps == [5.0, 5.0]
    assert (tmp_path / "error-1-p7.html").exists()
    assert pool.active == 0


def test_retry_recovers_after_site_error(site):
    site.add_listing("1", 1, [("rem", "Rem")])
    site.fail(list_url("1", 1), "timeout after 60s")
    pool = FakePool(site)
    result = scanner().scan_with_retry(WorkCoordinate("1", 1), pool)

    assert len(result.items) == 1
    assert pool.discarded == 1


def test_transport_failure_raises_network_down(site):
    site.fail(list_url("1", 1), "net::ERR_INTERNET_DISCONNECTED")
    pool = FakePool(site)
    with pytest.raises(NetworkDown):
        scanner().scan_with_retry(WorkCoordinate("1", 1), pool)
    assert pool.active == 0
