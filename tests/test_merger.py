from cardcrawler.merger import Merger
from cardcrawler.models import UNRESOLVED, CrawlState, Record, WorkCoordinate


def rec(identity, name="Rem", category="Re:Zero", page=1, partition="1"):
    return Record(
        identity=identity,
        detail_ref=f"https://shoob.gg/cards/info/{identity}",
        display_name=name,
        category=category,
        attribution_name="Mell",
        composite_description=f"{name} from {category}",
        partition=partition,
        page_index=page,
    )


def test_duplicates_collapsed_at_load_preferring_resolved():
    state = CrawlState(records=[rec("a", category=UNRESOLVED), rec("b"), rec("a")])
    merger = Merger(state)

    assert [r.identity for r in state.records] == ["a", "b"]
    assert state.records[0].category == "Re:Zero"
    assert merger.is_known("a")


def test_merge_appends_only_new_identities():
    state = CrawlState(records=[rec("a")])
    merger = Merger(state)

    added = merger.merge([rec("a", name="Other"), rec("b"), rec("b")])

    assert [r.identity for r in added] == ["b"]
    assert [r.identity for r in state.records] == ["a", "b"]
    assert state.records[0].display_name == "Rem"


def test_unresolved_record_is_not_known_and_gets_upgraded():
    state = CrawlState()
    merger = Merger(state)
    merger.merge([rec("a", category=UNRESOLVED)])
    assert not merger.is_known("a")

    added = merger.merge([rec("a", category="Re:Zero")])

    assert len(added) == 1
    assert len(state.records) == 1
    assert merger.is_known("a")
    assert state.records[0].category == "Re:Zero"


def test_backfill_uses_resolved_sibling_with_same_name():
    state = CrawlState(
        records=[
            rec("a", name="Rem", category="Re:Zero"),
            rec("b", name="REM", category=UNRESOLVED),
            rec("c", name="Ram", category=UNRESOLVED),
        ]
    )
    merger = Merger(state)

    assert merger.backfill_categories() == 1
    assert state.records[1].category == "Re:Zero"
    assert state.records[1].composite_description == "REM from Re:Zero"
    assert merger.is_known("b")
    assert not merger.is_known("c")


def test_sweep_removes_unresolved_and_reopens_pages():
    state = CrawlState(
        records=[rec("a", page=1), rec("b", category=UNRESOLVED, page=2), rec("c", category="unknown anime", page=3)],
        completed={WorkCoordinate("1", 1), WorkCoordinate("1", 2), WorkCoordinate("1", 3)},
    )
    merger = Merger(state)

    reopened = merger.sweep_unresolved()

    assert reopened == {WorkCoordinate("1", 2), WorkCoordinate("1", 3)}
    assert state.completed == {WorkCoordinate("1", 1)}
    assert [r.identity for r in state.records] == ["a"]


def test_mark_complete_is_idempotent():
    state = CrawlState()
    merger = Merger(state)
    assert merger.mark_complete(WorkCoordinate("S", 1))
    assert not merger.mark_complete(WorkCoordinate("S", 1))
    assert merger.is_complete(WorkCoordinate("S", 1))
