import pytest

from cardcrawler.models import (
    WorkCoordinate,
    compose_description,
    normalize_attribution,
    state_from_document,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("1-12", WorkCoordinate("1", 12)),
        ("S-3", WorkCoordinate("S", 3)),
        ("7", WorkCoordinate("1", 7)),
        ("event-2024-4", WorkCoordinate("event-2024", 4)),
    ],
)
def test_coordinate_parse(raw, expected):
    assert WorkCoordinate.parse(raw) == expected


@pytest.mark.parametrize("raw", ["", "S-", "-", "abc"])
def test_coordinate_parse_rejects_garbage(raw):
    with pytest.raises(ValueError):
        WorkCoordinate.parse(raw)


def test_coordinate_key_round_trips_to_string():
    assert str(WorkCoordinate("S", 2)) == "S-2"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Official", "Anonymous"),
        ("unknown creator", "Anonymous"),
        ("Requested by Mell", "Anonymous"),
        ("", "Anonymous"),
        ("  Pixel   Sage ", "Pixel Sage"),
    ],
)
def test_normalize_attribution(raw, expected):
    assert normalize_attribution(raw) == expected


def test_compose_description():
    assert compose_description("Rem", "Re:Zero") == "Rem from Re:Zero"


def test_state_from_document_rejects_non_documents():
    with pytest.raises(ValueError):
        state_from_document("text")
    with pytest.raises(ValueError):
        state_from_document({"foo": 1})


def test_unknown_fields_survive_as_extra():
    state = state_from_document(
        {"records": [{"identity": "https://cdn/a.webp", "category": "Naruto", "id": "00001"}]}
    )
    assert state.records[0].extra == {"id": "00001"}
    assert state.records[0].to_dict()["id"] == "00001"


def test_legacy_rows_without_tier_use_default_partition():
    state = state_from_document(
        {
            "cards": [{"imageUrl": "https://cdn/a.webp", "cardName": "Rem", "animeName": "Re:Zero", "page": 3}],
            "processedPages": [3],
        },
        default_partition="S",
    )
    record = state.records[0]
    assert record.partition == "S"
    assert record.coordinate == WorkCoordinate("S", 3)
    assert state.completed == {WorkCoordinate("S", 3)}
