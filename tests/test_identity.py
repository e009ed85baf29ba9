"""Source mapping and external identifier merge behaviour."""

from __future__ import annotations

from mediasync.identity import (
    merge_external_id,
    merge_identities,
    merge_source_mapping,
    normalize_identities,
)
from mediasync.models import CanonicalMediaItem, ExternalID, MoviePayload, SourceMapping


def _item(*mappings: SourceMapping, externals: list[ExternalID] | None = None) -> CanonicalMediaItem:
    return CanonicalMediaItem(
        type="movie",
        payload=MoviePayload(title="Arrival"),
        source_mappings=list(mappings),
        external_ids=externals or [],
    )


def _mapping(source_id: int, item_id: str, source_type: str = "jellyfin") -> SourceMapping:
    return SourceMapping(source_id=source_id, source_type=source_type, source_item_id=item_id)


def test_same_source_replaces_item_id() -> None:
    item = _item(_mapping(1, "x1"))

    changed = merge_source_mapping(item, _mapping(1, "x2"))

    assert changed is True
    assert [m.source_item_id for m in item.source_mappings] == ["x2"]


def test_new_source_is_appended_in_order() -> None:
    item = _item(_mapping(1, "x1"))

    merge_source_mapping(item, _mapping(2, "y1", "emby"))

    assert [(m.source_id, m.source_item_id) for m in item.source_mappings] == [
        (1, "x1"),
        (2, "y1"),
    ]


def test_merging_twice_is_a_no_op() -> None:
    item = _item()

    assert merge_source_mapping(item, _mapping(1, "x1")) is True
    assert merge_source_mapping(item, _mapping(1, "x1")) is False
    assert len(item.source_mappings) == 1


def test_other_sources_survive_a_replacement() -> None:
    item = _item(_mapping(1, "x1"), _mapping(2, "y1", "emby"))

    merge_source_mapping(item, _mapping(2, "y2", "emby"))

    assert item.source_item_id(1) == "x1"
    assert item.source_item_id(2) == "y2"


def test_external_ids_are_keyed_by_catalog() -> None:
    item = _item(externals=[ExternalID(catalog_name="imdb", catalog_id="tt1")])

    assert merge_external_id(item, ExternalID(catalog_name="imdb", catalog_id="tt2")) is True
    assert merge_external_id(item, ExternalID(catalog_name="tmdb", catalog_id="329865")) is True
    assert merge_external_id(item, ExternalID(catalog_name="tmdb", catalog_id="329865")) is False

    assert item.external_id("imdb") == "tt2"
    assert item.external_id("tmdb") == "329865"
    assert len(item.external_ids) == 2


def test_blank_external_ids_are_ignored() -> None:
    item = _item()

    assert merge_external_id(item, ExternalID(catalog_name="imdb", catalog_id="")) is False
    assert item.external_ids == []


def test_merge_identities_folds_everything() -> None:
    target = _item(_mapping(1, "x1"))
    incoming = _item(
        _mapping(1, "x9"),
        _mapping(3, "z1", "plex"),
        externals=[ExternalID(catalog_name="imdb", catalog_id="tt2543164")],
    )

    assert merge_identities(target, incoming) is True
    assert merge_identities(target, incoming) is False
    assert target.source_item_id(1) == "x9"
    assert target.source_item_id(3) == "z1"
    assert target.external_id("imdb") == "tt2543164"


def test_normalize_collapses_duplicate_sources() -> None:
    item = _item(_mapping(1, "old"), _mapping(1, "new"))

    normalize_identities(item)

    assert [m.source_item_id for m in item.source_mappings] == ["new"]
