"""Map canonical items to and from their identities in external sources."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from .models import CanonicalMediaItem, ExternalID, SourceMapping
from .repository import MediaItemRepository

logger = logging.getLogger(__name__)

MATCHABLE_CATALOGS: tuple[str, ...] = ("imdb", "tmdb", "tvdb", "musicbrainz")


def merge_source_mapping(item: CanonicalMediaItem, mapping: SourceMapping) -> bool:
    """Attach ``mapping`` to ``item``, replacing any entry for the same source.

    Returns ``True`` when the item changed.
    """

    for index, existing in enumerate(item.source_mappings):
        if existing.source_id != mapping.source_id:
            continue
        if (
            existing.source_item_id == mapping.source_item_id
            and existing.source_type == mapping.source_type
        ):
            return False
        mappings = list(item.source_mappings)
        mappings[index] = mapping.model_copy()
        item.source_mappings = mappings
        return True
    item.source_mappings = [*item.source_mappings, mapping.model_copy()]
    return True


def merge_external_id(item: CanonicalMediaItem, external: ExternalID) -> bool:
    """Attach ``external`` to ``item`` keyed by catalog name."""

    if not external.catalog_name or not external.catalog_id:
        return False
    for index, existing in enumerate(item.external_ids):
        if existing.catalog_name != external.catalog_name:
            continue
        if existing.catalog_id == external.catalog_id:
            return False
        external_ids = list(item.external_ids)
        external_ids[index] = external.model_copy()
        item.external_ids = external_ids
        return True
    item.external_ids = [*item.external_ids, external.model_copy()]
    return True


def merge_identities(target: CanonicalMediaItem, incoming: CanonicalMediaItem) -> bool:
    """Fold every mapping and external id of ``incoming`` into ``target``."""

    changed = False
    for mapping in incoming.source_mappings:
        changed = merge_source_mapping(target, mapping) or changed
    for external in incoming.external_ids:
        changed = merge_external_id(target, external) or changed
    return changed


def normalize_identities(item: CanonicalMediaItem) -> CanonicalMediaItem:
    """Collapse duplicate source or catalog entries an adapter may have emitted.

    Later entries win, matching the replace semantics of the merge helpers.
    """

    mappings: dict[int, SourceMapping] = {}
    for mapping in item.source_mappings:
        mappings[mapping.source_id] = mapping
    externals: dict[str, ExternalID] = {}
    for external in item.external_ids:
        if external.catalog_name and external.catalog_id:
            externals[external.catalog_name] = external
    if len(mappings) != len(item.source_mappings):
        item.source_mappings = list(mappings.values())
    if len(externals) != len(item.external_ids):
        item.external_ids = list(externals.values())
    return item


class IdentityResolver:
    """Looks up canonical items by source mapping or shared catalog ids."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        catalogs: tuple[str, ...] = MATCHABLE_CATALOGS,
    ):
        self._items = MediaItemRepository(session)
        self._catalogs = catalogs

    async def resolve_canonical_id(self, source_id: int, source_item_id: str) -> int | None:
        return await self._items.resolve_id(source_id, source_item_id)

    async def find_existing(
        self, incoming: CanonicalMediaItem, source_id: int
    ) -> CanonicalMediaItem | None:
        """Return the canonical item ``incoming`` reconciles to, if any.

        The source mapping is authoritative. Otherwise an item of the same
        type sharing an approved external id is accepted, unless it already
        carries a different identity for ``source_id``.
        """

        source_item_id = incoming.source_item_id(source_id)
        if source_item_id is None:
            return None
        existing = await self._items.find_by_source_mapping(source_id, source_item_id)
        if existing is not None:
            return existing
        if not incoming.external_ids:
            return None
        candidate = await self._items.find_by_external_ids(
            incoming.type, incoming.external_ids, catalogs=self._catalogs
        )
        if candidate is None:
            return None
        current = candidate.source_item_id(source_id)
        if current is not None and current != source_item_id:
            logger.debug(
                "Ignoring external id match %s for source %s: already mapped to %s",
                candidate.id,
                source_id,
                current,
            )
            return None
        logger.debug(
            "Matched %s item %s from source %s to canonical %s via external ids",
            incoming.type,
            source_item_id,
            source_id,
            candidate.id,
        )
        return candidate
