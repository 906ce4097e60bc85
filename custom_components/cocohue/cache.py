"""Per-bridge entity cache with optimistic overlays."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from .models import (
    EntityRecord,
    EntityType,
    GroupRecord,
    PendingCommandState,
    apply_delta,
)

_LOGGER = logging.getLogger(__name__)


class EntityCache:
    """Typed, keyed storage for everything one bridge exposes.

    Each entity type is either unpopulated (reads return ``None``) or fully
    populated from a complete snapshot. Pending command overlays sit on top of
    the authoritative records and are dropped by the next authoritative write.
    """

    def __init__(
        self,
        on_cleared: Callable[[EntityType], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._records: Dict[EntityType, Dict[str, EntityRecord]] = {t: {} for t in EntityType}
        self._populated: Set[EntityType] = set()
        self._overlays: Dict[Tuple[EntityType, str], PendingCommandState] = {}
        # light id -> ids of explicit groups containing it
        self._light_groups: Dict[str, Set[str]] = {}
        self._on_cleared = on_cleared
        self._clock = clock

    def is_populated(self, entity_type: EntityType) -> bool:
        return entity_type in self._populated

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[EntityRecord]:
        """Return the effective record (authoritative plus pending overlay)."""
        if entity_type not in self._populated:
            return None
        record = self._records[entity_type].get(entity_id)
        if record is None:
            return None
        overlay = self._overlays.get((entity_type, entity_id))
        if overlay is None:
            return record
        return apply_delta(record, overlay.delta)

    def authoritative(self, entity_type: EntityType, entity_id: str) -> Optional[EntityRecord]:
        if entity_type not in self._populated:
            return None
        return self._records[entity_type].get(entity_id)

    def all(self, entity_type: EntityType) -> Optional[Dict[str, EntityRecord]]:
        if entity_type not in self._populated:
            return None
        return {
            entity_id: self.get(entity_type, entity_id)
            for entity_id in self._records[entity_type]
        }

    def ids(self, entity_type: EntityType) -> Tuple[str, ...]:
        if entity_type not in self._populated:
            return ()
        return tuple(self._records[entity_type])

    def put(self, entity_type: EntityType, entity_id: str, record: EntityRecord) -> bool:
        """Authoritatively write one record; return True if the effective value changed."""
        if entity_type not in self._populated:
            _LOGGER.debug(
                "Ignoring %s/%s write before the first full refresh", entity_type.value, entity_id
            )
            return False
        before = self.get(entity_type, entity_id)
        previous = self._records[entity_type].get(entity_id)
        self._records[entity_type][entity_id] = record
        self._overlays.pop((entity_type, entity_id), None)
        if entity_type is EntityType.GROUP:
            self._reindex_group(previous, record)
        return before != record

    def replace_all(
        self, entity_type: EntityType, records: Mapping[str, EntityRecord]
    ) -> Tuple[Set[str], Set[str]]:
        """Swap in a complete snapshot for one type.

        Returns ``(changed_ids, removed_ids)`` comparing effective values.
        """
        before = self.all(entity_type) or {}
        self._records[entity_type] = dict(records)
        self._populated.add(entity_type)
        for key in [k for k in self._overlays if k[0] is entity_type]:
            del self._overlays[key]
        if entity_type is EntityType.GROUP:
            self._rebuild_group_index()
        changed = {
            entity_id
            for entity_id, record in records.items()
            if before.get(entity_id) != record
        }
        removed = set(before) - set(records)
        return changed, removed

    def update_derived(
        self, entity_type: EntityType, entity_id: str, changes: Mapping[str, Any]
    ) -> bool:
        """Patch derived fields without discarding a pending overlay."""
        record = self.authoritative(entity_type, entity_id)
        if record is None:
            return False
        updated = apply_delta(record, changes)
        if updated == record:
            return False
        self._records[entity_type][entity_id] = updated
        return True

    def apply_overlay(
        self, entity_type: EntityType, entity_id: str, delta: Mapping[str, Any]
    ) -> Optional[EntityRecord]:
        """Layer an optimistic command delta over the record; return the effective record."""
        if self.authoritative(entity_type, entity_id) is None:
            return None
        key = (entity_type, entity_id)
        pending = self._overlays.get(key)
        if pending is None:
            pending = PendingCommandState(entity_type, entity_id)
            self._overlays[key] = pending
        pending.delta.update(delta)
        pending.issued_at = self._clock()
        return self.get(entity_type, entity_id)

    def pending(self, entity_type: EntityType, entity_id: str) -> Optional[PendingCommandState]:
        return self._overlays.get((entity_type, entity_id))

    def clear(self, entity_type: EntityType) -> None:
        _LOGGER.debug("Clearing %s cache", entity_type.value)
        self._records[entity_type] = {}
        self._populated.discard(entity_type)
        for key in [k for k in self._overlays if k[0] is entity_type]:
            del self._overlays[key]
        if entity_type is EntityType.GROUP:
            self._light_groups.clear()
        if self._on_cleared is not None:
            self._on_cleared(entity_type)

    def groups_for_light(self, light_id: str) -> Set[str]:
        return set(self._light_groups.get(light_id, ()))

    def _rebuild_group_index(self) -> None:
        self._light_groups = {}
        for group in self._records[EntityType.GROUP].values():
            self._reindex_group(None, group)

    def _reindex_group(self, previous: EntityRecord | None, group: EntityRecord) -> None:
        if isinstance(previous, GroupRecord):
            for light_id in previous.lights:
                owners = self._light_groups.get(light_id)
                if owners is not None:
                    owners.discard(previous.id)
                    if not owners:
                        del self._light_groups[light_id]
        if isinstance(group, GroupRecord) and not group.is_all_lights:
            for light_id in group.lights:
                self._light_groups.setdefault(light_id, set()).add(group.id)
