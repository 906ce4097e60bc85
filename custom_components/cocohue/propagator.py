"""Derivation and fan-out of entity state across lights, groups and scenes."""
from __future__ import annotations

import contextlib
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from .cache import EntityCache
from .const import ALL_LIGHTS_GROUP_ID
from .models import (
    LIGHT_COLOR_LEVEL_FIELDS,
    BridgeOptions,
    EntityRecord,
    EntityType,
    GroupRecord,
    LightRecord,
    SceneRecord,
    ScenePropagation,
    UpdateSource,
    apply_delta,
)

_LOGGER = logging.getLogger(__name__)

Listener = Callable[[EntityType, str, EntityRecord], None]


class StatePropagator:
    """Apply one update to the cache and emit every dependent entity update.

    Group colour and level follow "last changed wins": whenever a member light
    changes colour or level, those values are copied onto every group that
    contains it. The bridge does not define an aggregate colour for a group,
    so this is a display policy rather than a derived truth. Group on/off is
    always the OR of the members' current on states.

    Every emission is compared with the last state emitted for that entity and
    suppressed when equal, so re-delivered snapshots and deltas are no-ops.
    Inside ``batch()`` listeners are held back and each entity is emitted at
    most once, with its final state.
    All methods return the number of update events emitted.
    """

    def __init__(self, cache: EntityCache, options: BridgeOptions | None = None) -> None:
        self._cache = cache
        self.options = options or BridgeOptions()
        self._emitted: Dict[Tuple[EntityType, str], EntityRecord] = {}
        self._listeners: List[Listener] = []
        # Entity -> state emitted before the open batch, or None outside a batch
        self._held: Optional[Dict[Tuple[EntityType, str], Optional[EntityRecord]]] = None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def emitted_state(self, entity_type: EntityType, entity_id: str) -> EntityRecord | None:
        return self._emitted.get((entity_type, entity_id))

    @contextlib.contextmanager
    def batch(self) -> Iterator[None]:
        """Apply several updates as one: listeners see only the final states."""
        if self._held is not None:
            yield
            return
        self._held = {}
        try:
            yield
        finally:
            held, self._held = self._held, None
            for key, before in held.items():
                state = self._emitted.get(key)
                if state is not None and state != before:
                    self._notify(key[0], key[1], state)

    def set_scene_active(self, scene_id: str, active: bool) -> int:
        """Mark a scene (in)active without sending anything to the bridge."""
        return self._set_scene_active(scene_id, active)

    # ------------------------------------------------------------------
    # Authoritative input
    # ------------------------------------------------------------------

    def apply_snapshot(self, entity_type: EntityType, records: Mapping[str, EntityRecord]) -> int:
        """Replace one type's cache with a full snapshot and fan out the differences."""
        if entity_type is EntityType.SCENE:
            records = self._carry_scene_activity(records)
        before = self._cache.all(entity_type) or {}
        _changed, removed = self._cache.replace_all(entity_type, records)
        for entity_id in removed:
            self._emitted.pop((entity_type, entity_id), None)

        emitted = 0
        if entity_type is EntityType.LIGHT:
            for light_id in records:
                light = self._cache.get(EntityType.LIGHT, light_id)
                emitted += self._emit(EntityType.LIGHT, light_id, light)
                attrs = _changed_color_level(before.get(light_id), light)
                if attrs:
                    self._copy_to_groups(light_id, attrs)
            emitted += self._recompute_groups(self._cache.ids(EntityType.GROUP))
        elif entity_type is EntityType.GROUP:
            emitted += self._recompute_groups(self._cache.ids(EntityType.GROUP))
        else:
            for entity_id in records:
                emitted += self._emit(entity_type, entity_id, self._cache.get(entity_type, entity_id))
        _LOGGER.debug(
            "Applied %s snapshot: %s records, %s removed, %s events",
            entity_type.value,
            len(records),
            len(removed),
            emitted,
        )
        return emitted

    def apply_delta(
        self,
        entity_type: EntityType,
        entity_id: str,
        delta: Mapping[str, Any],
        source: UpdateSource = UpdateSource.PUSH,
    ) -> int:
        """Patch one entity from a push (or single-entity poll) delta."""
        if source is UpdateSource.COMMAND:
            return self.apply_command(entity_type, entity_id, delta)
        record = self._cache.authoritative(entity_type, entity_id)
        if record is None:
            _LOGGER.debug("Ignoring %s delta for unknown %s/%s", source.value, entity_type.value, entity_id)
            return 0

        if entity_type is EntityType.LIGHT:
            before = self._cache.get(EntityType.LIGHT, entity_id)
            light = apply_delta(record, delta)
            self._cache.put(EntityType.LIGHT, entity_id, light)
            emitted = self._emit(EntityType.LIGHT, entity_id, light)
            attrs = _changed_color_level(before, light, only=delta.keys())
            return emitted + self._propagate_light(entity_id, attrs)

        if entity_type is EntityType.GROUP:
            # "on" is derived; everything else is the bridge's word
            changes = {k: v for k, v in delta.items() if k != "on"}
            self._cache.put(EntityType.GROUP, entity_id, apply_delta(record, changes))
            return self._recompute_groups((entity_id,))

        if entity_type is EntityType.SCENE:
            return self._set_scene_active(entity_id, bool(delta.get("active")))

        updated = apply_delta(record, delta)
        self._cache.put(entity_type, entity_id, updated)
        return self._emit(entity_type, entity_id, updated)

    # ------------------------------------------------------------------
    # Optimistic input
    # ------------------------------------------------------------------

    def apply_command(self, entity_type: EntityType, entity_id: str, delta: Mapping[str, Any]) -> int:
        """Apply a local command optimistically, before it reaches the bridge."""
        if entity_type is EntityType.LIGHT:
            light = self._cache.apply_overlay(EntityType.LIGHT, entity_id, delta)
            if light is None:
                return 0
            emitted = self._emit(EntityType.LIGHT, entity_id, light)
            attrs = {k: getattr(light, k) for k in delta if k in LIGHT_COLOR_LEVEL_FIELDS}
            return emitted + self._propagate_light(entity_id, attrs)

        if entity_type is EntityType.GROUP:
            return self._command_group(entity_id, delta)

        if entity_type is EntityType.SCENE:
            if "active" not in delta:
                return 0
            return self._set_scene_active(entity_id, bool(delta["active"]))

        updated = self._cache.apply_overlay(entity_type, entity_id, delta)
        if updated is None:
            return 0
        return self._emit(entity_type, entity_id, updated)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _propagate_light(self, light_id: str, attrs: Mapping[str, Any]) -> int:
        group_ids = self._groups_containing(light_id)
        if attrs:
            self._copy_to_groups(light_id, attrs)
        return self._recompute_groups(group_ids)

    def _groups_containing(self, light_id: str) -> Set[str]:
        group_ids = self._cache.groups_for_light(light_id)
        if self._cache.authoritative(EntityType.GROUP, ALL_LIGHTS_GROUP_ID) is not None:
            group_ids.add(ALL_LIGHTS_GROUP_ID)
        return group_ids

    def _copy_to_groups(self, light_id: str, attrs: Mapping[str, Any]) -> None:
        for group_id in self._groups_containing(light_id):
            self._cache.update_derived(EntityType.GROUP, group_id, attrs)

    def _command_group(self, group_id: str, delta: Mapping[str, Any]) -> int:
        group = self._cache.authoritative(EntityType.GROUP, group_id)
        if not isinstance(group, GroupRecord):
            return 0
        light_delta = {k: v for k, v in delta.items() if k == "on" or k in LIGHT_COLOR_LEVEL_FIELDS}
        attrs = {k: v for k, v in light_delta.items() if k != "on"}

        if group.is_all_lights:
            members = list(self._cache.ids(EntityType.LIGHT))
            affected: Set[str] = set(self._cache.ids(EntityType.GROUP))
            targets: Iterable[str] = affected
        else:
            members = [m for m in group.lights if self._cache.get(EntityType.LIGHT, m) is not None]
            affected = {group_id}
            targets = (group_id,)

        emitted = 0
        if light_delta:
            for light_id in members:
                light = self._cache.apply_overlay(EntityType.LIGHT, light_id, light_delta)
                emitted += self._emit(EntityType.LIGHT, light_id, light)
                affected |= self._groups_containing(light_id)
        if attrs:
            for target in targets:
                self._cache.update_derived(EntityType.GROUP, target, attrs)
        return emitted + self._recompute_groups(affected)

    def _derive_group_on(self, group: GroupRecord) -> bool:
        if group.is_all_lights:
            lights = self._cache.all(EntityType.LIGHT) or {}
            return any(light.on for light in lights.values())
        for light_id in group.lights:
            light = self._cache.get(EntityType.LIGHT, light_id)
            if isinstance(light, LightRecord) and light.on:
                return True
        return False

    def _recompute_groups(self, group_ids: Iterable[str]) -> int:
        emitted = 0
        for group_id in sorted(group_ids):
            group = self._cache.authoritative(EntityType.GROUP, group_id)
            if not isinstance(group, GroupRecord):
                continue
            on = self._derive_group_on(group)
            self._cache.update_derived(EntityType.GROUP, group_id, {"on": on})
            previous = self._emitted.get((EntityType.GROUP, group_id))
            emitted += self._emit(EntityType.GROUP, group_id, self._cache.get(EntityType.GROUP, group_id))
            if (
                self.options.scenes_off_with_group
                and isinstance(previous, GroupRecord)
                and previous.on
                and not on
            ):
                emitted += self._scenes_off_for_group(group_id)
        return emitted

    def _set_scene_active(self, scene_id: str, active: bool) -> int:
        scene = self._cache.get(EntityType.SCENE, scene_id)
        if not isinstance(scene, SceneRecord):
            return 0
        self._cache.update_derived(EntityType.SCENE, scene_id, {"active": active})
        emitted = self._emit(EntityType.SCENE, scene_id, self._cache.get(EntityType.SCENE, scene_id))
        if not active:
            return emitted
        mode = self.options.scene_propagation
        if mode is ScenePropagation.GROUP_SCENES_OFF:
            emitted += self._deactivate_other_scenes(scene, same_group=True)
        elif mode is ScenePropagation.ALL_SCENES_OFF:
            emitted += self._deactivate_other_scenes(scene, same_group=False)
        return emitted

    def _deactivate_other_scenes(self, scene: SceneRecord, same_group: bool) -> int:
        # A scene without an owning group has no siblings
        if same_group and scene.group is None:
            return 0
        emitted = 0
        for other_id, other in (self._cache.all(EntityType.SCENE) or {}).items():
            if other_id == scene.id or not isinstance(other, SceneRecord):
                continue
            if same_group and other.group != scene.group:
                continue
            self._cache.update_derived(EntityType.SCENE, other_id, {"active": False})
            emitted += self._emit(EntityType.SCENE, other_id, self._cache.get(EntityType.SCENE, other_id))
        return emitted

    def _scenes_off_for_group(self, group_id: str) -> int:
        emitted = 0
        for scene_id, scene in (self._cache.all(EntityType.SCENE) or {}).items():
            if not isinstance(scene, SceneRecord) or scene.group is None:
                continue
            if group_id != ALL_LIGHTS_GROUP_ID and scene.group != group_id:
                continue
            self._cache.update_derived(EntityType.SCENE, scene_id, {"active": False})
            emitted += self._emit(EntityType.SCENE, scene_id, self._cache.get(EntityType.SCENE, scene_id))
        return emitted

    def _carry_scene_activity(self, records: Mapping[str, EntityRecord]) -> Dict[str, EntityRecord]:
        carried: Dict[str, EntityRecord] = {}
        for scene_id, record in records.items():
            previous = self._cache.authoritative(EntityType.SCENE, scene_id)
            if isinstance(previous, SceneRecord) and isinstance(record, SceneRecord):
                record = replace(record, active=previous.active)
            carried[scene_id] = record
        return carried

    def _emit(self, entity_type: EntityType, entity_id: str, state: EntityRecord | None) -> int:
        if state is None:
            return 0
        key = (entity_type, entity_id)
        if self._emitted.get(key) == state:
            return 0
        if self._held is not None:
            self._held.setdefault(key, self._emitted.get(key))
            self._emitted[key] = state
            return 1
        self._emitted[key] = state
        self._notify(entity_type, entity_id, state)
        return 1

    def _notify(self, entity_type: EntityType, entity_id: str, state: EntityRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(entity_type, entity_id, state)
            except LookupError:
                _LOGGER.warning("No representation for %s/%s; skipping", entity_type.value, entity_id)
            except Exception:
                _LOGGER.exception("Update listener failed for %s/%s", entity_type.value, entity_id)


def _changed_color_level(
    before: EntityRecord | None, after: EntityRecord | None, only: Iterable[str] | None = None
) -> Dict[str, Any]:
    if not isinstance(after, LightRecord):
        return {}
    keys = [k for k in LIGHT_COLOR_LEVEL_FIELDS if only is None or k in only]
    if only is not None:
        # A delta names exactly what changed, even if equal to the old value
        return {k: getattr(after, k) for k in keys}
    if not isinstance(before, LightRecord):
        return {}
    return {k: getattr(after, k) for k in keys if getattr(before, k) != getattr(after, k)}
