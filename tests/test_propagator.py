"""Unit tests for the state propagator.

Covers group on/off derivation, the all-lights pseudo-group, scene
propagation modes, batching, de-duplication and optimistic overlays.
"""

from dataclasses import replace

import pytest

from custom_components.cocohue.models import BridgeOptions, EntityType, ScenePropagation, UpdateSource
from custom_components.cocohue.payloads import parse_snapshot
from custom_components.cocohue.propagator import StatePropagator


def _of(events, entity_type, entity_id=None):
    return [
        state
        for t, i, state in events
        if t is entity_type and (entity_id is None or i == entity_id)
    ]


class TestGroupDerivation:
    """Tests for group on/off derived from member lights"""

    def test_snapshot_ignores_bridge_group_state(self, populated, cache):
        """Group 2 reports on in its action but none of its lights are on"""
        assert cache.get(EntityType.GROUP, "2").on is False
        assert cache.get(EntityType.GROUP, "1").on is True

    def test_unknown_member_is_skipped(self, populated, cache):
        """Group 2 lists light 99 which does not exist"""
        populated.apply_delta(EntityType.LIGHT, "3", {"on": True})
        assert cache.get(EntityType.GROUP, "2").on is True

    def test_toggle_member_emits_one_group_event_per_change(self, populated, events):
        """Light 3 on then off yields exactly one group 2 event at each step"""
        populated.apply_delta(EntityType.LIGHT, "3", {"on": True})
        group_events = _of(events, EntityType.GROUP, "2")
        assert [g.on for g in group_events] == [True]

        events.clear()
        populated.apply_delta(EntityType.LIGHT, "3", {"on": False})
        group_events = _of(events, EntityType.GROUP, "2")
        assert [g.on for g in group_events] == [False]

    def test_no_group_event_when_aggregate_unchanged(self, populated, events):
        """Group 1 is already on because of light 1"""
        populated.apply_delta(EntityType.LIGHT, "2", {"on": True})
        assert _of(events, EntityType.GROUP, "1") == []
        assert len(_of(events, EntityType.LIGHT, "2")) == 1

    def test_last_member_off_turns_group_off(self, populated, cache, events):
        populated.apply_delta(EntityType.LIGHT, "1", {"on": False})
        assert [g.on for g in _of(events, EntityType.GROUP, "1")] == [False]
        assert cache.get(EntityType.GROUP, "1").on is False

    def test_group_push_keeps_derived_on(self, populated, cache):
        """A grouped_light delta updates level but never the on state"""
        populated.apply_delta(EntityType.GROUP, "2", {"on": True, "brightness": 77})
        group = cache.get(EntityType.GROUP, "2")
        assert group.brightness == 77
        assert group.on is False


class TestAllLightsGroup:
    """Tests for the all-lights pseudo-group"""

    def test_all_lights_follows_every_light(self, populated, cache):
        assert cache.get(EntityType.GROUP, "0").on is True
        populated.apply_delta(EntityType.LIGHT, "1", {"on": False})
        assert cache.get(EntityType.GROUP, "0").on is False
        populated.apply_delta(EntityType.LIGHT, "3", {"on": True})
        assert cache.get(EntityType.GROUP, "0").on is True

    def test_all_lights_includes_unassigned_light(self, populated, cache, lights_payload, options):
        """Light 4 belongs to no explicit group but still counts"""
        payload = {k: dict(v, state=dict(v["state"], on=False)) for k, v in lights_payload.items()}
        payload["4"] = {"name": "Porch", "type": "Dimmable light", "state": {"on": True, "bri": 10}}
        populated.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, payload, options))

        assert cache.get(EntityType.GROUP, "1").on is False
        assert cache.get(EntityType.GROUP, "2").on is False
        assert cache.get(EntityType.GROUP, "0").on is True

    def test_all_lights_command_reaches_every_light(self, populated, cache):
        populated.apply_command(EntityType.GROUP, "0", {"on": True})
        for light_id in ("1", "2", "3"):
            assert cache.get(EntityType.LIGHT, light_id).on is True
        assert cache.get(EntityType.GROUP, "2").on is True


class TestLastChangedWins:
    """Tests for copying a member's colour and level onto its groups"""

    def test_member_level_copied_to_groups(self, populated, cache):
        populated.apply_delta(
            EntityType.LIGHT, "1", {"brightness": 42, "color_temp": 400, "color_mode": "ct"}
        )
        for group_id in ("1", "0"):
            group = cache.get(EntityType.GROUP, group_id)
            assert group.brightness == 42
            assert group.color_temp == 400
        assert cache.get(EntityType.GROUP, "2").brightness == 254

    def test_on_only_change_leaves_group_level(self, populated, cache):
        before = cache.get(EntityType.GROUP, "1").brightness
        populated.apply_delta(EntityType.LIGHT, "2", {"on": True})
        assert cache.get(EntityType.GROUP, "1").brightness == before


class TestScenes:
    """Tests for inferred scene activation"""

    def test_activation_turns_off_siblings_only(self, populated, events):
        populated.apply_command(EntityType.SCENE, "abc", {"active": True})
        populated.apply_command(EntityType.SCENE, "ghi", {"active": True})
        events.clear()

        populated.apply_command(EntityType.SCENE, "def", {"active": True})

        assert [s.active for s in _of(events, EntityType.SCENE, "def")] == [True]
        assert [s.active for s in _of(events, EntityType.SCENE, "abc")] == [False]
        # Different group, untouched
        assert _of(events, EntityType.SCENE, "ghi") == []

    @pytest.mark.parametrize("mode", [ScenePropagation.NONE, ScenePropagation.AUTO_OFF])
    def test_modes_that_leave_siblings_active(self, mode, cache, events, scenes_payload):
        opts = BridgeOptions(scene_propagation=mode)
        prop = StatePropagator(cache, opts)
        prop.add_listener(lambda t, i, s: events.append((t, i, s)))
        prop.apply_snapshot(EntityType.SCENE, parse_snapshot(EntityType.SCENE, scenes_payload, opts))

        prop.apply_command(EntityType.SCENE, "abc", {"active": True})
        prop.apply_command(EntityType.SCENE, "def", {"active": True})

        assert cache.get(EntityType.SCENE, "abc").active is True
        assert cache.get(EntityType.SCENE, "def").active is True

    def test_all_scenes_off_reaches_other_groups(self, cache, events, scenes_payload):
        opts = BridgeOptions(scene_propagation=ScenePropagation.ALL_SCENES_OFF, include_ungrouped_scenes=True)
        prop = StatePropagator(cache, opts)
        prop.add_listener(lambda t, i, s: events.append((t, i, s)))
        prop.apply_snapshot(EntityType.SCENE, parse_snapshot(EntityType.SCENE, scenes_payload, opts))
        for scene_id in ("abc", "ghi", "xyz"):
            prop.apply_command(EntityType.SCENE, scene_id, {"active": True})

        prop.apply_command(EntityType.SCENE, "def", {"active": True})

        assert cache.get(EntityType.SCENE, "def").active is True
        assert [cache.get(EntityType.SCENE, i).active for i in ("abc", "ghi", "xyz")] == [False] * 3

    def test_set_scene_active_without_command(self, populated, cache, events):
        populated.apply_command(EntityType.SCENE, "abc", {"active": True})
        events.clear()

        populated.set_scene_active("abc", False)

        assert cache.get(EntityType.SCENE, "abc").active is False
        assert [s.active for s in _of(events, EntityType.SCENE, "abc")] == [False]

    def test_ungrouped_scene_never_deactivated(self, cache, events, lights_payload, groups_payload, scenes_payload):
        opts = BridgeOptions(include_ungrouped_scenes=True)
        prop = StatePropagator(cache, opts)
        prop.add_listener(lambda t, i, s: events.append((t, i, s)))
        for entity_type, payload in (
            (EntityType.LIGHT, lights_payload),
            (EntityType.GROUP, groups_payload),
            (EntityType.SCENE, scenes_payload),
        ):
            prop.apply_snapshot(entity_type, parse_snapshot(entity_type, payload, opts))

        prop.apply_command(EntityType.SCENE, "xyz", {"active": True})
        prop.apply_command(EntityType.SCENE, "abc", {"active": True})

        assert cache.get(EntityType.SCENE, "xyz").active is True
        assert [s.active for s in _of(events, EntityType.SCENE, "xyz")] == [True]

    def test_group_off_marks_its_scenes_inactive(self, populated, cache):
        populated.apply_command(EntityType.SCENE, "abc", {"active": True})
        populated.apply_command(EntityType.GROUP, "1", {"on": False})
        assert cache.get(EntityType.SCENE, "abc").active is False

    def test_group_off_keeps_scenes_when_option_disabled(self, populated, cache):
        populated.options = replace(populated.options, scenes_off_with_group=False)
        populated.apply_command(EntityType.SCENE, "abc", {"active": True})
        populated.apply_command(EntityType.GROUP, "1", {"on": False})
        assert cache.get(EntityType.SCENE, "abc").active is True

    def test_scene_activity_survives_snapshot(self, populated, cache, events, scenes_payload, options):
        populated.apply_command(EntityType.SCENE, "abc", {"active": True})
        events.clear()
        populated.apply_snapshot(EntityType.SCENE, parse_snapshot(EntityType.SCENE, scenes_payload, options))
        assert cache.get(EntityType.SCENE, "abc").active is True
        assert events == []

    def test_push_scene_status(self, populated, cache):
        populated.apply_command(EntityType.SCENE, "abc", {"active": True})
        populated.apply_delta(EntityType.SCENE, "def", {"active": True}, UpdateSource.PUSH)
        assert cache.get(EntityType.SCENE, "def").active is True
        assert cache.get(EntityType.SCENE, "abc").active is False


class TestDeduplication:
    """Tests for suppression of repeated identical states"""

    def test_identical_snapshot_twice(self, populated, events, lights_payload, options):
        records = parse_snapshot(EntityType.LIGHT, lights_payload, options)
        assert populated.apply_snapshot(EntityType.LIGHT, records) == 0
        assert populated.apply_snapshot(EntityType.LIGHT, records) == 0
        assert events == []

    def test_identical_delta_twice(self, populated, events):
        first = populated.apply_delta(EntityType.LIGHT, "3", {"on": True, "brightness": 5})
        second = populated.apply_delta(EntityType.LIGHT, "3", {"on": True, "brightness": 5})
        assert first > 0
        assert second == 0

    def test_removed_entity_emits_again_when_readded(self, populated, events, lights_payload, options):
        trimmed = {k: v for k, v in lights_payload.items() if k != "3"}
        populated.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, trimmed, options))
        events.clear()
        populated.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, lights_payload, options))
        assert len(_of(events, EntityType.LIGHT, "3")) == 1

    def test_unknown_entity_delta_ignored(self, populated, events):
        assert populated.apply_delta(EntityType.LIGHT, "42", {"on": True}) == 0
        assert events == []


class TestBatch:
    """Tests for batched fan-out"""

    def test_group_emitted_once_with_final_state(self, populated, cache, events):
        with populated.batch():
            populated.apply_delta(EntityType.GROUP, "1", {"brightness": 100})
            populated.apply_delta(EntityType.LIGHT, "1", {"brightness": 150})
            assert events == []

        assert [g.brightness for g in _of(events, EntityType.GROUP, "1")] == [150]
        assert [l.brightness for l in _of(events, EntityType.LIGHT, "1")] == [150]

    def test_change_reverted_inside_batch_is_silent(self, populated, events):
        with populated.batch():
            populated.apply_delta(EntityType.LIGHT, "3", {"on": True})
            populated.apply_delta(EntityType.LIGHT, "3", {"on": False})

        assert events == []

    def test_nested_batch_flushes_at_outer_exit(self, populated, events):
        with populated.batch():
            with populated.batch():
                populated.apply_delta(EntityType.LIGHT, "3", {"on": True})
            assert events == []

        assert [l.on for l in _of(events, EntityType.LIGHT, "3")] == [True]


class TestOptimisticUpdates:
    """Tests for command overlays"""

    def test_command_visible_immediately(self, populated, cache, events):
        populated.apply_command(EntityType.LIGHT, "2", {"on": True, "brightness": 100})
        light = cache.get(EntityType.LIGHT, "2")
        assert light.on is True
        assert light.brightness == 100
        assert _of(events, EntityType.LIGHT, "2")[-1] == light

    def test_authoritative_update_supersedes_overlay(self, populated, cache):
        populated.apply_command(EntityType.LIGHT, "2", {"on": True, "brightness": 100})
        populated.apply_delta(EntityType.LIGHT, "2", {"brightness": 50}, UpdateSource.PUSH)
        light = cache.get(EntityType.LIGHT, "2")
        # Not merged: the overlay's on=True is gone with it
        assert light.on is False
        assert light.brightness == 50
        assert cache.pending(EntityType.LIGHT, "2") is None

    def test_poll_supersedes_overlay(self, populated, cache, lights_payload, options):
        populated.apply_command(EntityType.LIGHT, "1", {"on": False})
        assert cache.get(EntityType.GROUP, "1").on is False
        populated.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, lights_payload, options))
        assert cache.get(EntityType.LIGHT, "1").on is True
        assert cache.get(EntityType.GROUP, "1").on is True

    def test_group_command_updates_members(self, populated, cache):
        populated.apply_command(EntityType.GROUP, "1", {"on": True, "brightness": 10})
        for light_id in ("1", "2"):
            light = cache.get(EntityType.LIGHT, light_id)
            assert light.on is True
            assert light.brightness == 10
        assert cache.get(EntityType.GROUP, "1").brightness == 10
        assert cache.get(EntityType.LIGHT, "3").on is False

    def test_command_source_routes_to_command(self, populated, cache):
        populated.apply_delta(EntityType.LIGHT, "3", {"on": True}, UpdateSource.COMMAND)
        assert cache.pending(EntityType.LIGHT, "3") is not None


class TestListeners:
    """Tests for downstream fan-out failures"""

    def test_failing_listener_does_not_stop_fan_out(self, cache, options, lights_payload, groups_payload):
        seen = []

        def _gone(entity_type, entity_id, state):
            raise LookupError(entity_id)

        def _broken(entity_type, entity_id, state):
            raise RuntimeError("boom")

        prop = StatePropagator(cache, options)
        prop.add_listener(_gone)
        prop.add_listener(_broken)
        prop.add_listener(lambda t, i, s: seen.append(i))

        prop.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, lights_payload, options))

        assert sorted(seen) == ["1", "2", "3"]

    def test_remove_listener(self, cache, options, lights_payload):
        seen = []
        prop = StatePropagator(cache, options)
        remove = prop.add_listener(lambda t, i, s: seen.append(i))
        remove()
        prop.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, lights_payload, options))
        assert seen == []


@pytest.mark.parametrize("light_id", ["1", "2"])
def test_reverse_index_lists_owning_groups(populated, cache, light_id):
    assert cache.groups_for_light(light_id) == {"1"}
