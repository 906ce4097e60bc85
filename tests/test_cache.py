"""Unit tests for the entity cache."""

from unittest.mock import MagicMock

from custom_components.cocohue.cache import EntityCache
from custom_components.cocohue.models import EntityType, GroupRecord, LightRecord


def _lights():
    return {
        "1": LightRecord(id="1", name="Sofa", on=True, brightness=200),
        "2": LightRecord(id="2", name="Lamp", on=False, brightness=10),
    }


class TestPopulation:
    """Tests for the empty / fully populated lifecycle"""

    def test_unpopulated_reads_return_none(self):
        cache = EntityCache()
        assert cache.is_populated(EntityType.LIGHT) is False
        assert cache.get(EntityType.LIGHT, "1") is None
        assert cache.all(EntityType.LIGHT) is None
        assert cache.ids(EntityType.LIGHT) == ()

    def test_replace_all_populates(self):
        cache = EntityCache()
        changed, removed = cache.replace_all(EntityType.LIGHT, _lights())
        assert cache.is_populated(EntityType.LIGHT)
        assert changed == {"1", "2"}
        assert removed == set()
        assert cache.get(EntityType.LIGHT, "1").name == "Sofa"

    def test_replace_all_reports_removed(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        changed, removed = cache.replace_all(EntityType.LIGHT, {"1": _lights()["1"]})
        assert changed == set()
        assert removed == {"2"}
        assert cache.get(EntityType.LIGHT, "2") is None

    def test_put_before_population_is_ignored(self):
        cache = EntityCache()
        assert cache.put(EntityType.LIGHT, "1", _lights()["1"]) is False
        assert cache.is_populated(EntityType.LIGHT) is False

    def test_clear_hides_records_until_refetch(self):
        on_cleared = MagicMock()
        cache = EntityCache(on_cleared=on_cleared)
        cache.replace_all(EntityType.LIGHT, _lights())

        cache.clear(EntityType.LIGHT)

        on_cleared.assert_called_once_with(EntityType.LIGHT)
        assert cache.get(EntityType.LIGHT, "1") is None
        assert cache.all(EntityType.LIGHT) is None
        cache.replace_all(EntityType.LIGHT, _lights())
        assert cache.get(EntityType.LIGHT, "1") is not None

    def test_clear_is_per_type(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        cache.replace_all(EntityType.SCENE, {})
        cache.clear(EntityType.SCENE)
        assert cache.is_populated(EntityType.LIGHT)


class TestOverlays:
    """Tests for pending command overlays"""

    def test_overlay_applies_to_reads(self):
        clock = MagicMock(return_value=12.5)
        cache = EntityCache(clock=clock)
        cache.replace_all(EntityType.LIGHT, _lights())

        effective = cache.apply_overlay(EntityType.LIGHT, "2", {"on": True})

        assert effective.on is True
        assert cache.authoritative(EntityType.LIGHT, "2").on is False
        pending = cache.pending(EntityType.LIGHT, "2")
        assert pending.delta == {"on": True}
        assert pending.issued_at == 12.5

    def test_overlays_accumulate(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        cache.apply_overlay(EntityType.LIGHT, "2", {"on": True})
        cache.apply_overlay(EntityType.LIGHT, "2", {"brightness": 99})
        light = cache.get(EntityType.LIGHT, "2")
        assert (light.on, light.brightness) == (True, 99)

    def test_put_discards_overlay(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        cache.apply_overlay(EntityType.LIGHT, "2", {"on": True, "brightness": 99})

        cache.put(EntityType.LIGHT, "2", LightRecord(id="2", name="Lamp", on=False, brightness=50))

        assert cache.pending(EntityType.LIGHT, "2") is None
        light = cache.get(EntityType.LIGHT, "2")
        assert (light.on, light.brightness) == (False, 50)

    def test_update_derived_keeps_overlay(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        cache.apply_overlay(EntityType.LIGHT, "2", {"on": True})
        assert cache.update_derived(EntityType.LIGHT, "2", {"brightness": 7}) is True
        light = cache.get(EntityType.LIGHT, "2")
        assert (light.on, light.brightness) == (True, 7)

    def test_overlay_for_unknown_entity(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        assert cache.apply_overlay(EntityType.LIGHT, "9", {"on": True}) is None
        assert cache.pending(EntityType.LIGHT, "9") is None

    def test_unknown_delta_keys_dropped(self):
        cache = EntityCache()
        cache.replace_all(EntityType.LIGHT, _lights())
        light = cache.apply_overlay(EntityType.LIGHT, "1", {"transition": 4, "id": "7"})
        assert light == _lights()["1"]


class TestGroupIndex:
    """Tests for the light -> group reverse index"""

    def _groups(self):
        return {
            "0": GroupRecord(id="0", name="All"),
            "1": GroupRecord(id="1", name="Living", lights=("1", "2")),
            "2": GroupRecord(id="2", name="Zone", lights=("2",)),
        }

    def test_index_built_from_snapshot(self):
        cache = EntityCache()
        cache.replace_all(EntityType.GROUP, self._groups())
        assert cache.groups_for_light("1") == {"1"}
        assert cache.groups_for_light("2") == {"1", "2"}
        assert cache.groups_for_light("3") == set()

    def test_index_follows_membership_change(self):
        cache = EntityCache()
        cache.replace_all(EntityType.GROUP, self._groups())
        cache.put(EntityType.GROUP, "2", GroupRecord(id="2", name="Zone", lights=("1",)))
        assert cache.groups_for_light("2") == {"1"}
        assert cache.groups_for_light("1") == {"1", "2"}

    def test_clear_drops_index(self):
        cache = EntityCache()
        cache.replace_all(EntityType.GROUP, self._groups())
        cache.clear(EntityType.GROUP)
        assert cache.groups_for_light("2") == set()
