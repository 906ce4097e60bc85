"""Scene and Labs activator switches."""
from __future__ import annotations

from homeassistant.components.switch import SwitchEntity

from .const import DOMAIN
from .entity import CoCoHueEntity, async_track_records
from .models import ActivatorRecord, EntityType, SceneRecord


async def async_setup_entry(hass, entry, async_add_entities):
    session = hass.data[DOMAIN][entry.entry_id]["session"]

    def _factory(entity_type, entity_id, _state):
        if entity_type is EntityType.SCENE:
            return CoCoHueSceneSwitch(session, entry, entity_type, entity_id)
        return CoCoHueActivatorSwitch(session, entry, entity_type, entity_id)

    entry.async_on_unload(
        async_track_records(
            session, (EntityType.SCENE, EntityType.LABS_ACTIVATOR), _factory, async_add_entities
        )
    )


class CoCoHueSceneSwitch(CoCoHueEntity, SwitchEntity):
    """On means the scene was the last one recalled for its group.

    Turning it off turns off the scene's group (or its lights).
    """

    _attr_icon = "mdi:palette"

    @property
    def is_on(self):
        record = self.record
        return record.active if isinstance(record, SceneRecord) else False

    @property
    def extra_state_attributes(self):
        record = self.record
        if not isinstance(record, SceneRecord):
            return None
        return {"group": record.group, "type": record.scene_type}

    async def async_turn_on(self, **kwargs):
        await self._async_send({"active": True})

    async def async_turn_off(self, **kwargs):
        await self._async_send({"active": False})


class CoCoHueActivatorSwitch(CoCoHueEntity, SwitchEntity):
    _attr_icon = "mdi:flask-outline"

    @property
    def is_on(self):
        record = self.record
        return bool(record.status) if isinstance(record, ActivatorRecord) else False

    async def async_turn_on(self, **kwargs):
        await self._async_send({"status": 1})

    async def async_turn_off(self, **kwargs):
        await self._async_send({"status": 0})
