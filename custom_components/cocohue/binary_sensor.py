"""Motion sensors and bridge connectivity."""
from __future__ import annotations

from homeassistant.components.binary_sensor import BinarySensorDeviceClass, BinarySensorEntity
from homeassistant.const import EntityCategory
from homeassistant.core import callback

from .const import DOMAIN, MANUFACTURER
from .entity import CoCoHueEntity, async_track_records
from .models import EntityType, SensorRecord


async def async_setup_entry(hass, entry, async_add_entities):
    session = hass.data[DOMAIN][entry.entry_id]["session"]

    def _factory(entity_type, entity_id, state):
        if isinstance(state, SensorRecord) and state.presence is not None:
            return CoCoHueMotionSensor(session, entry, entity_type, entity_id)
        return None

    async_add_entities([CoCoHueBridgeConnectivity(session, entry)])
    entry.async_on_unload(
        async_track_records(session, (EntityType.SENSOR,), _factory, async_add_entities)
    )


class CoCoHueMotionSensor(CoCoHueEntity, BinarySensorEntity):
    _attr_device_class = BinarySensorDeviceClass.MOTION

    @property
    def available(self):
        record = self.record
        return self._session.endpoint.online and isinstance(record, SensorRecord) and record.reachable

    @property
    def is_on(self):
        record = self.record
        return bool(record.presence) if isinstance(record, SensorRecord) else None

    @property
    def extra_state_attributes(self):
        record = self.record
        if isinstance(record, SensorRecord) and record.battery is not None:
            return {"battery_level": record.battery}
        return None


class CoCoHueBridgeConnectivity(BinarySensorEntity):
    """Online while the last contact with the bridge succeeded."""

    _attr_device_class = BinarySensorDeviceClass.CONNECTIVITY
    _attr_entity_category = EntityCategory.DIAGNOSTIC
    _attr_should_poll = False

    def __init__(self, session, entry):
        self._session = session
        self._entry = entry
        bridge = session.endpoint.bridge_id or entry.entry_id
        self._attr_unique_id = f"{bridge}_connectivity"
        self._attr_name = f"{entry.title} Connectivity"

    @property
    def is_on(self):
        return self._session.endpoint.online

    @property
    def extra_state_attributes(self):
        endpoint = self._session.endpoint
        return {
            "host": endpoint.host,
            "failures": endpoint.failures,
            "last_contact": endpoint.last_contact,
            "event_stream": self._session.push_connected,
        }

    @property
    def device_info(self):
        bridge = self._session.endpoint.bridge_id or self._entry.entry_id
        return {
            "identifiers": {(DOMAIN, bridge)},
            "name": self._entry.title,
            "manufacturer": MANUFACTURER,
            "model": "Hue Bridge",
        }

    async def async_added_to_hass(self):
        self.async_on_remove(self._session.add_status_listener(self._handle_status))

    @callback
    def _handle_status(self, _endpoint) -> None:
        self.async_write_ha_state()
