"""Light level and temperature readings from Hue motion sensors."""
from __future__ import annotations

from homeassistant.components.sensor import SensorDeviceClass, SensorEntity, SensorStateClass
from homeassistant.const import LIGHT_LUX, UnitOfTemperature

from .const import DOMAIN
from .entity import CoCoHueEntity, async_track_records
from .models import EntityType, SensorRecord


async def async_setup_entry(hass, entry, async_add_entities):
    session = hass.data[DOMAIN][entry.entry_id]["session"]

    def _factory(entity_type, entity_id, state):
        if not isinstance(state, SensorRecord):
            return None
        if state.light_level is not None:
            return CoCoHueLightLevelSensor(session, entry, entity_type, entity_id)
        if state.temperature is not None:
            return CoCoHueTemperatureSensor(session, entry, entity_type, entity_id)
        return None

    entry.async_on_unload(
        async_track_records(session, (EntityType.SENSOR,), _factory, async_add_entities)
    )


def light_level_to_lux(light_level: int) -> float:
    # Bridge reports 10000 * log10(lux) + 1
    return round(10 ** ((light_level - 1) / 10000), 1)


class _CoCoHueReading(CoCoHueEntity, SensorEntity):
    _attr_state_class = SensorStateClass.MEASUREMENT

    @property
    def available(self):
        record = self.record
        return self._session.endpoint.online and isinstance(record, SensorRecord) and record.reachable


class CoCoHueLightLevelSensor(_CoCoHueReading):
    _attr_device_class = SensorDeviceClass.ILLUMINANCE
    _attr_native_unit_of_measurement = LIGHT_LUX

    @property
    def native_value(self):
        record = self.record
        if not isinstance(record, SensorRecord) or record.light_level is None:
            return None
        return light_level_to_lux(record.light_level)


class CoCoHueTemperatureSensor(_CoCoHueReading):
    _attr_device_class = SensorDeviceClass.TEMPERATURE
    _attr_native_unit_of_measurement = UnitOfTemperature.CELSIUS

    @property
    def native_value(self):
        record = self.record
        return record.temperature if isinstance(record, SensorRecord) else None
