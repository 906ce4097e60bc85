"""Hue light and group platform."""
import logging

from homeassistant.components.light import (
    ATTR_BRIGHTNESS,
    ATTR_COLOR_TEMP_KELVIN,
    ATTR_EFFECT,
    ATTR_FLASH,
    ATTR_HS_COLOR,
    ATTR_TRANSITION,
    ATTR_XY_COLOR,
    FLASH_LONG,
    ColorMode,
    LightEntity,
    LightEntityFeature,
)
from homeassistant.util import color

from .const import BRI_MAX, BRI_MIN, DOMAIN, MIRED_MAX, MIRED_MIN
from .entity import CoCoHueEntity, async_track_records
from .models import EntityType, GroupRecord, LightRecord

_LOGGER = logging.getLogger(__name__)

EFFECT_COLORLOOP = "colorloop"
EFFECT_NONE = "none"

BRIGHTNESS_RANGE = (BRI_MIN, BRI_MAX)


async def async_setup_entry(hass, entry, async_add_entities):
    """Set up lights and groups, including ones that appear later."""
    session = hass.data[DOMAIN][entry.entry_id]["session"]

    def _factory(entity_type, entity_id, _state):
        return CoCoHueLightEntity(session, entry, entity_type, entity_id)

    entry.async_on_unload(
        async_track_records(
            session, (EntityType.LIGHT, EntityType.GROUP), _factory, async_add_entities
        )
    )


def hue_to_hs(hue, saturation):
    """Bridge hue (0-65535) and saturation (0-254) to HA degrees and percent."""
    return (
        round(hue / 65535 * 360, 2),
        round(saturation / 254 * 100, 2),
    )


def hs_to_hue(hs_color):
    return (
        int(round(hs_color[0] / 360 * 65535)) % 65536,
        max(0, min(254, int(round(hs_color[1] / 100 * 254)))),
    )


def kelvin_to_mired(kelvin):
    mired = color.color_temperature_kelvin_to_mired(kelvin)
    return max(MIRED_MIN, min(MIRED_MAX, int(round(mired))))


class CoCoHueLightEntity(CoCoHueEntity, LightEntity):
    """A bulb, or a group acting as one."""

    _attr_effect_list = [EFFECT_NONE, EFFECT_COLORLOOP]
    _attr_min_color_temp_kelvin = color.color_temperature_mired_to_kelvin(MIRED_MAX)
    _attr_max_color_temp_kelvin = color.color_temperature_mired_to_kelvin(MIRED_MIN)

    @property
    def _light(self) -> LightRecord | GroupRecord | None:
        record = self.record
        if isinstance(record, (LightRecord, GroupRecord)):
            return record
        return None

    @property
    def available(self):
        light = self._light
        if light is None or not self._session.endpoint.online:
            return False
        return light.reachable

    @property
    def is_on(self):
        light = self._light
        return light.on if light else False

    @property
    def brightness(self):
        light = self._light
        if not light or light.brightness is None:
            return None
        return color.value_to_brightness(BRIGHTNESS_RANGE, light.brightness)

    @property
    def hs_color(self):
        light = self._light
        if not light or light.hue is None or light.saturation is None:
            return None
        return hue_to_hs(light.hue, light.saturation)

    @property
    def xy_color(self):
        light = self._light
        return light.xy if light else None

    @property
    def color_temp_kelvin(self):
        light = self._light
        if not light or not light.color_temp:
            return None
        return color.color_temperature_mired_to_kelvin(light.color_temp)

    @property
    def effect(self):
        light = self._light
        return light.effect if light else None

    @property
    def supported_color_modes(self) -> set[ColorMode]:
        light = self._light
        if not light:
            return {ColorMode.ONOFF}
        modes = set()
        if light.hue is not None or light.xy is not None:
            modes.add(ColorMode.HS)
            modes.add(ColorMode.XY)
        if light.color_temp is not None:
            modes.add(ColorMode.COLOR_TEMP)
        if not modes:
            modes.add(ColorMode.BRIGHTNESS if light.brightness is not None else ColorMode.ONOFF)
        return modes

    @property
    def color_mode(self) -> ColorMode:
        light = self._light
        modes = self.supported_color_modes
        if light:
            wanted = {"hs": ColorMode.HS, "xy": ColorMode.XY, "ct": ColorMode.COLOR_TEMP}.get(
                light.color_mode or ""
            )
            if wanted in modes:
                return wanted
        for mode in (ColorMode.XY, ColorMode.HS, ColorMode.COLOR_TEMP, ColorMode.BRIGHTNESS):
            if mode in modes:
                return mode
        return ColorMode.ONOFF

    @property
    def supported_features(self):
        features = LightEntityFeature.TRANSITION | LightEntityFeature.FLASH
        if ColorMode.HS in self.supported_color_modes:
            features |= LightEntityFeature.EFFECT
        return features

    @property
    def extra_state_attributes(self):
        light = self._light
        if isinstance(light, GroupRecord):
            return {"lights": list(light.lights), "type": light.group_type}
        if isinstance(light, LightRecord):
            return {"model": light.model, "type": light.light_type}
        return None

    async def async_turn_on(self, **kwargs):
        delta = {"on": True}
        if ATTR_BRIGHTNESS in kwargs:
            delta["brightness"] = max(
                BRI_MIN, round(color.brightness_to_value(BRIGHTNESS_RANGE, kwargs[ATTR_BRIGHTNESS]))
            )
        # One colour model per command; the bridge prefers xy > ct > hs anyway
        if ATTR_XY_COLOR in kwargs:
            delta["xy"] = tuple(kwargs[ATTR_XY_COLOR])
            delta["color_mode"] = "xy"
        elif ATTR_COLOR_TEMP_KELVIN in kwargs:
            delta["color_temp"] = kelvin_to_mired(kwargs[ATTR_COLOR_TEMP_KELVIN])
            delta["color_mode"] = "ct"
        elif ATTR_HS_COLOR in kwargs:
            delta["hue"], delta["saturation"] = hs_to_hue(kwargs[ATTR_HS_COLOR])
            delta["color_mode"] = "hs"
        if ATTR_EFFECT in kwargs:
            delta["effect"] = EFFECT_COLORLOOP if kwargs[ATTR_EFFECT] == EFFECT_COLORLOOP else EFFECT_NONE
        if ATTR_FLASH in kwargs:
            delta["alert"] = "lselect" if kwargs[ATTR_FLASH] == FLASH_LONG else "select"
        if ATTR_TRANSITION in kwargs:
            # Bridge counts in tenths of a second
            delta["transition"] = int(kwargs[ATTR_TRANSITION] * 10)
        _LOGGER.debug("Turn on %s %s: %s", self._entity_type.value, self._record_id, delta)
        await self._async_send(delta)

    async def async_turn_off(self, **kwargs):
        delta = {"on": False}
        if ATTR_TRANSITION in kwargs:
            delta["transition"] = int(kwargs[ATTR_TRANSITION] * 10)
        await self._async_send(delta)
