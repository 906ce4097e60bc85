"""The CoCoHue integration."""
import logging

import homeassistant.helpers.config_validation as cv  # type: ignore
from homeassistant.config_entries import ConfigEntry  # type: ignore
from homeassistant.const import CONF_HOST, CONF_USERNAME  # type: ignore
from homeassistant.core import HomeAssistant, callback  # type: ignore
from homeassistant.helpers import device_registry as dr, entity_registry as er

from .const import DOMAIN, EVENT_BUTTON
from .discovery import StaticBridgeLocator
from .models import BridgeEndpoint, BridgeOptions, ButtonRecord, EntityType
from .session import BridgeEndpointSession

_LOGGER = logging.getLogger(__name__)

PLATFORMS: list[str] = ["light", "switch", "binary_sensor", "sensor"]

# This integration is config-entry only (no YAML options)
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


async def async_setup(hass: HomeAssistant, config: dict):
    """Set up the CoCoHue integration (YAML not supported)."""
    hass.data.setdefault(DOMAIN, {})
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry):
    """Set up one Hue bridge from a config entry."""
    hass.data.setdefault(DOMAIN, {})
    endpoint = BridgeEndpoint(
        host=entry.data[CONF_HOST],
        username=entry.data[CONF_USERNAME],
        bridge_id=entry.unique_id,
    )
    options = BridgeOptions.from_entry(entry.data, entry.options)
    session = BridgeEndpointSession(endpoint, options, locator=StaticBridgeLocator(endpoint))

    if not await session.async_start():
        # Entities come up unavailable and recover on a later poll
        _LOGGER.warning("Could not load Hue bridge %s at startup", endpoint.host)

    hass.data[DOMAIN][entry.entry_id] = {"session": session}
    entry.async_on_unload(session.add_listener(_button_event_forwarder(hass, session)))
    entry.async_on_unload(entry.add_update_listener(async_update_options))

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    hass.async_create_task(_async_cleanup_stale_devices(hass, entry))

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry):
    """Unload a config entry."""
    unload_ok = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)

    if unload_ok:
        session = hass.data[DOMAIN].get(entry.entry_id, {}).pop("session", None)
        if session:
            await session.async_stop()
        hass.data[DOMAIN].pop(entry.entry_id, None)

    return unload_ok


async def async_update_options(hass: HomeAssistant, entry: ConfigEntry):
    """Apply changed options to the running session."""
    session = hass.data[DOMAIN].get(entry.entry_id, {}).get("session")
    if session is None:
        return
    options = BridgeOptions.from_entry(entry.data, entry.options)
    if options.include_ungrouped_scenes != session.options.include_ungrouped_scenes:
        # Changes which scenes exist; rebuild the entity set
        await hass.config_entries.async_reload(entry.entry_id)
        return
    session.update_options(options)


def _button_event_forwarder(hass: HomeAssistant, session: BridgeEndpointSession):
    """Fire an event on the bus for each new button press."""
    seen = {
        button_id: (button.updated, button.last_event)
        for button_id, button in (session.cache.all(EntityType.BUTTON) or {}).items()
    }

    @callback
    def _forward(entity_type: EntityType, entity_id: str, state) -> None:
        if entity_type is not EntityType.BUTTON or not isinstance(state, ButtonRecord):
            return
        first = entity_id not in seen
        previous = seen.get(entity_id)
        seen[entity_id] = (state.updated, state.last_event)
        # A newly seen button reports the bridge's memory of an old press
        if first or state.updated is None or seen[entity_id] == previous:
            return
        hass.bus.async_fire(
            EVENT_BUTTON,
            {
                "bridge_id": session.endpoint.bridge_id,
                "id": entity_id,
                "name": state.name,
                "type": state.last_event,
                "subtype": state.control_id,
            },
        )

    return _forward


async def _async_cleanup_stale_devices(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Remove device registry entries that no longer have entities."""

    dev_reg = dr.async_get(hass)
    ent_reg = er.async_get(hass)

    for device_entry in list(dev_reg.devices.values()):
        if entry.entry_id not in device_entry.config_entries:
            continue
        if any(ent.device_id == device_entry.id for ent in ent_reg.entities.values()):
            continue
        dev_reg.async_remove_device(device_entry.id)
