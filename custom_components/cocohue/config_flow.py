"""Config flow for CoCoHue."""

import logging

import voluptuous as vol  # pyright: ignore[reportMissingImports]

from homeassistant import config_entries, exceptions  # type: ignore
import homeassistant.helpers.config_validation as cv  # type: ignore
from homeassistant.const import CONF_HOST, CONF_USERNAME  # type: ignore
from homeassistant.core import callback  # type: ignore
from homeassistant.helpers.aiohttp_client import async_get_clientsession  # type: ignore

from .const import (
    CONF_INCLUDE_UNGROUPED_SCENES,
    CONF_POLL_INTERVAL,
    CONF_PUSH_ENABLED,
    CONF_SCENE_PROPAGATION,
    CONF_SCENE_REFRESH_DELAY,
    CONF_SCENES_OFF_WITH_GROUP,
    DOMAIN,
    SCENE_REFRESH_DELAYS,
)
from .discovery import HueAuthError, HueBridgeError, async_probe_bridge, async_validate_username
from .models import BridgeOptions, ScenePropagation

_LOGGER = logging.getLogger(__name__)


def options_schema(current: BridgeOptions) -> vol.Schema:
    return vol.Schema(
        {
            vol.Required(CONF_POLL_INTERVAL, default=current.poll_interval): vol.All(
                vol.Coerce(int), vol.Range(min=0)
            ),
            vol.Required(CONF_PUSH_ENABLED, default=current.push_enabled): cv.boolean,
            vol.Required(
                CONF_SCENE_PROPAGATION, default=current.scene_propagation.value
            ): vol.In([mode.value for mode in ScenePropagation]),
            vol.Required(
                CONF_SCENE_REFRESH_DELAY, default=current.scene_refresh_delay
            ): vol.All(vol.Coerce(int), vol.In(SCENE_REFRESH_DELAYS)),
            vol.Required(
                CONF_INCLUDE_UNGROUPED_SCENES, default=current.include_ungrouped_scenes
            ): cv.boolean,
            vol.Required(
                CONF_SCENES_OFF_WITH_GROUP, default=current.scenes_off_with_group
            ): cv.boolean,
        }
    )


class CoCoHueFlowHandler(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for a Hue bridge with an existing application key."""

    VERSION = 1

    async def async_step_user(self, user_input=None):
        """Ask for the bridge address and application key."""
        errors = {}
        if user_input is not None:
            host = user_input[CONF_HOST].strip()
            username = user_input[CONF_USERNAME].strip()
            try:
                bridge_id = await self._async_validate(host, username)
            except CannotConnect:
                errors["base"] = "cannot_connect"
            except InvalidAuth:
                errors["base"] = "invalid_auth"
            except Exception as ex:  # pylint: disable=broad-except
                _LOGGER.exception("Unexpected exception: %s", ex)
                errors["base"] = "unknown"
            else:
                await self.async_set_unique_id(bridge_id)
                self._abort_if_unique_id_configured(updates={CONF_HOST: host})
                return self.async_create_entry(
                    title=f"Hue Bridge {bridge_id[-6:].upper()}",
                    data={CONF_HOST: host, CONF_USERNAME: username},
                )

        return self.async_show_form(
            step_id="user",
            data_schema=vol.Schema(
                {
                    vol.Required(CONF_HOST): cv.string,
                    vol.Required(CONF_USERNAME): cv.string,
                }
            ),
            errors=errors,
        )

    async def _async_validate(self, host: str, username: str) -> str:
        session = async_get_clientsession(self.hass, verify_ssl=False)
        try:
            bridge_id = await async_probe_bridge(session, host)
            if bridge_id is None:
                raise CannotConnect(f"No Hue bridge at {host}")
            await async_validate_username(session, host, username)
        except HueAuthError as ex:
            raise InvalidAuth(str(ex)) from ex
        except HueBridgeError as ex:
            raise CannotConnect(str(ex)) from ex
        return bridge_id

    @staticmethod
    @callback
    def async_get_options_flow(config_entry):
        """Get the options flow."""
        return CoCoHueOptionsFlowHandler(config_entry)


class CoCoHueOptionsFlowHandler(config_entries.OptionsFlow):
    """Polling, push and scene behaviour."""

    def __init__(self, config_entry):
        # Do not assign to self.config_entry (deprecated in HA 2025.12)
        self._entry = config_entry

    @property
    def entry(self):
        return getattr(self, "config_entry", self._entry)

    async def async_step_init(self, user_input=None):
        if user_input is not None:
            return self.async_create_entry(title="", data=user_input)
        current = BridgeOptions.from_entry(self.entry.data, self.entry.options)
        return self.async_show_form(step_id="init", data_schema=options_schema(current))


class CannotConnect(exceptions.HomeAssistantError):
    """Error to indicate we cannot connect."""


class InvalidAuth(exceptions.HomeAssistantError):
    """Error to indicate the application key was rejected."""
