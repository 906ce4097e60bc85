"""Shared base for entities mirroring one bridge record."""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import callback
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers.entity import Entity

from .const import DOMAIN, MANUFACTURER
from .models import EntityRecord, EntityType
from .session import BridgeEndpointSession

_LOGGER = logging.getLogger(__name__)


class CoCoHueEntity(Entity):
    """Entity backed by a cached record; updates arrive from the session."""

    _attr_should_poll = False

    def __init__(
        self,
        session: BridgeEndpointSession,
        entry: ConfigEntry,
        entity_type: EntityType,
        entity_id: str,
    ):
        self._session = session
        self._entry = entry
        self._entity_type = entity_type
        self._record_id = entity_id
        bridge = session.endpoint.bridge_id or entry.entry_id
        self._attr_unique_id = f"{bridge}_{entity_type.value}_{entity_id}"

    @property
    def record(self) -> EntityRecord | None:
        return self._session.get(self._entity_type, self._record_id)

    @property
    def name(self):
        record = self.record
        return record.name if record else self._record_id

    @property
    def available(self) -> bool:
        return self._session.endpoint.online and self.record is not None

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
        self.async_on_remove(
            self._session.subscribe(self._entity_type, self._record_id, self._handle_update)
        )
        self.async_on_remove(self._session.add_status_listener(self._handle_status))

    async def async_will_remove_from_hass(self):
        self._session.detach_representation(self._entity_type, self._record_id)

    @callback
    def _handle_update(self, state: EntityRecord) -> None:
        if self.hass is None:
            raise LookupError(self._attr_unique_id)
        self.async_write_ha_state()

    @callback
    def _handle_status(self, _endpoint) -> None:
        self.async_write_ha_state()

    async def _async_send(self, delta) -> None:
        ok, err = await self._session.async_command(self._entity_type, self._record_id, delta)
        if not ok:
            raise HomeAssistantError(f"Unable to update {self.name}: {err or 'unknown error'}")


def async_track_records(
    session: BridgeEndpointSession,
    entity_types: Iterable[EntityType],
    factory: Callable[[EntityType, str, EntityRecord], CoCoHueEntity | None],
    async_add_entities,
) -> Callable[[], None]:
    """Add an entity for every known record and for records that appear later."""
    types = tuple(entity_types)

    @callback
    def _async_add(entity_type: EntityType, entity_id: str, state: EntityRecord) -> None:
        if entity_type not in types:
            return
        created: list = []

        def _create():
            entity = factory(entity_type, entity_id, state)
            if entity is not None:
                created.append(entity)
            return entity

        entity, _ = session.attach_representation(entity_type, entity_id, _create)
        if entity is None:
            # Not representable on this platform; allow a later record to qualify
            session.detach_representation(entity_type, entity_id)
            return
        if created:
            _LOGGER.debug("Adding %s %s", entity_type.value, entity_id)
            async_add_entities(created)

    for entity_type in types:
        for entity_id, record in (session.cache.all(entity_type) or {}).items():
            _async_add(entity_type, entity_id, record)
    return session.add_listener(_async_add)
