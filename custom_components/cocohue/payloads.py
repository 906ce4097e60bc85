"""Validation and translation of Hue bridge payloads.

Raw bridge JSON never reaches the cache: v1 REST responses are turned into
typed records here, v2 event stream messages into :class:`PushDelta` objects,
and attribute deltas into v1 command bodies.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .const import (
    ACTIVATOR_SENSOR_TYPES,
    ALL_LIGHTS_GROUP_ID,
    ALL_LIGHTS_GROUP_NAME,
    BRI_MAX,
    BRI_MIN,
    BUTTON_SENSOR_TYPES,
    MOTION_SENSOR_TYPES,
)
from .models import (
    ActivatorRecord,
    BridgeOptions,
    ButtonRecord,
    EntityRecord,
    EntityType,
    GroupKind,
    GroupRecord,
    LightRecord,
    PushDelta,
    SceneRecord,
    SensorRecord,
)

_LOGGER = logging.getLogger(__name__)

# v1 REST path for each entity type's snapshot
SNAPSHOT_PATHS = {
    EntityType.LIGHT: "lights",
    EntityType.GROUP: "groups",
    EntityType.SCENE: "scenes",
    EntityType.SENSOR: "sensors",
    EntityType.BUTTON: "sensors",
    EntityType.LABS_ACTIVATOR: "sensors",
}

# record field -> v1 wire key
_V1_LIGHT_KEYS = {
    "on": "on",
    "brightness": "bri",
    "hue": "hue",
    "saturation": "sat",
    "color_temp": "ct",
    "xy": "xy",
    "effect": "effect",
    "transition": "transitiontime",
    "alert": "alert",
}

_BUTTON_EVENTS = {0: "initial_press", 1: "repeat", 2: "short_release", 3: "long_release"}


class PayloadError(ValueError):
    """Raised when a bridge response does not have the expected shape."""


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _xy(value: Any) -> Optional[Tuple[float, float]]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            return (float(value[0]), float(value[1]))
        except (TypeError, ValueError):
            return None
    if isinstance(value, dict) and "x" in value and "y" in value:
        return _xy((value["x"], value["y"]))
    return None


def _effect(value: Any) -> Optional[str]:
    if value is None:
        return None
    return "colorloop" if value == "colorloop" else "none"


def _timestamp(value: Any) -> Optional[str]:
    # v1 reports whole seconds, v2 adds milliseconds and a zone suffix
    if not isinstance(value, str) or len(value) < 19:
        return None
    return value[:19]


def _light_state_fields(state: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "brightness": _opt_int(state.get("bri")),
        "hue": _opt_int(state.get("hue")),
        "saturation": _opt_int(state.get("sat")),
        "color_temp": _opt_int(state.get("ct")),
        "xy": _xy(state.get("xy")),
        "color_mode": state.get("colormode") if isinstance(state.get("colormode"), str) else None,
        "effect": _effect(state.get("effect")),
    }
    return out


def parse_light(light_id: str, item: Mapping[str, Any]) -> LightRecord:
    state = item.get("state")
    if not isinstance(state, dict):
        raise PayloadError(f"light {light_id} has no state")
    return LightRecord(
        id=light_id,
        name=str(item.get("name") or light_id),
        on=bool(state.get("on", False)),
        reachable=bool(state.get("reachable", True)),
        model=item.get("modelid"),
        light_type=item.get("type"),
        **_light_state_fields(state),
    )


def parse_group(group_id: str, item: Mapping[str, Any]) -> GroupRecord:
    lights = item.get("lights")
    if not isinstance(lights, list):
        raise PayloadError(f"group {group_id} has no member list")
    action = item.get("action") if isinstance(item.get("action"), dict) else {}
    return GroupRecord(
        id=group_id,
        name=str(item.get("name") or group_id),
        lights=tuple(str(light_id) for light_id in lights),
        kind=GroupKind.ALL_LIGHTS if group_id == ALL_LIGHTS_GROUP_ID else GroupKind.NORMAL,
        group_type=item.get("type"),
        **_light_state_fields(action),
    )


def all_lights_group() -> GroupRecord:
    return GroupRecord(
        id=ALL_LIGHTS_GROUP_ID,
        name=ALL_LIGHTS_GROUP_NAME,
        kind=GroupKind.ALL_LIGHTS,
        group_type="LightGroup",
    )


def parse_scene(scene_id: str, item: Mapping[str, Any]) -> SceneRecord:
    # "recycle", "lastupdated" and any recall data are deliberately ignored
    group = item.get("group")
    return SceneRecord(
        id=scene_id,
        name=str(item.get("name") or scene_id),
        group=str(group) if group is not None else None,
        scene_type=item.get("type"),
        lights=tuple(str(light_id) for light_id in item.get("lights") or ()),
    )


def parse_sensor(sensor_id: str, item: Mapping[str, Any]) -> SensorRecord:
    state = item.get("state") if isinstance(item.get("state"), dict) else {}
    config = item.get("config") if isinstance(item.get("config"), dict) else {}
    temperature = state.get("temperature")
    return SensorRecord(
        id=sensor_id,
        name=str(item.get("name") or sensor_id),
        sensor_type=item.get("type"),
        presence=bool(state["presence"]) if "presence" in state else None,
        light_level=_opt_int(state.get("lightlevel")),
        # v1 reports hundredths of a degree
        temperature=round(temperature / 100.0, 1) if isinstance(temperature, (int, float)) else None,
        battery=_opt_int(config.get("battery")),
        reachable=bool(config.get("reachable", True)),
    )


def parse_button(sensor_id: str, item: Mapping[str, Any]) -> ButtonRecord:
    state = item.get("state") if isinstance(item.get("state"), dict) else {}
    code = _opt_int(state.get("buttonevent"))
    return ButtonRecord(
        id=sensor_id,
        name=str(item.get("name") or sensor_id),
        sensor_type=item.get("type"),
        last_event=_BUTTON_EVENTS.get(code % 1000) if code is not None else None,
        control_id=code // 1000 if code is not None else None,
        updated=_timestamp(state.get("lastupdated")),
    )


def parse_activator(sensor_id: str, item: Mapping[str, Any]) -> ActivatorRecord:
    state = item.get("state") if isinstance(item.get("state"), dict) else {}
    return ActivatorRecord(
        id=sensor_id,
        name=str(item.get("name") or sensor_id),
        status=_opt_int(state.get("status")) or 0,
    )


_SENSOR_FILTERS = {
    EntityType.SENSOR: (MOTION_SENSOR_TYPES, parse_sensor),
    EntityType.BUTTON: (BUTTON_SENSOR_TYPES, parse_button),
    EntityType.LABS_ACTIVATOR: (ACTIVATOR_SENSOR_TYPES, parse_activator),
}


def command_errors(data: Any) -> List[str]:
    """Return the error descriptions in a v1 ``[{"error": ...}, {"success": ...}]`` list."""
    if not isinstance(data, list):
        return []
    return [
        str(item["error"].get("description", "unknown error"))
        for item in data
        if isinstance(item, dict) and isinstance(item.get("error"), dict)
    ]


def check_response(data: Any) -> None:
    """Raise PayloadError for v1 error lists and non-object bodies."""
    errors = command_errors(data)
    if errors:
        raise PayloadError(f"Bridge error: {'; '.join(errors)}")
    if not isinstance(data, dict):
        raise PayloadError("Malformed response: expected an object")


def parse_snapshot(
    entity_type: EntityType, data: Any, options: BridgeOptions | None = None
) -> Dict[str, EntityRecord]:
    """Turn a v1 collection response into a complete id -> record mapping."""
    check_response(data)
    options = options or BridgeOptions()
    records: Dict[str, EntityRecord] = {}
    for raw_id, item in data.items():
        entity_id = str(raw_id)
        if not isinstance(item, dict):
            _LOGGER.debug("Skipping malformed %s entry %s", entity_type.value, entity_id)
            continue
        try:
            if entity_type is EntityType.LIGHT:
                records[entity_id] = parse_light(entity_id, item)
            elif entity_type is EntityType.GROUP:
                records[entity_id] = parse_group(entity_id, item)
            elif entity_type is EntityType.SCENE:
                scene = parse_scene(entity_id, item)
                if scene.group is None and not options.include_ungrouped_scenes:
                    continue
                records[entity_id] = scene
            else:
                sensor_types, parser = _SENSOR_FILTERS[entity_type]
                if item.get("type") not in sensor_types:
                    continue
                records[entity_id] = parser(entity_id, item)
        except PayloadError as ex:
            _LOGGER.debug("Skipping %s entry: %s", entity_type.value, ex)
    if entity_type is EntityType.GROUP:
        records.setdefault(ALL_LIGHTS_GROUP_ID, all_lights_group())
    return records


def _id_from_v1(id_v1: Any) -> Optional[Tuple[str, str]]:
    if not isinstance(id_v1, str):
        return None
    parts = id_v1.strip("/").split("/")
    if len(parts) != 2 or not parts[1]:
        return None
    return parts[0], parts[1]


def _scale_v2_brightness(value: Any) -> Optional[int]:
    try:
        pct = float(value)
    except (TypeError, ValueError):
        return None
    return max(BRI_MIN, min(BRI_MAX, int(round(pct / 100.0 * BRI_MAX))))


def _v2_light_delta(resource: Mapping[str, Any]) -> Dict[str, Any]:
    delta: Dict[str, Any] = {}
    if isinstance(resource.get("on"), dict) and "on" in resource["on"]:
        delta["on"] = bool(resource["on"]["on"])
    if isinstance(resource.get("dimming"), dict):
        bri = _scale_v2_brightness(resource["dimming"].get("brightness"))
        if bri is not None:
            delta["brightness"] = bri
    ct = resource.get("color_temperature")
    mirek = ct.get("mirek") if isinstance(ct, dict) else None
    if isinstance(mirek, int):
        delta["color_temp"] = mirek
        delta["color_mode"] = "ct"
    elif isinstance(resource.get("color"), dict):
        xy = _xy(resource["color"].get("xy"))
        if xy is not None:
            delta["xy"] = xy
            delta["color_mode"] = "xy"
    return delta


def _v2_resource_delta(resource: Mapping[str, Any]) -> Optional[PushDelta]:
    ref = _id_from_v1(resource.get("id_v1"))
    if ref is None:
        return None
    collection, v1_id = ref
    rtype = resource.get("type")
    if rtype == "light" and collection == "lights":
        return PushDelta(EntityType.LIGHT, v1_id, _v2_light_delta(resource))
    if rtype == "grouped_light" and collection == "groups":
        delta = _v2_light_delta(resource)
        # Group on/off is derived from members
        delta.pop("on", None)
        return PushDelta(EntityType.GROUP, v1_id, delta)
    if rtype == "zigbee_connectivity" and collection == "lights":
        return PushDelta(
            EntityType.LIGHT, v1_id, {"reachable": resource.get("status") == "connected"}
        )
    if rtype == "scene" and collection == "scenes":
        status = resource.get("status")
        if isinstance(status, dict) and "active" in status:
            return PushDelta(EntityType.SCENE, v1_id, {"active": status["active"] != "inactive"})
        return None
    if collection != "sensors":
        return None
    if rtype == "motion" and isinstance(resource.get("motion"), dict):
        return PushDelta(EntityType.SENSOR, v1_id, {"presence": bool(resource["motion"].get("motion"))})
    if rtype == "light_level" and isinstance(resource.get("light"), dict):
        return PushDelta(
            EntityType.SENSOR, v1_id, {"light_level": _opt_int(resource["light"].get("light_level"))}
        )
    if rtype == "temperature" and isinstance(resource.get("temperature"), dict):
        value = resource["temperature"].get("temperature")
        if isinstance(value, (int, float)):
            return PushDelta(EntityType.SENSOR, v1_id, {"temperature": round(float(value), 1)})
        return None
    if rtype == "device_power" and isinstance(resource.get("power_state"), dict):
        return PushDelta(
            EntityType.SENSOR, v1_id, {"battery": _opt_int(resource["power_state"].get("battery_level"))}
        )
    if rtype == "button" and isinstance(resource.get("button"), dict):
        button = resource["button"]
        report = button.get("button_report") if isinstance(button.get("button_report"), dict) else {}
        delta = {
            "last_event": report.get("event") or button.get("last_event"),
            "updated": _timestamp(report.get("updated") or resource.get("creationtime")),
        }
        metadata = resource.get("metadata")
        if isinstance(metadata, dict) and _opt_int(metadata.get("control_id")) is not None:
            delta["control_id"] = _opt_int(metadata.get("control_id"))
        return PushDelta(EntityType.BUTTON, v1_id, delta)
    return None


def parse_event_message(data: Any) -> List[PushDelta]:
    """Translate one event stream ``data:`` payload into push deltas.

    Unknown resource types and malformed containers are ignored.
    """
    deltas: List[PushDelta] = []
    if not isinstance(data, list):
        _LOGGER.debug("Ignoring event stream message of type %s", type(data).__name__)
        return deltas
    for container in data:
        if not isinstance(container, dict) or container.get("type") != "update":
            continue
        resources = container.get("data")
        if not isinstance(resources, list):
            continue
        for resource in resources:
            if not isinstance(resource, dict):
                continue
            if "creationtime" not in resource and container.get("creationtime"):
                resource = {**resource, "creationtime": container["creationtime"]}
            delta = _v2_resource_delta(resource)
            if delta is not None and delta.delta:
                deltas.append(delta)
    return deltas


def command_request(
    entity_type: EntityType, entity_id: str, delta: Mapping[str, Any], record: EntityRecord | None = None
) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Return ``(path, body)`` for a v1 PUT, or None if nothing goes on the wire."""
    if entity_type in (EntityType.LIGHT, EntityType.GROUP):
        body = {_V1_LIGHT_KEYS[k]: v for k, v in delta.items() if k in _V1_LIGHT_KEYS}
        if "xy" in body and body["xy"] is not None:
            body["xy"] = list(body["xy"])
        if not body:
            return None
        if entity_type is EntityType.LIGHT:
            return f"lights/{entity_id}/state", body
        return f"groups/{entity_id}/action", body
    if entity_type is EntityType.SCENE:
        if not delta.get("active"):
            return None
        group = record.group if isinstance(record, SceneRecord) and record.group else ALL_LIGHTS_GROUP_ID
        return f"groups/{group}/action", {"scene": entity_id}
    if entity_type is EntityType.LABS_ACTIVATOR and "status" in delta:
        return f"sensors/{entity_id}/state", {"status": int(delta["status"])}
    return None
