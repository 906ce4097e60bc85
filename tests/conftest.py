"""
Shared fixtures for CoCoHue tests.

Payloads are trimmed copies of what a v1 bridge returns, enough to exercise
parsing, grouping and scene ownership.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from custom_components.cocohue.cache import EntityCache
from custom_components.cocohue.models import BridgeEndpoint, BridgeOptions, EntityType
from custom_components.cocohue.payloads import parse_snapshot
from custom_components.cocohue.propagator import StatePropagator


def _light(name, on, bri=200, ct=None, hue=None, sat=None, colormode="ct", reachable=True):
    state = {"on": on, "bri": bri, "alert": "none", "colormode": colormode, "reachable": reachable}
    if ct is not None:
        state["ct"] = ct
    if hue is not None:
        state["hue"] = hue
        state["sat"] = sat
        state["xy"] = [0.4, 0.4]
        state["effect"] = "none"
    return {"name": name, "type": "Extended color light", "modelid": "LCT015", "state": state}


@pytest.fixture
def lights_payload():
    """Three lights: 1 and 2 in the living room, 3 in the kitchen."""
    return {
        "1": _light("Sofa", True, ct=366, hue=8418, sat=140),
        "2": _light("Lamp", False, ct=300, hue=1000, sat=100),
        "3": _light("Kitchen", False, ct=250, hue=None),
    }


@pytest.fixture
def groups_payload():
    return {
        "1": {
            "name": "Living room",
            "type": "Room",
            "lights": ["1", "2"],
            "action": {"on": True, "bri": 200, "ct": 366, "colormode": "ct"},
        },
        "2": {
            "name": "Kitchen",
            "type": "Room",
            "lights": ["3", "99"],
            "action": {"on": False, "bri": 254, "ct": 250, "colormode": "ct"},
        },
    }


@pytest.fixture
def scenes_payload():
    return {
        "abc": {"name": "Relax", "type": "GroupScene", "group": "1", "lights": ["1", "2"]},
        "def": {"name": "Read", "type": "GroupScene", "group": "1", "lights": ["1", "2"]},
        "ghi": {"name": "Cook", "type": "GroupScene", "group": "2", "lights": ["3"]},
        "xyz": {"name": "Loose", "type": "LightScene", "lights": ["1"], "recycle": False},
    }


@pytest.fixture
def sensors_payload():
    return {
        "5": {
            "name": "Hall motion",
            "type": "ZLLPresence",
            "state": {"presence": False, "lastupdated": "2024-05-01T10:00:00"},
            "config": {"on": True, "battery": 90, "reachable": True},
        },
        "6": {
            "name": "Hall light level",
            "type": "ZLLLightLevel",
            "state": {"lightlevel": 20001},
            "config": {"reachable": True},
        },
        "7": {
            "name": "Hall temperature",
            "type": "ZLLTemperature",
            "state": {"temperature": 2150},
            "config": {"reachable": True},
        },
        "8": {
            "name": "Dimmer",
            "type": "ZLLSwitch",
            "state": {"buttonevent": 1002, "lastupdated": "2024-05-01T09:59:00"},
            "config": {"reachable": True},
        },
        "9": {"name": "Labs formula", "type": "CLIPGenericStatus", "state": {"status": 0}},
        "10": {"name": "Daylight", "type": "Daylight", "state": {"daylight": True}},
    }


@pytest.fixture
def endpoint():
    return BridgeEndpoint(host="192.168.1.2", username="app-key", bridge_id="001788fffe25b8f8")


@pytest.fixture
def options():
    return BridgeOptions()


@pytest.fixture
def cache():
    return EntityCache()


@pytest.fixture
def events():
    """Recorded (entity_type, id, state) emissions."""
    return []


@pytest.fixture
def propagator(cache, options, events):
    prop = StatePropagator(cache, options)
    prop.add_listener(lambda t, i, s: events.append((t, i, s)))
    return prop


@pytest.fixture
def populated(propagator, events, lights_payload, groups_payload, scenes_payload, options):
    """Propagator with lights, groups and scenes loaded and the event log cleared."""
    propagator.apply_snapshot(EntityType.LIGHT, parse_snapshot(EntityType.LIGHT, lights_payload, options))
    propagator.apply_snapshot(EntityType.GROUP, parse_snapshot(EntityType.GROUP, groups_payload, options))
    propagator.apply_snapshot(EntityType.SCENE, parse_snapshot(EntityType.SCENE, scenes_payload, options))
    events.clear()
    return propagator


@pytest.fixture
def mock_client(lights_payload, groups_payload, scenes_payload, sensors_payload, options):
    """HueBridgeClient stand-in serving the sample payloads."""
    payloads = {
        EntityType.LIGHT: lights_payload,
        EntityType.GROUP: groups_payload,
        EntityType.SCENE: scenes_payload,
        EntityType.SENSOR: sensors_payload,
        EntityType.BUTTON: sensors_payload,
        EntityType.LABS_ACTIVATOR: sensors_payload,
    }

    async def _fetch_snapshots(types):
        return {t: parse_snapshot(t, payloads[t], options) for t in types}, None

    async def _fetch_snapshot(entity_type):
        return parse_snapshot(entity_type, payloads[entity_type], options), None

    client = MagicMock()
    client.payloads = payloads
    client.fetch_snapshots = AsyncMock(side_effect=_fetch_snapshots)
    client.fetch_snapshot = AsyncMock(side_effect=_fetch_snapshot)
    client.send_command = AsyncMock(return_value=(True, None))
    client.close = AsyncMock()
    client.session = MagicMock()
    return client
