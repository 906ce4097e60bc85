"""Models for the CoCoHue integration."""
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .const import (
    CONF_INCLUDE_UNGROUPED_SCENES,
    CONF_POLL_INTERVAL,
    CONF_PUSH_ENABLED,
    CONF_SCENE_PROPAGATION,
    CONF_SCENE_REFRESH_DELAY,
    CONF_SCENES_OFF_WITH_GROUP,
    DEFAULT_INCLUDE_UNGROUPED_SCENES,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PUSH_ENABLED,
    DEFAULT_SCENE_PROPAGATION,
    DEFAULT_SCENE_REFRESH_DELAY,
    DEFAULT_SCENES_OFF_WITH_GROUP,
    SCENE_REFRESH_DELAYS,
)


class EntityType(Enum):
    LIGHT = "lights"
    GROUP = "groups"
    SCENE = "scenes"
    SENSOR = "sensors"
    BUTTON = "buttons"
    LABS_ACTIVATOR = "activators"


class ConnectivityStatus(Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"


class GroupKind(Enum):
    NORMAL = "normal"
    ALL_LIGHTS = "all_lights"


class ScenePropagation(Enum):
    """What activating a scene does to the other scenes."""

    NONE = "none"
    GROUP_SCENES_OFF = "group_scenes_off"
    ALL_SCENES_OFF = "all_scenes_off"
    # Mark the scene itself off again shortly after activation
    AUTO_OFF = "auto_off"


class UpdateSource(Enum):
    POLL = "poll"
    PUSH = "push"
    COMMAND = "command"


@dataclass
class BridgeEndpoint:
    host: str
    username: str
    bridge_id: Optional[str] = None
    status: ConnectivityStatus = ConnectivityStatus.OFFLINE
    # Wall-clock time of the last successful contact (poll, push or command)
    last_contact: Optional[float] = None
    # Consecutive failed contacts; drives the poll backoff
    failures: int = 0

    @property
    def online(self) -> bool:
        return self.status is ConnectivityStatus.ONLINE


@dataclass(frozen=True)
class LightRecord:
    id: str
    name: str
    on: bool = False
    brightness: Optional[int] = None
    color_mode: Optional[str] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None
    # Mireds, as the bridge reports them
    color_temp: Optional[int] = None
    xy: Optional[Tuple[float, float]] = None
    effect: Optional[str] = None
    reachable: bool = True
    model: Optional[str] = None
    light_type: Optional[str] = None


@dataclass(frozen=True)
class GroupRecord:
    id: str
    name: str
    # Derived from member lights, never taken from the bridge
    on: bool = False
    brightness: Optional[int] = None
    color_mode: Optional[str] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None
    color_temp: Optional[int] = None
    xy: Optional[Tuple[float, float]] = None
    effect: Optional[str] = None
    reachable: bool = True
    lights: Tuple[str, ...] = ()
    kind: GroupKind = GroupKind.NORMAL
    group_type: Optional[str] = None

    @property
    def is_all_lights(self) -> bool:
        return self.kind is GroupKind.ALL_LIGHTS


@dataclass(frozen=True)
class SceneRecord:
    id: str
    name: str
    group: Optional[str] = None
    scene_type: Optional[str] = None
    lights: Tuple[str, ...] = ()
    # Inferred from local activations and push events only
    active: bool = False


@dataclass(frozen=True)
class SensorRecord:
    id: str
    name: str
    sensor_type: Optional[str] = None
    presence: Optional[bool] = None
    light_level: Optional[int] = None
    # Celsius
    temperature: Optional[float] = None
    battery: Optional[int] = None
    reachable: bool = True


@dataclass(frozen=True)
class ButtonRecord:
    id: str
    name: str
    sensor_type: Optional[str] = None
    last_event: Optional[str] = None
    control_id: Optional[int] = None
    updated: Optional[str] = None


@dataclass(frozen=True)
class ActivatorRecord:
    id: str
    name: str
    status: int = 0


EntityRecord = Union[
    LightRecord, GroupRecord, SceneRecord, SensorRecord, ButtonRecord, ActivatorRecord
]

# Attributes copied from a changed light onto its groups ("last changed wins")
LIGHT_COLOR_LEVEL_FIELDS = (
    "brightness",
    "color_mode",
    "hue",
    "saturation",
    "color_temp",
    "xy",
    "effect",
)


def apply_delta(record: EntityRecord, delta: Mapping[str, Any]) -> EntityRecord:
    """Return a copy of record with the known keys of delta applied.

    Identity fields are never patched and unknown keys are dropped, so a
    delta can never produce a half-built record.
    """
    allowed = {f.name for f in fields(record)} - {"id"}
    changes = {k: v for k, v in delta.items() if k in allowed}
    if not changes:
        return record
    return replace(record, **changes)


@dataclass
class PendingCommandState:
    entity_type: EntityType
    entity_id: str
    delta: Dict[str, Any] = field(default_factory=dict)
    issued_at: float = 0.0


@dataclass(frozen=True)
class PushDelta:
    entity_type: EntityType
    entity_id: str
    delta: Mapping[str, Any]


@dataclass(frozen=True)
class BridgeOptions:
    poll_interval: int = DEFAULT_POLL_INTERVAL
    push_enabled: bool = DEFAULT_PUSH_ENABLED
    scene_propagation: ScenePropagation = ScenePropagation(DEFAULT_SCENE_PROPAGATION)
    scene_refresh_delay: int = DEFAULT_SCENE_REFRESH_DELAY
    include_ungrouped_scenes: bool = DEFAULT_INCLUDE_UNGROUPED_SCENES
    scenes_off_with_group: bool = DEFAULT_SCENES_OFF_WITH_GROUP

    @classmethod
    def from_entry(cls, data: Mapping[str, Any], options: Mapping[str, Any]) -> "BridgeOptions":
        """Build options, preferring the options mapping over the initial data."""

        def _get(key: str, default: Any) -> Any:
            if key in options:
                return options[key]
            return data.get(key, default)

        return cls(
            poll_interval=max(0, int(_get(CONF_POLL_INTERVAL, DEFAULT_POLL_INTERVAL) or 0)),
            push_enabled=bool(_get(CONF_PUSH_ENABLED, DEFAULT_PUSH_ENABLED)),
            scene_propagation=_scene_propagation(_get(CONF_SCENE_PROPAGATION, DEFAULT_SCENE_PROPAGATION)),
            scene_refresh_delay=_scene_refresh_delay(
                _get(CONF_SCENE_REFRESH_DELAY, DEFAULT_SCENE_REFRESH_DELAY)
            ),
            include_ungrouped_scenes=bool(
                _get(CONF_INCLUDE_UNGROUPED_SCENES, DEFAULT_INCLUDE_UNGROUPED_SCENES)
            ),
            scenes_off_with_group=bool(
                _get(CONF_SCENES_OFF_WITH_GROUP, DEFAULT_SCENES_OFF_WITH_GROUP)
            ),
        )


def _scene_propagation(value: Any) -> ScenePropagation:
    try:
        return ScenePropagation(value)
    except ValueError:
        return ScenePropagation(DEFAULT_SCENE_PROPAGATION)


def _scene_refresh_delay(value: Any) -> int:
    try:
        delay = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SCENE_REFRESH_DELAY
    return delay if delay in SCENE_REFRESH_DELAYS else DEFAULT_SCENE_REFRESH_DELAY
