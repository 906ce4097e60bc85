"""Constants for the CoCoHue integration."""

DOMAIN = "cocohue"

MANUFACTURER = "Signify"

# Config entry keys (host/username come from homeassistant.const)
CONF_POLL_INTERVAL = "poll_interval"
CONF_PUSH_ENABLED = "enable_eventstream"
CONF_SCENE_PROPAGATION = "scene_propagation"
CONF_SCENE_REFRESH_DELAY = "scene_refresh_delay"
CONF_INCLUDE_UNGROUPED_SCENES = "include_ungrouped_scenes"
CONF_SCENES_OFF_WITH_GROUP = "scenes_off_with_group"

DEFAULT_POLL_INTERVAL = 60
DEFAULT_PUSH_ENABLED = True
DEFAULT_SCENE_PROPAGATION = "group_scenes_off"
DEFAULT_SCENE_REFRESH_DELAY = 0
DEFAULT_INCLUDE_UNGROUPED_SCENES = False
DEFAULT_SCENES_OFF_WITH_GROUP = True

# Bridge group id of the implicit "all lights" group
ALL_LIGHTS_GROUP_ID = "0"
ALL_LIGHTS_GROUP_NAME = "All Hue Lights"

REQUEST_TIMEOUT = 15
COMMAND_COALESCE_DELAY = 0.1

# Staged retry delays (seconds) keyed by the lowest failure count of the tier
BACKOFF_TIERS = (
    (18, 7200),
    (6, 3600),
    (4, 1200),
    (3, 600),
    (1, 300),
)

# Seconds after a scene command before the bridge is refreshed; 0 disables
SCENE_REFRESH_DELAYS = (0, 1, 5)
# Seconds an "auto off" scene stays marked active
SCENE_AUTO_OFF_DELAY = 5

# Push stream re-subscription delays (seconds), indexed by consecutive drops
PUSH_RECONNECT_DELAYS = (5, 10, 30, 60)

# Bridge brightness range (v1 API)
BRI_MIN = 1
BRI_MAX = 254
MIRED_MIN = 153
MIRED_MAX = 500

# Hue v1 sensor types by entity type
MOTION_SENSOR_TYPES = {"ZLLPresence", "ZLLLightLevel", "ZLLTemperature"}
BUTTON_SENSOR_TYPES = {"ZLLSwitch", "ZGPSwitch", "ZLLRelativeRotary"}
ACTIVATOR_SENSOR_TYPES = {"CLIPGenericStatus"}

TRANSPORT_ERROR_PREFIX = "Transport error:"

EVENT_BUTTON = f"{DOMAIN}_event"
