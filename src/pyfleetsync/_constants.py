"""Internal constants shared across the library."""

USER_AGENT = "pyfleetsync"
REST_PATH = "/rest/v1"

#: PostgREST code for "JSON object requested, multiple (or no) rows returned".
NO_ROWS_CODE = "PGRST116"

DEFAULT_SCHEMA = "public"
LOCATIONS_TABLE = "driver_locations"
TASKS_TABLE = "tasks"
TASK_FILES_TABLE = "task_files"

DEFAULT_TRACKING_INTERVAL = 30.0
DEFAULT_GEO_TIMEOUT = 10.0
DEFAULT_GEO_MAXIMUM_AGE = 60.0

# Synthetic fixes are scattered around central Istanbul.
SIMULATION_BASE_LATITUDE = 41.0082
SIMULATION_BASE_LONGITUDE = 28.9784
SIMULATION_JITTER_DEGREES = 0.01
SIMULATION_ACCURACY_METERS = 10.0
SIMULATION_MAX_SPEED = 50.0

# How far back the operations board looks for driver positions.
RECENT_LOCATION_WINDOW_SECONDS = 2 * 3600

# ------------------------------------------------------------------
# Human readable messages surfaced on the tracking session
# ------------------------------------------------------------------

MSG_UNSUPPORTED = "Geolocation is not supported"
MSG_PERMISSION_DENIED = "Location access denied by user"
MSG_POSITION_UNAVAILABLE = "Location information unavailable"
MSG_TIMEOUT = "Location request timed out"
MSG_UNKNOWN_LOCATION = "Unknown location error"
MSG_SAMPLE_FAILED = "Failed to get location"
MSG_PUBLISH_FAILED = "Failed to update location"
MSG_SIMULATED = "Development mode - using mock location"
MSG_PERMISSION_REQUEST_FAILED = "Permission denied"
