"""
Affinity Laboratory constants.

Defaults used when laboratory.yml omits a value. The YAML config is the
source of truth at runtime; these only back-fill missing keys.
"""

# Spatial join
DEFAULT_RADIUS_METERS = 200
DEFAULT_CELL_SIZE_DEGREES = 0.01           # ~1.1 km grid cell edge
METERS_PER_DEGREE = 111320                 # flat-earth approximation at the equator
ACCURACY_THRESHOLD_METERS = 500            # pings with accuracy >= this are dropped

# Scoring
DEFAULT_WEIGHTS = {
    "concentration": 0.40,
    "frequency": 0.35,
    "dwell": 0.25,
}
CONCENTRATION_CAP = 5
FREQUENCY_CAP = 16
DWELL_CAP_MINUTES = 120
DWELL_RATIO_CAP = 2.0                      # avg/median ratio that maps to a full dwell score
MIN_VISITS_PER_ZIPCODE = 5
HOTSPOT_THRESHOLD = 60
MAX_HOTSPOTS = 25

# Geocoding
COORDINATE_PRECISION = 4                   # ~11 m
GEOCODE_CACHE_MAX_ENTRIES = 50_000
GEOCODE_CACHE_EVICT_FRACTION = 0.2
POLYGON_MISS_RETRY_SECONDS = 60         # a country without data is retried after this

# Query execution
POLL_INTERVAL_SECONDS = 0.5
MAX_POLL_ATTEMPTS = 600
ORIGIN_BATCH_SIZE = 500

# Runs
STALE_RUN_SECONDS = 6 * 60
HEARTBEAT_SECONDS = 15
SEGMENT_PREVIEW_LIMIT = 1000
LATEST_HOTSPOTS_LIMIT = 10

# Blob layout
AUDIENCES_PREFIX = "audiences"
RUN_STATUS_DIR = "_run"
RUN_STATUS_FILE = "status.json"
LATEST_FILE = "latest.json"

# Progress percent checkpoints for single-recipe runs
PROGRESS_SPATIAL_JOIN_START = 15
PROGRESS_SPATIAL_JOIN_DONE = 50
PROGRESS_RECIPE_DONE = 65
PROGRESS_ORIGINS_START = 66
PROGRESS_GEOCODING_START = 72
PROGRESS_GEOCODING_DONE = 78
PROGRESS_SCORING_START = 82
PROGRESS_SCORING_DONE = 92
PROGRESS_COMPLETE = 100
