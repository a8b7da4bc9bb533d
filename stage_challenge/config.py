"""Central configuration for the stage challenge matcher.

All values are constants imported by the rest of the package. Adjust as needed
for your environment. Overrides are read from environment variables
(optionally via a local `.env`).
"""

from __future__ import annotations

import importlib
import os


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env variables when python-dotenv is available.
_load_dotenv = None
try:
    _dotenv_mod = importlib.import_module("dotenv")
    _load_dotenv = getattr(_dotenv_mod, "load_dotenv", None)
except Exception:
    _load_dotenv = None

if callable(_load_dotenv):
    # Load .env from the current directory or any parent folder.
    _load_dotenv()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
# Any SQLAlchemy URL. SQLite is enough for a single scheduled batch job.
DATABASE_URL = os.getenv(
    "STAGE_CHALLENGE_DATABASE_URL", "sqlite:///stage_challenge.db"
)

# Echo SQL statements to the log (very noisy, debugging only).
SQL_ECHO = _env_bool("STAGE_CHALLENGE_SQL_ECHO", False)


# ---------------------------------------------------------------------------
# Polyline codec
# ---------------------------------------------------------------------------
# Decimal digits kept by encoded polylines. Strava summary polylines use 5.
POLYLINE_PRECISION = _env_int("POLYLINE_PRECISION", 5)


# ---------------------------------------------------------------------------
# Route corridors
# ---------------------------------------------------------------------------
# Half-width (metres) of the tolerance tube around each stage route.
DEFAULT_BUFFER_METERS = _env_float("DEFAULT_BUFFER_METERS", 30.0)

# Fraction of activity points that must sit inside the corridor.
DEFAULT_MIN_OVERLAP_RATIO = _env_float("DEFAULT_MIN_OVERLAP_RATIO", 0.8)

# Segments used per quarter circle when building the buffered polygon.
CORRIDOR_BUFFER_QUAD_SEGS = _env_int("CORRIDOR_BUFFER_QUAD_SEGS", 16)

# Maximum number of prepared corridors kept in memory during a run.
CORRIDOR_CACHE_SIZE = _env_int("CORRIDOR_CACHE_SIZE", 64)

# Directory holding one sub-folder per challenge with stage-<N>.gpx files.
ROUTES_DIR = os.getenv("ROUTES_DIR", os.path.join("public", "routes"))

# File name pattern for stage track files; the first group is the stage number.
STAGE_FILE_PATTERN = os.getenv("STAGE_FILE_PATTERN", r"^stage-(\d+)\.gpx$")


# ---------------------------------------------------------------------------
# Activity processor
# ---------------------------------------------------------------------------
# Cap on activities pulled per batch run. Set to 0 to process the whole queue.
PROCESSOR_BATCH_LIMIT: int | None = _env_int("PROCESSOR_BATCH_LIMIT", 0)
if PROCESSOR_BATCH_LIMIT is not None and PROCESSOR_BATCH_LIMIT <= 0:
    PROCESSOR_BATCH_LIMIT = None

# Audit action written when a stage result is created or improved.
STAGE_COMPLETED_ACTION = "STAGE_COMPLETED"


# ---------------------------------------------------------------------------
# Excel export
# ---------------------------------------------------------------------------
EXPORT_OVERALL_SHEET = "Overall"

# Keep stage sheets in a fixed column order.
EXPORT_STAGE_COLUMN_ORDER = [
    "Rank",
    "User",
    "Best Time (sec)",
    "Best Time (h:mm:ss)",
    "Completed At",
]

# Automatically size columns after writing each sheet (openpyxl only).
EXCEL_AUTOSIZE_COLUMNS = True
EXCEL_AUTOSIZE_MAX_WIDTH = 50  # characters
EXCEL_AUTOSIZE_MIN_WIDTH = 6  # characters
EXCEL_AUTOSIZE_PADDING = 2  # extra characters added to the detected max
EXCEL_AUTOSIZE_MAX_ROWS = (
    5000  # skip autosize for very large sheets (performance guard)
)
