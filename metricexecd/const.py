"""Default values and tunables for the metricexecd coprocess processor."""

from __future__ import annotations

from typing import Final

# Coprocess supervision
DEFAULT_RESTART_DELAY: Final[float] = 10.0
MIN_RESTART_DELAY: Final[float] = 0.1
DEFAULT_STOP_GRACE_PERIOD: Final[float] = 5.0
PROCESS_KILL_WAIT_TIMEOUT: Final[float] = 1.0
DRAIN_JOIN_TIMEOUT: Final[float] = 2.0

# Input feeder
DEFAULT_QUEUE_LIMIT: Final[int] = 1000

# Output drain
DEFAULT_OUTPUTS_PER_INPUT: Final[int] = 1
DEFAULT_STREAM_LIMIT_BYTES: Final[int] = 1024 * 1024
STREAM_READ_CHUNK_SIZE: Final[int] = 4096

# Codecs
DATA_FORMAT_INFLUX: Final[str] = "influx"
DATA_FORMAT_JSON: Final[str] = "json"
DEFAULT_DATA_FORMAT: Final[str] = DATA_FORMAT_INFLUX

# Configuration
DEFAULT_CONFIG_PATH: Final[str] = "/etc/metricexecd/metricexecd.toml"
CONFIG_SECTION: Final[str] = "execd"
DEFAULT_DEBUG_LOGGING: Final[bool] = False

# Prometheus exporter
DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9131
METRICS_REQUEST_TIMEOUT: Final[float] = 5.0
