"""Build and runtime log interpretation."""
from shipyard.services.logs.interpreter import (
    BuildLogCollector,
    RuntimeLog,
    demux_runtime_log,
    join_build_log,
    parse_runtime_log,
)

__all__ = [
    "BuildLogCollector",
    "RuntimeLog",
    "demux_runtime_log",
    "join_build_log",
    "parse_runtime_log",
]
