"""
In-process counters and gauges, exported in Prometheus text format.
"""
import threading
from typing import Dict

PREFIX = "programs_service_"

# name -> help text, in exposition order
COUNTERS = {
    "requests_total": "HTTP requests served",
    "requests_2xx": "HTTP responses with a 2xx status",
    "requests_4xx": "HTTP responses with a 4xx status",
    "requests_5xx": "HTTP responses with a 5xx status",
    "builds_started_total": "Build jobs accepted",
    "builds_succeeded_total": "Build jobs that ended with a registered program",
    "builds_failed_total": "Build jobs that ended with an error",
    "programs_registered_total": "Programs newly written to the store",
    "log_lines_dropped_total": "Build log lines discarded because the reader fell behind",
}

GAUGES = {
    "builds_running": "Build jobs currently executing",
}


class Metrics:
    """Thread-safe counter and gauge registry."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {name: 0 for name in (*COUNTERS, *GAUGES)}

    def inc(self, name: str, value: int = 1) -> None:
        # Unknown names (e.g. requests_1xx) are tracked but not exported
        with self._lock:
            self._values[name] = self._values.get(name, 0) + value

    def dec(self, name: str, value: int = 1) -> None:
        self.inc(name, -value)

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

    def to_prometheus(self) -> str:
        values = self.get_all()
        lines = []
        for kind, table in (("counter", COUNTERS), ("gauge", GAUGES)):
            for name, help_text in table.items():
                lines += [
                    f"# HELP {PREFIX}{name} {help_text}",
                    f"# TYPE {PREFIX}{name} {kind}",
                    f"{PREFIX}{name} {values.get(name, 0)}",
                ]
        return "\n".join(lines) + "\n"


metrics = Metrics()
