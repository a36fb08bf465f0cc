"""
Output formatting utilities for NetGrab
Writes JSON lines (one grab per line) and an optional human-readable
report as grabs arrive
"""

import json
from collections import Counter
from datetime import datetime
from typing import Dict, Optional, TextIO

from netgrab import __version__
from netgrab.core.runner import Grab


def to_json_line(grab: Grab) -> str:
    """One compact JSON document"""
    return json.dumps(grab.to_dict(), separators=(",", ":"))


def format_normal(grab: Grab) -> str:
    """Human-readable section for one grab"""
    host = str(grab.ip) if grab.ip is not None else grab.domain
    out = f"NetGrab report for {host}"
    if grab.ip is not None and grab.domain:
        out += f" ({grab.domain})"
    if grab.port is not None:
        out += f" port {grab.port}"
    out += "\n"

    for name, result in grab.data.items():
        out += f"  {name:<12} {result.status.value}"
        if result.error is not None:
            out += f" ({result.error})"
        out += "\n"
        lines = getattr(result.result, "banner", "").splitlines()
        if lines:
            out += f"    |_banner: {lines[0]}\n"
    return out + "\n"


class OutputFormatter:
    """Write scan grabs as they complete and keep per-status counts"""

    def __init__(self, json_stream: TextIO, normal_stream: Optional[TextIO] = None):
        self.json_stream = json_stream
        self.normal_stream = normal_stream
        self.start_time = datetime.now()
        self.version = __version__
        self.total = 0
        self._counts: Dict[str, Counter] = {}

        if self.normal_stream is not None:
            self.normal_stream.write(f"# NetGrab {self.version} report written {self.start_time}\n\n")

    def add(self, grab: Grab):
        """Write one grab to every output and count its statuses"""
        self.json_stream.write(to_json_line(grab) + "\n")
        self.json_stream.flush()
        if self.normal_stream is not None:
            self.normal_stream.write(format_normal(grab))

        self.total += 1
        for name, result in grab.data.items():
            self._counts.setdefault(name, Counter())[result.status.value] += 1

    def status_counts(self) -> Dict[str, Dict[str, int]]:
        """Per module name, how many targets ended in each status"""
        return {name: dict(counter) for name, counter in self._counts.items()}

    def close(self):
        """Finish the human-readable report"""
        if self.normal_stream is None:
            return
        self.normal_stream.write(f"# NetGrab done: {self.total} targets scanned\n")
        for name, counts in self.status_counts().items():
            summary = ", ".join(f"{status}={count}" for status, count in sorted(counts.items()))
            self.normal_stream.write(f"# {name}: {summary}\n")
        self.normal_stream.flush()
