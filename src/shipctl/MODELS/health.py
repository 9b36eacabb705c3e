"""
Results of individual health probes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class HealthProbeResult:
    """Outcome of a single probe against a running service."""

    success: bool
    latency: float = 0.0
    status_code: Optional[int] = None
    error: str = ""
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
