"""Deployed scale and volume state, and wanted volume settings."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping


@dataclass
class ScaleState:
    """The scale of one process group of a deployed app."""

    process: str = ""
    count: int = 0
    cpu_kind: str = ""
    cpus: int = 0
    memory_mb: int = 0
    regions: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScaleState:
        return cls(
            process=str(data.get("Process") or ""),
            count=int(data.get("Count") or 0),
            cpu_kind=str(data.get("CPUKind") or ""),
            cpus=int(data.get("CPUs") or 0),
            memory_mb=int(data.get("Memory") or 0),
            regions={str(k): int(v) for k, v in (data.get("Regions") or {}).items()},
        )

    def includes_region(self, region: str) -> bool:
        return region in self.regions

    def count_in_region(self, region: str) -> int:
        return self.regions.get(region, 0)


def count_deployed_apps_per_region(apps: Iterable[ScaleState]) -> dict[str, int]:
    """Sum the machine counts per region over all 'app' processes."""
    counts: Counter[str] = Counter()
    for app in apps:
        if app.process == "app":
            for region, count in app.regions.items():
                counts[region] += count
    return dict(counts)


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class VolumeState:
    """A volume as it is deployed."""

    id: str = ""
    name: str = ""
    size_gb: int = 0
    state: str = ""
    region: str = ""
    encrypted: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VolumeState:
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            size_gb=int(data.get("size_gb") or 0),
            state=str(data.get("state") or ""),
            region=str(data.get("region") or ""),
            encrypted=bool(data.get("encrypted", False)),
            created_at=_parse_time(data.get("created_at")),
        )


@dataclass(frozen=True)
class VolumeConfig:
    """A wanted volume: its name, size and how many per region."""

    name: str = ""
    size_gb: int = 0
    count: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VolumeConfig:
        return cls(
            name=str(data.get("name") or ""),
            size_gb=int(data.get("size_gb") or 0),
            count=int(data.get("count") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "size_gb": self.size_gb, "count": self.count}