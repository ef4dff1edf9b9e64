"""
Time-series stores for risk history.

Pipeline code goes through ``record_metric``: historical metrics are not
safety-critical, so a failed write is logged and dropped. Reads go through
``query`` and raise, so the caller can report the store as unavailable.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
import structlog

from influxdb_client import Point
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

logger = structlog.get_logger()

FieldValue = Union[int, float]

# Columns Flux adds to every pivoted row
FLUX_META_COLUMNS = {"result", "table", "_start", "_stop", "_time", "_measurement"}


@dataclass
class MetricPoint:
    """Single metric data point. Timestamps are naive UTC."""
    measurement: str
    tags: Dict[str, str]
    fields: Dict[str, float]
    timestamp: datetime = field(default_factory=datetime.utcnow)


def to_naive_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    return timestamp


class TimeSeriesStore(ABC):
    """Time-series store interface"""

    @abstractmethod
    async def write_metric(self, measurement: str, tags: Dict[str, str],
                           fields: Dict[str, FieldValue],
                           timestamp: Optional[datetime] = None) -> None:
        ...

    @abstractmethod
    async def query(self, measurement: str, tags: Optional[Dict[str, str]] = None,
                    start: Optional[datetime] = None, stop: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[MetricPoint]:
        """
        Points of one measurement matching every given tag, newest first.

        ``start`` is inclusive and ``stop`` exclusive; ``limit`` caps the
        number of points returned.
        """

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        pass


async def record_metric(store: TimeSeriesStore, measurement: str, tags: Dict[str, str],
                        fields: Dict[str, FieldValue],
                        timestamp: Optional[datetime] = None) -> bool:
    """Write a metric, logging and dropping failures"""
    try:
        await store.write_metric(measurement, tags, fields, timestamp)
        return True
    except Exception as e:
        logger.warning("Dropped time-series point", measurement=measurement,
                       tags=tags, error=str(e))
        return False


def flux_string(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def flux_time(timestamp: datetime) -> str:
    return to_naive_utc(timestamp).isoformat(timespec="seconds") + "Z"


class InfluxTimeSeries(TimeSeriesStore):
    """InfluxDB 2.x store using the async client"""

    def __init__(self, url: str, token: str, org: str, bucket: str, timeout: int = 10000):
        self.bucket = bucket
        self.org = org
        self._client = InfluxDBClientAsync(url=url, token=token, org=org, timeout=timeout)
        self._write_api = self._client.write_api()
        self._query_api = self._client.query_api()

    @staticmethod
    def build_point(measurement: str, tags: Dict[str, str],
                    fields: Dict[str, FieldValue],
                    timestamp: Optional[datetime] = None) -> Point:
        point = Point(measurement)
        for key, value in tags.items():
            point = point.tag(key, str(value))
        for key, value in fields.items():
            point = point.field(key, float(value))
        if timestamp is not None:
            point = point.time(timestamp)
        return point

    def build_query(self, measurement: str, tags: Optional[Dict[str, str]] = None,
                    start: Optional[datetime] = None, stop: Optional[datetime] = None,
                    limit: Optional[int] = None) -> str:
        """Flux query returning one row per point, fields pivoted into columns"""
        range_start = flux_time(start) if start else "1970-01-01T00:00:00Z"
        range_stop = flux_time(stop) if stop else "now()"

        flux_parts = [
            f"from(bucket: {flux_string(self.bucket)})",
            f"|> range(start: {range_start}, stop: {range_stop})",
            f"|> filter(fn: (r) => r._measurement == {flux_string(measurement)})",
        ]
        for key, value in (tags or {}).items():
            flux_parts.append(f"|> filter(fn: (r) => r[{flux_string(key)}] == {flux_string(value)})")

        flux_parts.append('|> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")')
        flux_parts.append("|> group()")
        flux_parts.append('|> sort(columns: ["_time"], desc: true)')
        if limit:
            flux_parts.append(f"|> limit(n: {int(limit)})")

        return "\n  ".join(flux_parts)

    @staticmethod
    def record_to_point(measurement: str, values: Dict) -> MetricPoint:
        tags: Dict[str, str] = {}
        fields: Dict[str, float] = {}
        for key, value in values.items():
            if key in FLUX_META_COLUMNS or value is None:
                continue
            # Fields are always written as floats; everything else is a tag
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                fields[key] = float(value)
            else:
                tags[key] = str(value)

        return MetricPoint(
            measurement=values.get("_measurement", measurement),
            tags=tags,
            fields=fields,
            timestamp=to_naive_utc(values["_time"])
        )

    async def write_metric(self, measurement: str, tags: Dict[str, str],
                           fields: Dict[str, FieldValue],
                           timestamp: Optional[datetime] = None) -> None:
        point = self.build_point(measurement, tags, fields, timestamp)
        await self._write_api.write(bucket=self.bucket, org=self.org, record=point)

    async def query(self, measurement: str, tags: Optional[Dict[str, str]] = None,
                    start: Optional[datetime] = None, stop: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[MetricPoint]:
        flux_query = self.build_query(measurement, tags, start, stop, limit)
        tables = await self._query_api.query(flux_query, org=self.org)

        points = [
            self.record_to_point(measurement, record.values)
            for table in tables
            for record in table.records
        ]
        logger.debug("Queried InfluxDB", measurement=measurement, tags=tags, points=len(points))
        return points

    async def ping(self) -> bool:
        return await self._client.ping()

    async def close(self) -> None:
        await self._client.close()
        logger.info("Disconnected from InfluxDB")


class MemoryTimeSeries(TimeSeriesStore):
    """In-process store used when InfluxDB is disabled and in tests"""

    def __init__(self, max_points: int = 10000):
        self.points: List[MetricPoint] = []
        self.max_points = max_points

    async def write_metric(self, measurement: str, tags: Dict[str, str],
                           fields: Dict[str, FieldValue],
                           timestamp: Optional[datetime] = None) -> None:
        self.points.append(MetricPoint(
            measurement=measurement,
            tags=dict(tags),
            fields={k: float(v) for k, v in fields.items()},
            timestamp=to_naive_utc(timestamp) if timestamp else datetime.utcnow()
        ))
        if len(self.points) > self.max_points:
            self.points = self.points[-self.max_points:]

    def find(self, measurement: str, **tags: str) -> List[MetricPoint]:
        """Points in write order; a synchronous shortcut for inspection"""
        return [
            p for p in self.points
            if p.measurement == measurement
            and all(p.tags.get(k) == v for k, v in tags.items())
        ]

    async def query(self, measurement: str, tags: Optional[Dict[str, str]] = None,
                    start: Optional[datetime] = None, stop: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[MetricPoint]:
        start = to_naive_utc(start) if start else None
        stop = to_naive_utc(stop) if stop else None

        matches = [
            p for p in self.find(measurement, **(tags or {}))
            if (start is None or p.timestamp >= start)
            and (stop is None or p.timestamp < stop)
        ]
        # Stable sort keeps later writes first among equal timestamps
        matches = sorted(reversed(matches), key=lambda p: p.timestamp, reverse=True)
        return matches[:limit] if limit else matches

    async def ping(self) -> bool:
        return True
