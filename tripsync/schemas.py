import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from tripsync.logging_config import get_logger

logger = get_logger("worker", "worker.log")

UTC = dt.timezone.utc


def _to_int(v):
    return int(float(v))


# attribute -> (wire key, cast)
SAMPLE_FIELDS = {
    "gps_latitude":   ("gps_latitude", float),
    "gps_longitude":  ("gps_longitude", float),
    "gps_altitude":   ("gps_altitude", float),
    "gps_heading":    ("gps_heading", float),
    "gps_speed":      ("gps_speed", float),       # m/s
    "gps_climb":      ("gps_climb", float),
    "gps_satellites": ("gps_satellites", _to_int),
    "temperature":    ("shtc3_temperature", float),
    "humidity":       ("shtc3_humidity", float),
    "pressure":       ("bmp581_pressure", float),
    "dewpoint":       ("shtc3_dewpoint", float),
}
WIRE_FIELDS = {wire: (attr, cast) for attr, (wire, cast) in SAMPLE_FIELDS.items()}


# =====================================================================
# Timestamp decoding
# =====================================================================
def to_dt(v) -> dt.datetime:
    """
    Convert a wire timestamp to an aware datetime.
    Accepts datetime objects, ISO-8601 strings, epoch numbers (seconds, or
    milliseconds when larger than 1e12) and boxed dates like {"$date": ...}.
    Naive values are taken as UTC. Raises TypeError/ValueError otherwise.
    """
    if isinstance(v, dt.datetime):
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    if isinstance(v, bool):
        raise TypeError(f"unsupported timestamp {v!r}")

    if isinstance(v, (int, float)):
        seconds = v / 1000.0 if abs(v) > 1e12 else v
        return dt.datetime.fromtimestamp(seconds, tz=UTC)

    if isinstance(v, dict):
        if "$date" in v:
            return to_dt(v["$date"])
        if "$numberLong" in v:
            return to_dt(int(v["$numberLong"]))
        raise TypeError(f"unsupported timestamp {v!r}")

    if isinstance(v, str):
        s = v.strip()
        try:
            return to_dt(float(s))
        except ValueError:
            pass
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt_obj = dt.datetime.fromisoformat(s)
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=UTC)

    raise TypeError(f"unsupported timestamp {v!r}")


def parse_timestamp(v) -> dt.datetime:
    try:
        return to_dt(v)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        logger.warning(f"Error parsing timestamp {v!r}: {e}; using current time")
        return dt.datetime.now(UTC)


def _external_id(raw) -> str:
    # Mongo extended JSON: {"$oid": "..."}
    if isinstance(raw, dict) and "$oid" in raw:
        raw = raw["$oid"]
    return str(raw)


# =====================================================================
# Telemetry sample
# =====================================================================
@dataclass(frozen=True)
class TelemetrySample:
    """
    One sensor reading. Known sensor fields are typed attributes; anything
    else the device sends is kept verbatim in ``extra``.
    """

    external_id: str
    timestamp: dt.datetime
    gps_latitude: Optional[float] = None
    gps_longitude: Optional[float] = None
    gps_altitude: Optional[float] = None
    gps_heading: Optional[float] = None
    gps_speed: Optional[float] = None
    gps_climb: Optional[float] = None
    gps_satellites: Optional[int] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    dewpoint: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, external_id, timestamp: dt.datetime, data: Dict[str, Any]) -> "TelemetrySample":
        kwargs = {}
        extra = {}
        for key, value in (data or {}).items():
            if key in WIRE_FIELDS and value is not None:
                attr, cast = WIRE_FIELDS[key]
                try:
                    kwargs[attr] = cast(value)
                except (TypeError, ValueError):
                    extra[key] = value
            elif key not in WIRE_FIELDS:
                extra[key] = value
        return cls(external_id=_external_id(external_id), timestamp=to_dt(timestamp), extra=extra, **kwargs)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "TelemetrySample":
        """Build a sample from an inbound ``logs`` document. Raises ValueError if it has no ``_id``."""
        if not isinstance(document, dict):
            raise ValueError(f"document must be an object, got {type(document).__name__}")
        if document.get("_id") is None:
            raise ValueError("document has no _id")

        data = {k: v for k, v in document.items() if k not in ("_id", "timestamp")}
        return cls.from_data(document["_id"], parse_timestamp(document.get("timestamp")), data)

    def to_data(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for attr, (wire, _) in SAMPLE_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[wire] = value
        return data

    @property
    def has_gps(self) -> bool:
        lat, lon = self.gps_latitude, self.gps_longitude
        if lat is None or lon is None:
            return False
        return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


# =====================================================================
# Dashboard snapshot
# =====================================================================
def _round1(v):
    return round(v, 1) if v is not None else None


@dataclass
class DashboardSnapshot:
    travelling: bool
    distance_km: float
    speed_kmh: float
    gps: Dict[str, Any]
    temperature: Optional[float]
    weather: Dict[str, Optional[float]]
    timestamp: str

    @classmethod
    def from_sample(cls, sample: TelemetrySample, *, travelling: bool,
                    distance_km: float, speed_kmh: float) -> "DashboardSnapshot":
        return cls(
            travelling=travelling,
            distance_km=distance_km,
            speed_kmh=speed_kmh,
            gps={
                "lat": sample.gps_latitude,
                "lon": sample.gps_longitude,
                "altitude": sample.gps_altitude,
                "heading": sample.gps_heading,
                "climb": sample.gps_climb,
                "satellites": sample.gps_satellites,
            },
            temperature=_round1(sample.temperature),
            weather={
                "temperature": _round1(sample.temperature),
                "humidity": _round1(sample.humidity),
                "pressure": _round1(sample.pressure),
                "dewpoint": _round1(sample.dewpoint),
            },
            timestamp=sample.timestamp.isoformat(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "travelling": self.travelling,
            "distance_km": self.distance_km,
            "speed_kmh": self.speed_kmh,
            "gps": dict(self.gps),
            "temperature": self.temperature,
            "weather": dict(self.weather),
            "timestamp": self.timestamp,
        }
