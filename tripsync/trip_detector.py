import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from tripsync.geo import haversine_distance
from tripsync.logging_config import get_logger
from tripsync.schemas import TelemetrySample
from tripsync.variables import (
    MAX_STATIONARY_DISTANCE,
    MAX_STOP_DURATION,
    MIN_SPEED,
    MIN_TRIP_DISTANCE,
    MIN_TRIP_DURATION,
    MS_TO_KMH,
    STATIONARY_TIME_DELTA,
)

logger = get_logger("trip_detector", "trip_detector.log")


@dataclass(frozen=True)
class DetectionConfig:
    min_speed: float = MIN_SPEED
    max_stop_duration: float = MAX_STOP_DURATION
    min_trip_distance: float = MIN_TRIP_DISTANCE
    min_trip_duration: float = MIN_TRIP_DURATION
    max_stationary_distance: float = MAX_STATIONARY_DISTANCE
    stationary_time_delta: float = STATIONARY_TIME_DELTA


# =====================================================================
# Trip records
# =====================================================================
@dataclass
class TripCandidate:
    """In-progress trip. Lives only until it is finalized or discarded."""

    start_time: dt.datetime
    start_lat: float
    start_lon: float
    end_time: dt.datetime
    end_lat: float
    end_lon: float
    max_speed: float = 0.0
    total_distance: float = 0.0
    points: List[TelemetrySample] = field(default_factory=list)
    stopped_since: Optional[dt.datetime] = None

    @classmethod
    def open(cls, sample: TelemetrySample) -> "TripCandidate":
        return cls(
            start_time=sample.timestamp,
            start_lat=sample.gps_latitude,
            start_lon=sample.gps_longitude,
            end_time=sample.timestamp,
            end_lat=sample.gps_latitude,
            end_lon=sample.gps_longitude,
            max_speed=sample.gps_speed or 0.0,
            points=[sample],
        )

    def extend(self, sample: TelemetrySample, distance_moved: float) -> None:
        if distance_moved > 0:
            self.total_distance += distance_moved
        self.end_time = sample.timestamp
        self.end_lat = sample.gps_latitude
        self.end_lon = sample.gps_longitude
        self.max_speed = max(self.max_speed, sample.gps_speed or 0.0)
        self.points.append(sample)

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()


@dataclass(frozen=True)
class Trip:
    trip_id: int
    start_time: dt.datetime
    end_time: dt.datetime
    start_location: Tuple[float, float]   # (lat, lon)
    end_location: Tuple[float, float]
    total_distance_meters: float
    max_speed_ms: float
    avg_speed_ms: float
    point_count: int
    points: Tuple[TelemetrySample, ...] = ()

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def coordinates(self) -> List[Tuple[float, float]]:
        """Trip path as (lon, lat) pairs."""
        return [(p.gps_longitude, p.gps_latitude) for p in self.points if p.has_gps]

    def name(self, tz=None) -> str:
        """Default display name, in local time when a timezone is given."""
        start = self.start_time.astimezone(tz) if tz is not None else self.start_time
        return f"Trip on {start.strftime('%B %d, %Y at %I:%M %p')}"


@dataclass
class EngineState:
    watermark: Optional[dt.datetime] = None
    last_sample: Optional[TelemetrySample] = None
    candidate: Optional[TripCandidate] = None
    trips: List[Trip] = field(default_factory=list)
    currently_travelling: bool = False


@dataclass
class DetectionResult:
    new_trips: List[Trip]
    state: EngineState


# =====================================================================
# Helpers
# =====================================================================
def finalize_trip(candidate: TripCandidate, trip_id: int, config: DetectionConfig) -> Optional[Trip]:
    """
    Turn a candidate into a Trip, or return None when it is too short
    (distance or duration below the configured minimum).
    """
    duration = candidate.duration_seconds

    if (candidate.total_distance < config.min_trip_distance
            or duration < config.min_trip_duration
            or duration <= 0):
        return None

    return Trip(
        trip_id=trip_id,
        start_time=candidate.start_time,
        end_time=candidate.end_time,
        start_location=(candidate.start_lat, candidate.start_lon),
        end_location=(candidate.end_lat, candidate.end_lon),
        total_distance_meters=candidate.total_distance,
        max_speed_ms=candidate.max_speed,
        avg_speed_ms=candidate.total_distance / duration if duration > 0 else 0.0,
        point_count=len(candidate.points),
        points=tuple(candidate.points),
    )


def _is_travelling(candidate: Optional[TripCandidate], config: DetectionConfig) -> bool:
    if candidate is None:
        return False
    return (candidate.total_distance > config.min_trip_distance
            and candidate.duration_seconds > config.min_trip_duration)


def _select(samples: Iterable[TelemetrySample],
            after: Optional[dt.datetime] = None,
            start: Optional[dt.datetime] = None,
            end: Optional[dt.datetime] = None) -> List[TelemetrySample]:
    selected = [
        s for s in samples
        if (after is None or s.timestamp > after)
        and (start is None or s.timestamp >= start)
        and (end is None or s.timestamp <= end)
    ]
    selected.sort(key=lambda s: s.timestamp)
    return selected


def filter_trips_by_date(trips: Iterable[Trip],
                         start_date: Optional[dt.datetime],
                         end_date: Optional[dt.datetime]) -> List[Trip]:
    return [
        t for t in trips
        if (start_date is None or t.start_time >= start_date)
        and (end_date is None or t.start_time <= end_date)
    ]


# =====================================================================
# Segmentation engine
# =====================================================================
class TripDetector:
    """
    Incremental trip segmentation.

    Each instance owns its state (watermark, open candidate, trips found so
    far) and must be driven from a single worker. ``detect`` only looks at
    samples newer than the watermark, so repeated calls with overlapping
    batches are safe.
    """

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()
        self.state = EngineState()

    # ------------------------------ state ------------------------------
    def clear_cache(self) -> None:
        self.state = EngineState()
        logger.info("[trip_detector] Cache cleared")

    @property
    def watermark(self) -> Optional[dt.datetime]:
        return self.state.watermark

    @property
    def current_trip(self) -> Optional[TripCandidate]:
        return self.state.candidate

    @property
    def current_distance(self) -> float:
        return self.state.candidate.total_distance if self.state.candidate else 0.0

    def currently_travelling(self) -> bool:
        return self.state.currently_travelling

    def all_trips(self) -> List[Trip]:
        return list(self.state.trips)

    def trips_between(self, start_date: Optional[dt.datetime], end_date: Optional[dt.datetime]) -> List[Trip]:
        return filter_trips_by_date(self.state.trips, start_date, end_date)

    def current_trip_points(self) -> List[Tuple[float, float]]:
        if self.state.candidate is None:
            return []
        return [(p.gps_latitude, p.gps_longitude) for p in self.state.candidate.points if p.has_gps]

    # ---------------------------- detection ----------------------------
    def detect(self, samples: Iterable[TelemetrySample],
               config: Optional[DetectionConfig] = None) -> DetectionResult:
        """Process samples newer than the watermark and return the trips closed by them."""
        config = config or self.config
        pending = _select(samples, after=self.state.watermark)
        new_trips = self._scan(self.state, pending, config)
        return DetectionResult(new_trips=new_trips, state=self.state)

    def detect_trips(self, samples: Iterable[TelemetrySample],
                     start_date: Optional[dt.datetime] = None,
                     end_date: Optional[dt.datetime] = None,
                     use_cache: bool = True,
                     config: Optional[DetectionConfig] = None) -> List[Trip]:
        """
        Window-oriented entry point.

        With ``use_cache`` the engine resumes from its stored candidate and
        watermark and returns every engine-known trip starting in the window.
        Without it the window is scanned on a throwaway state, a trailing
        candidate is finalized if it qualifies, and only the trips found in
        this batch are returned.
        """
        config = config or self.config

        if use_cache:
            if self.state.watermark is None:
                pending = _select(samples, start=start_date, end=end_date)
            else:
                pending = _select(samples, after=self.state.watermark, end=end_date)
            self._scan(self.state, pending, config)
            return self.trips_between(start_date, end_date)

        scratch = EngineState()
        new_trips = self._scan(scratch, _select(samples, start=start_date, end=end_date), config)
        if scratch.candidate is not None:
            trip = finalize_trip(scratch.candidate, len(scratch.trips) + 1, config)
            if trip:
                new_trips.append(trip)
        return new_trips

    def trip_summary(self, trips: Optional[List[Trip]] = None) -> dict:
        trips = self.state.trips if trips is None else trips

        if not trips:
            return {
                "total_trips": 0,
                "total_distance_km": 0,
                "total_duration_hours": 0,
                "avg_trip_distance_km": 0,
                "avg_trip_duration_minutes": 0,
                "max_speed_kmh": 0,
            }

        total_distance = sum(t.total_distance_meters for t in trips)
        total_duration = sum(t.duration_seconds for t in trips)
        max_speed = max(t.max_speed_ms for t in trips)

        return {
            "total_trips": len(trips),
            "total_distance_km": total_distance / 1000.0,
            "total_duration_hours": total_duration / 3600.0,
            "avg_trip_distance_km": (total_distance / len(trips)) / 1000.0,
            "avg_trip_duration_minutes": (total_duration / len(trips)) / 60.0,
            "max_speed_kmh": max_speed * MS_TO_KMH,
        }

    # ----------------------------- internals -----------------------------
    def _close(self, state: EngineState, config: DetectionConfig, new_trips: List[Trip], reason: str) -> None:
        candidate = state.candidate
        trip = finalize_trip(candidate, len(state.trips) + 1, config)
        if trip:
            state.trips.append(trip)
            new_trips.append(trip)
            logger.info(
                f"[trip] Finalized trip id={trip.trip_id} ({reason}) start={trip.start_time} "
                f"end={trip.end_time} distance={trip.total_distance_meters:.0f}m "
                f"max_speed={trip.max_speed_ms:.1f}m/s"
            )
        else:
            logger.debug(
                f"[trip] Discarded candidate started {candidate.start_time} ({reason}): "
                f"distance={candidate.total_distance:.0f}m duration={candidate.duration_seconds:.0f}s"
            )
        state.candidate = None

    def _scan(self, state: EngineState, samples: List[TelemetrySample], config: DetectionConfig) -> List[Trip]:
        new_trips: List[Trip] = []

        for sample in samples:
            # Skip invalid GPS data
            if not sample.has_gps:
                continue

            previous = state.last_sample
            distance_moved = 0.0
            time_delta = None
            if previous is not None:
                distance_moved = haversine_distance(
                    previous.gps_latitude, previous.gps_longitude,
                    sample.gps_latitude, sample.gps_longitude,
                )
                time_delta = (sample.timestamp - previous.timestamp).total_seconds()

            # A silent gap longer than a qualifying stop ends the trip
            if state.candidate is not None and time_delta is not None \
                    and time_delta > config.max_stop_duration:
                self._close(state, config, new_trips, reason="gap")

            speed = sample.gps_speed or 0.0
            is_moving = speed >= config.min_speed

            # Nominal speed without displacement is GPS jitter
            if is_moving and time_delta is not None \
                    and distance_moved < config.max_stationary_distance \
                    and time_delta > config.stationary_time_delta:
                is_moving = False

            if is_moving:
                if state.candidate is None:
                    state.candidate = TripCandidate.open(sample)
                else:
                    state.candidate.stopped_since = None
                    state.candidate.extend(sample, distance_moved)
            elif state.candidate is not None:
                if state.candidate.stopped_since is None:
                    state.candidate.stopped_since = sample.timestamp

                stop_duration = (sample.timestamp - state.candidate.stopped_since).total_seconds()
                if stop_duration > config.max_stop_duration:
                    self._close(state, config, new_trips, reason="stop")

            state.last_sample = sample

        if samples:
            last_ts = samples[-1].timestamp
            if state.watermark is None or last_ts > state.watermark:
                state.watermark = last_ts

        state.currently_travelling = _is_travelling(state.candidate, config)
        return new_trips
