# worker.py
import asyncio
import datetime as dt
from typing import List, Optional

from tripsync.broadcast import DashboardBroadcaster
from tripsync.config import FRESHNESS_SECONDS
from tripsync.consumer import StreamConsumer
from tripsync.crud import TripStore
from tripsync.logging_config import get_logger
from tripsync.schemas import DashboardSnapshot, TelemetrySample
from tripsync.timezones import TimezoneLookup, day_bounds
from tripsync.trip_detector import Trip, TripDetector
from tripsync.variables import MS_TO_KMH

logger = get_logger("worker", "worker.log")

UTC = dt.timezone.utc


class TelemetrySyncService:
    """
    Handles one stream message at a time: stores the telemetry sample, feeds
    the trip detector and broadcasts a dashboard snapshot.

    Only failures to store the sample propagate (the consumer requeues the
    message). Detection, trip saving and broadcast errors are logged.
    """

    def __init__(self, store: TripStore, detector: Optional[TripDetector] = None,
                 broadcaster: Optional[DashboardBroadcaster] = None,
                 timezones: Optional[TimezoneLookup] = None,
                 freshness_seconds: float = FRESHNESS_SECONDS,
                 clock=None):
        self.store = store
        self.detector = detector or TripDetector()
        self.broadcaster = broadcaster or DashboardBroadcaster()
        self.timezones = timezones or TimezoneLookup()
        self.freshness_seconds = freshness_seconds
        self.clock = clock or (lambda: dt.datetime.now(UTC))

        self._was_travelling = False
        self._saved_until: Optional[dt.datetime] = None

    # ---------- Routing ----------
    async def handle(self, message) -> None:
        if not isinstance(message, dict):
            raise ValueError(f"message must be an object, got {type(message).__name__}")

        collection = message.get("collection")
        if collection == "logs":
            await self.process_log(message.get("document"))
        else:
            logger.warning(f"Unknown collection: {collection}")

    async def process_log(self, document) -> Optional[DashboardSnapshot]:
        sample = TelemetrySample.from_document(document)
        await self.store.upsert_telemetry_log(sample)
        return await self.broadcast_dashboard_update(sample)

    # ---------- Detection + broadcast ----------
    def is_recent(self, sample: TelemetrySample, now: dt.datetime) -> bool:
        return (now - sample.timestamp).total_seconds() <= self.freshness_seconds

    async def broadcast_dashboard_update(self, sample: TelemetrySample) -> Optional[DashboardSnapshot]:
        if not sample.has_gps:
            return None

        now = self.clock()
        if not self.is_recent(sample, now):
            logger.info(f"Skipping dashboard update for stale sample {sample.external_id} ({sample.timestamp})")
            return None

        try:
            tz = await self.timezones.timezone_for(sample.gps_latitude, sample.gps_longitude)
            day_start, day_end = day_bounds(now, tz)
            await self.refresh_trips(day_start, day_end)
            snapshot = self.build_dashboard_data(sample, day_start, day_end)
        except Exception as e:
            logger.exception(f"Trip detection error for {sample.external_id}: {e}")
            return None

        await self.save_trips_on_transition(tz)

        try:
            await self.broadcaster.publish(snapshot)
        except Exception as e:
            logger.exception(f"Broadcast error: {e}")

        return snapshot

    async def refresh_trips(self, day_start: dt.datetime, day_end: dt.datetime) -> List[Trip]:
        if self.detector.watermark is None:
            samples = await self.store.fetch_samples(start=day_start, end=day_end)
        else:
            samples = await self.store.fetch_samples(after=self.detector.watermark, end=day_end)

        return self.detector.detect_trips(samples, start_date=day_start, end_date=day_end, use_cache=True)

    def today_distance_km(self, day_start: dt.datetime, day_end: dt.datetime) -> float:
        meters = sum(t.total_distance_meters for t in self.detector.trips_between(day_start, day_end))
        meters += self.detector.current_distance
        return round(meters / 1000.0, 1)

    def build_dashboard_data(self, sample: TelemetrySample,
                             day_start: dt.datetime, day_end: dt.datetime) -> DashboardSnapshot:
        speed_kmh = round(sample.gps_speed * MS_TO_KMH, 1) if sample.gps_speed else 0
        return DashboardSnapshot.from_sample(
            sample,
            travelling=self.detector.currently_travelling(),
            distance_km=self.today_distance_km(day_start, day_end),
            speed_kmh=speed_kmh,
        )

    # ---------- Trip persistence ----------
    def unsaved_trips(self) -> List[Trip]:
        trips = self.detector.all_trips()
        if self._saved_until is None:
            return trips
        return [t for t in trips if t.start_time > self._saved_until]

    async def save_trips_on_transition(self, tz=None) -> int:
        travelling = self.detector.currently_travelling()
        if self._was_travelling and not travelling:
            logger.info("[trip] Vehicle stopped travelling")
        self._was_travelling = travelling

        pending = self.unsaved_trips()
        if not pending:
            return 0

        try:
            saved = await self.save_new_trips(pending, tz)
        except Exception as e:
            # marker stays behind, so the next fresh sample retries
            logger.exception(f"Trip save error: {e}")
            return 0

        self._saved_until = pending[-1].start_time
        return saved

    async def save_new_trips(self, trips: List[Trip], tz=None) -> int:
        # window spans the unsaved trips themselves, which may start on an earlier local day
        stored = await self.store.count_trips_between(trips[0].start_time, trips[-1].start_time)
        missing = len(trips) - stored
        if missing <= 0:
            return 0

        logger.info(f"[trip] {missing} new trip(s) ({len(trips)} unsaved, {stored} already stored)")
        # save is idempotent by start time, so already stored trips are skipped
        return await self.store.save_trips(trips, tz)


# ---------- Entrypoint ----------
async def worker():
    service = TelemetrySyncService(TripStore())
    consumer = StreamConsumer()

    logger.info("Worker listening for telemetry stream messages...")
    await consumer.run(service.handle)


def main():
    logger.info("Worker starting up...")
    try:
        asyncio.run(worker())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
