"""
Row mapping for the PostgreSQL store (no database needed).
"""

import datetime as dt
from types import SimpleNamespace

from fakes import Route
from tripsync.crud import row_to_sample, trip_values
from tripsync.trip_detector import TripDetector

UTC = dt.timezone.utc


def test_row_to_sample():
    row = SimpleNamespace(
        external_id="abc",
        timestamp=dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC),
        data={"gps_latitude": 52.5, "gps_longitude": 13.4, "gps_speed": 2.0, "foo": 1},
    )

    s = row_to_sample(row)

    assert s.external_id == "abc"
    assert s.gps_speed == 2.0
    assert s.extra == {"foo": 1}
    assert s.has_gps


def test_trip_values():
    r = Route()
    detector = TripDetector()
    trip = detector.detect(r.drive(7) + r.park(7)).new_trips[0]

    values = trip_values(trip)

    assert values["start_time"] == trip.start_time
    assert values["end_time"] == trip.end_time
    assert values["point_count"] == 7
    assert values["data"] == {"trip_id": 1}
    assert values["name"] == trip.name()
    assert values["name"] == "Trip on June 01, 2025 at 08:00 AM"
    lon, lat = trip.coordinates[0]
    assert values["geom"].startswith(f"SRID=4326;LINESTRING({lon} {lat}, ")
    assert values["geom"].count(",") == 6
