"""
Telemetry sample decoding and dashboard snapshot tests.
"""

import datetime as dt

import pytest

from tripsync.schemas import DashboardSnapshot, TelemetrySample, parse_timestamp, to_dt

UTC = dt.timezone.utc


class TestParseTimestamp:

    def test_iso_string_with_offset(self):
        ts = parse_timestamp("2025-06-01T10:00:00+02:00")
        assert ts == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_iso_string_with_z(self):
        assert parse_timestamp("2025-06-01T08:00:00Z") == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2025-06-01T08:00:00").tzinfo is not None
        assert parse_timestamp("2025-06-01T08:00:00") == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_epoch_seconds(self):
        assert parse_timestamp(1748764800) == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_epoch_milliseconds(self):
        assert parse_timestamp(1748764800000) == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_numeric_string(self):
        assert parse_timestamp("1748764800") == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_boxed_date(self):
        assert parse_timestamp({"$date": "2025-06-01T08:00:00Z"}) == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    def test_boxed_number_long(self):
        ts = parse_timestamp({"$date": {"$numberLong": "1748764800000"}})
        assert ts == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)

    @pytest.mark.parametrize("bad", ["yesterday-ish", None, {"when": 1}, [1, 2], True])
    def test_unparseable_falls_back_to_now(self, bad):
        before = dt.datetime.now(UTC)
        ts = parse_timestamp(bad)
        after = dt.datetime.now(UTC)
        assert before <= ts <= after

    def test_to_dt_raises_on_garbage(self):
        with pytest.raises(ValueError):
            to_dt("not a date")


class TestTelemetrySample:

    def test_from_document_maps_known_fields(self):
        doc = {
            "_id": "abc",
            "timestamp": "2025-06-01T08:00:00Z",
            "gps_latitude": "52.5",
            "gps_longitude": 13.4,
            "gps_speed": 4.2,
            "gps_satellites": "9",
            "shtc3_temperature": 21.456,
            "bmp581_pressure": 1013.25,
            "battery_voltage": 3.9,
        }
        s = TelemetrySample.from_document(doc)

        assert s.external_id == "abc"
        assert s.timestamp == dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)
        assert s.gps_latitude == 52.5
        assert s.gps_satellites == 9
        assert s.temperature == pytest.approx(21.456)
        assert s.pressure == pytest.approx(1013.25)
        assert s.extra == {"battery_voltage": 3.9}
        assert s.has_gps

    def test_object_id(self):
        s = TelemetrySample.from_document({"_id": {"$oid": "65f0c0ffee"}, "timestamp": 0})
        assert s.external_id == "65f0c0ffee"

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValueError):
            TelemetrySample.from_document({"timestamp": "2025-06-01T08:00:00Z"})

    def test_non_object_document_is_rejected(self):
        with pytest.raises(ValueError):
            TelemetrySample.from_document(["nope"])

    def test_uncoercible_value_kept_in_extra(self):
        s = TelemetrySample.from_document({"_id": "x", "timestamp": 0, "gps_speed": "fast"})
        assert s.gps_speed is None
        assert s.extra["gps_speed"] == "fast"

    def test_to_data_round_trips_wire_keys(self):
        doc = {"_id": "x", "timestamp": 0, "gps_latitude": 1.0, "shtc3_humidity": 40.0, "foo": "bar"}
        s = TelemetrySample.from_document(doc)
        assert s.to_data() == {"gps_latitude": 1.0, "shtc3_humidity": 40.0, "foo": "bar"}

    def test_has_gps_requires_both_and_in_range(self):
        ts = dt.datetime(2025, 6, 1, tzinfo=UTC)
        assert not TelemetrySample("a", ts, gps_latitude=52.5).has_gps
        assert not TelemetrySample("a", ts, gps_latitude=95.0, gps_longitude=13.4).has_gps
        assert TelemetrySample("a", ts, gps_latitude=0.0, gps_longitude=0.0).has_gps


class TestDashboardSnapshot:

    def test_shape(self):
        ts = dt.datetime(2025, 6, 1, 8, 0, tzinfo=UTC)
        sample = TelemetrySample(
            "a", ts,
            gps_latitude=52.5, gps_longitude=13.4, gps_altitude=34.0, gps_heading=90.0,
            gps_climb=0.1, gps_satellites=8,
            temperature=21.46, humidity=40.04, pressure=1013.27, dewpoint=7.33,
        )
        snap = DashboardSnapshot.from_sample(sample, travelling=True, distance_km=1.2, speed_kmh=18.0)
        payload = snap.to_dict()

        assert payload == {
            "travelling": True,
            "distance_km": 1.2,
            "speed_kmh": 18.0,
            "gps": {"lat": 52.5, "lon": 13.4, "altitude": 34.0, "heading": 90.0, "climb": 0.1, "satellites": 8},
            "temperature": 21.5,
            "weather": {"temperature": 21.5, "humidity": 40.0, "pressure": 1013.3, "dewpoint": 7.3},
            "timestamp": "2025-06-01T08:00:00+00:00",
        }

    def test_missing_environment_readings_are_null(self):
        sample = TelemetrySample("a", dt.datetime(2025, 6, 1, tzinfo=UTC), gps_latitude=1.0, gps_longitude=2.0)
        payload = DashboardSnapshot.from_sample(sample, travelling=False, distance_km=0.0, speed_kmh=0).to_dict()
        assert payload["temperature"] is None
        assert payload["weather"] == {"temperature": None, "humidity": None, "pressure": None, "dewpoint": None}
