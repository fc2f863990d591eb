from sqlalchemy import (BigInteger, CheckConstraint, Column, DateTime, Integer, Numeric, Text)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from geoalchemy2 import Geography

from tripsync.database import Base


class TelemetryLog(Base):
    __tablename__ = "telemetry_logs"
    id          = Column(BigInteger, primary_key=True, index=True)
    external_id = Column(Text, unique=True, index=True, nullable=False)   # upstream document _id
    timestamp   = Column(DateTime(timezone=True), index=True, nullable=False)
    data        = Column(JSONB, nullable=False, default=dict)
    created_at  = Column(DateTime(timezone=True), server_default=func.now())
    updated_at  = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TripLog(Base):
    __tablename__ = "trip_logs"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="trip_logs_end_after_start"),
    )
    id          = Column(BigInteger, primary_key=True, index=True)
    name        = Column(Text)
    start_time  = Column(DateTime(timezone=True), unique=True, nullable=False)
    end_time    = Column(DateTime(timezone=True), nullable=False)
    max_speed   = Column(Numeric(8, 3))          # m/s
    avg_speed   = Column(Numeric(8, 3))          # m/s
    distance_m  = Column(Numeric, default=0)
    point_count = Column(Integer)
    geom        = Column(Geography("LINESTRING", 4326), nullable=False)
    data        = Column(JSONB, nullable=False, default=dict)
    created_at  = Column(DateTime(timezone=True), server_default=func.now())
    updated_at  = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# Declares the table for migrations; lookups use raw SQL in timezones.timezone_at
class TimezoneZone(Base):
    __tablename__ = "timezone_zones"
    id   = Column(Integer, primary_key=True, index=True)
    tzid = Column(Text, nullable=False)              # IANA name, e.g. Europe/Berlin
    geom = Column(Geography("MULTIPOLYGON", 4326), nullable=False)
