"""SQLAlchemy table definitions for the track store.

Tracks, time streams and polylines are stored as little-endian float64 blobs
so that metadata queries never have to decode them.  Id lists and portion
records are stored as JSON text.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BoundsColumns:
    """Mixin adding a lat/lng bounding box."""

    min_lat = Column(Float, nullable=False)
    max_lat = Column(Float, nullable=False)
    min_lng = Column(Float, nullable=False)
    max_lng = Column(Float, nullable=False)


class ActivityRow(BoundsColumns, Base):
    __tablename__ = "activities"

    id = Column(String(255), primary_key=True)
    sport_type = Column(String(64), nullable=False)
    point_count = Column(Integer, nullable=False)
    distance_m = Column(Float, nullable=False)
    name = Column(Text, nullable=True)
    start_date = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_activities_sport", "sport_type"),
        Index("idx_activities_start_date", "start_date"),
    )

    def __repr__(self) -> str:
        return f"<ActivityRow(id={self.id!r}, sport={self.sport_type!r}, points={self.point_count})>"


class GpsTrackRow(Base):
    __tablename__ = "gps_tracks"

    activity_id = Column(
        String(255), ForeignKey("activities.id", ondelete="CASCADE"), primary_key=True
    )
    # float64 pairs (lat, lng)
    points = Column(LargeBinary, nullable=False)


class TimeStreamRow(Base):
    __tablename__ = "time_streams"

    activity_id = Column(
        String(255), ForeignKey("activities.id", ondelete="CASCADE"), primary_key=True
    )
    times = Column(LargeBinary, nullable=False)
    point_count = Column(Integer, nullable=False)


class ActivityMetricsRow(Base):
    __tablename__ = "activity_metrics"

    activity_id = Column(
        String(255), ForeignKey("activities.id", ondelete="CASCADE"), primary_key=True
    )
    name = Column(Text, nullable=True)
    date = Column(Integer, nullable=True)
    distance = Column(Float, nullable=True)
    moving_time = Column(Float, nullable=True)
    elapsed_time = Column(Float, nullable=True)
    elevation_gain = Column(Float, nullable=True)
    avg_hr = Column(Float, nullable=True)
    avg_power = Column(Float, nullable=True)
    sport_type = Column(String(64), nullable=True)


class SectionRow(BoundsColumns, Base):
    __tablename__ = "sections"

    id = Column(String(255), primary_key=True)
    sport_type = Column(String(64), nullable=False)
    scale = Column(String(32), nullable=False)
    polyline = Column(LargeBinary, nullable=False)
    representative_activity_id = Column(String(255), nullable=False)
    activity_ids = Column(Text, nullable=False)
    portions = Column(Text, nullable=False)
    visit_count = Column(Integer, nullable=False)
    activity_count = Column(Integer, nullable=False)
    distance_m = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    average_spread = Column(Float, nullable=False)
    auto_name = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (Index("idx_sections_sport", "sport_type"),)

    def __repr__(self) -> str:
        return f"<SectionRow(id={self.id!r}, scale={self.scale!r}, visits={self.visit_count})>"


class SectionActivityRow(Base):
    """Reverse index: which sections an activity contributes to."""

    __tablename__ = "section_activities"

    section_id = Column(
        String(255), ForeignKey("sections.id", ondelete="CASCADE"), primary_key=True
    )
    activity_id = Column(String(255), primary_key=True)

    __table_args__ = (Index("idx_section_activities_activity", "activity_id"),)


class SectionNameRow(Base):
    __tablename__ = "section_names"

    section_id = Column(String(255), primary_key=True)
    name = Column(Text, nullable=False)


class SectionReferenceRow(Base):
    __tablename__ = "section_references"

    section_id = Column(String(255), primary_key=True)
    activity_id = Column(String(255), nullable=False)


class RouteGroupRow(BoundsColumns, Base):
    __tablename__ = "route_groups"

    id = Column(String(255), primary_key=True)
    sport_type = Column(String(64), nullable=False)
    representative_id = Column(String(255), nullable=False)
    activity_ids = Column(Text, nullable=False)
    matches = Column(Text, nullable=False)
    activity_count = Column(Integer, nullable=False)
    distance_m = Column(Float, nullable=False)
    best_time = Column(Float, nullable=True)


class RouteNameRow(Base):
    __tablename__ = "route_names"

    route_id = Column(String(255), primary_key=True)
    name = Column(Text, nullable=False)


class CustomSectionRow(Base):
    __tablename__ = "custom_sections"

    id = Column(String(255), primary_key=True)
    name = Column(Text, nullable=False)
    polyline = Column(LargeBinary, nullable=False)
    source_activity_id = Column(String(255), nullable=True)
    start_index = Column(Integer, nullable=True)
    end_index = Column(Integer, nullable=True)
    sport_type = Column(String(64), nullable=False)
    distance_m = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)


class CustomSectionMatchRow(Base):
    __tablename__ = "custom_section_matches"

    section_id = Column(
        String(255),
        ForeignKey("custom_sections.id", ondelete="CASCADE"),
        primary_key=True,
    )
    activity_id = Column(String(255), primary_key=True)
    start_index = Column(Integer, primary_key=True)
    end_index = Column(Integer, nullable=False)
    direction = Column(String(16), nullable=False)
    distance_m = Column(Float, nullable=False)
    trace = Column(LargeBinary, nullable=False)

    __table_args__ = (Index("idx_custom_matches_activity", "activity_id"),)


class EngineStateRow(Base):
    """Small key/value table for flags that must survive restarts."""

    __tablename__ = "engine_state"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)
