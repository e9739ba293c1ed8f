from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from telemetry_sync.db.base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class Station(Base):
    __tablename__ = "stations"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SensorReading(Base):
    __tablename__ = "readings"
    __table_args__ = (
        UniqueConstraint(
            "station_id",
            "sensor_key",
            "ts_ms",
            name="uq_readings_station_sensor_ts",
        ),
        Index("ix_readings_station_sensor_ts", "station_id", "sensor_key", "ts_ms"),
        Index("ix_readings_date_value", "date_value"),
    )

    id: Mapped[int] = mapped_column(_ID_TYPE, Identity(always=False), primary_key=True)
    station_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("stations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    sensor_key: Mapped[str] = mapped_column(String(100), nullable=False)
    ts_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    date_value: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
