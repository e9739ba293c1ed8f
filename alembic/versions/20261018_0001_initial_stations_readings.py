"""initial stations and readings

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:12:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "stations",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("last_update", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "readings",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("station_id", sa.String(length=100), nullable=False),
        sa.Column("sensor_key", sa.String(length=100), nullable=False),
        sa.Column("ts_ms", sa.BigInteger(), nullable=False),
        sa.Column("date_value", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(["station_id"], ["stations.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "station_id",
            "sensor_key",
            "ts_ms",
            name="uq_readings_station_sensor_ts",
        ),
    )
    op.create_index(
        "ix_readings_station_sensor_ts",
        "readings",
        ["station_id", "sensor_key", "ts_ms"],
    )
    op.create_index("ix_readings_date_value", "readings", ["date_value"])


def downgrade() -> None:
    op.drop_index("ix_readings_date_value", table_name="readings")
    op.drop_index("ix_readings_station_sensor_ts", table_name="readings")
    op.drop_table("readings")
    op.drop_table("stations")
