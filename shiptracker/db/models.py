from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Index, Integer, Text, text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ShipTransit(Base):
    """
    One sighting-to-crossing of the monitored area by one vessel.

    Open while passed is false; closed once (passed=true, passed_at set) by the
    crossing signal. A later sighting of the same MMSI opens a new row. The
    partial unique index keeps at most one open row per MMSI.
    """
    __tablename__ = "ship_transits"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    mmsi = Column(BigInteger, nullable=False)
    name = Column(Text)
    ship_type = Column(Text)
    destination = Column(Text)
    dimensions = Column(Text)
    direction = Column(Text)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)
    max_speed = Column(Float, nullable=False, default=0.0)
    passed = Column(Boolean, nullable=False, default=False)
    passed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_transits_mmsi", "mmsi"),
        Index("idx_transits_last_seen", "last_seen"),
        Index("idx_transits_passed_at", "passed", "passed_at"),
        Index(
            "uq_transits_open_mmsi",
            "mmsi",
            unique=True,
            postgresql_where=text("passed = false"),
            sqlite_where=text("passed = 0"),
        ),
    )
