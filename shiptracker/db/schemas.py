"""API response schemas."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TransitOut(BaseModel):
    """One transit record (open or passed)."""
    model_config = ConfigDict(from_attributes=True)

    mmsi: int
    name: Optional[str] = None
    ship_type: Optional[str] = None
    destination: Optional[str] = None
    dimensions: Optional[str] = None
    direction: Optional[str] = None
    first_seen: datetime
    last_seen: datetime
    max_speed: float = 0.0
    passed: bool = False
    passed_at: Optional[datetime] = None


class TransitStats(BaseModel):
    total: int = 0
    today: int = 0


class StatusOut(BaseModel):
    status: str
    connections: int
    database: str
    stats: TransitStats
    timestamp: datetime
    upstream: str


class PassedOut(BaseModel):
    mmsi: int
    passed: bool
