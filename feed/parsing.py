"""
AISStream frame decoding.

- decode_message: raw frame -> dict (DecodeError on anything else).
- position_from_message / static_from_message: typed views used by the tracker.
  Every frame is still forwarded verbatim to subscribers; these only pick out
  what the transit tracker needs.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from shiptracker.core.errors import DecodeError

# ─────────────────────────────────────────────────────────────
# Ship type helper
# ─────────────────────────────────────────────────────────────
SHIP_TYPES: dict[int, str] = {
    0: "Not available",
    30: "Fishing",
    31: "Towing",
    33: "Dredger",
    35: "Military",
    36: "Sailing",
    37: "Pleasure craft",
    40: "High-speed craft",
    50: "Pilot vessel",
    51: "SAR vessel",
    52: "Tug",
    60: "Passenger",
    70: "Cargo",
    80: "Tanker",
    90: "Other",
}

# AISStream time_utc, e.g. "2024-05-01 12:00:00.123456789 +0000 UTC"
_AIS_TIME = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})(?:\.(\d+))? ([+-]\d{4})(?: [A-Z]+)?$"
)


@dataclass(frozen=True)
class PositionReport:
    mmsi: int
    timestamp: datetime
    speed: float = 0.0
    name: Optional[str] = None
    ship_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    # Supplied by whoever computes heading (the frontend); never derived here.
    direction: Optional[str] = None


@dataclass(frozen=True)
class StaticReport:
    mmsi: int
    name: Optional[str] = None
    ship_type: Optional[str] = None
    destination: Optional[str] = None
    dimensions: Optional[str] = None


def ship_type_text(code: Any) -> str | None:
    if code is None:
        return None
    if isinstance(code, str):
        if not code.strip():
            return None
        try:
            code = int(code)
        except ValueError:
            return code.strip()
    for base, label in sorted(SHIP_TYPES.items(), reverse=True):
        if code >= base:
            return label
    return "Unknown"


def _ts(raw: str | None) -> datetime:
    if raw:
        value = raw.strip()
        m = _AIS_TIME.match(value)
        if m:
            stamp, frac, offset = m.groups()
            frac = (frac or "0")[:6].ljust(6, "0")
            try:
                return datetime.strptime(f"{stamp}.{frac} {offset}", "%Y-%m-%d %H:%M:%S.%f %z")
            except ValueError:
                pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _text(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _dimensions(dim: dict[str, Any] | None) -> str | None:
    """A+B is length, C+D is beam (metres from the AIS reference point)."""
    if not dim:
        return None
    length = (dim.get("A") or 0) + (dim.get("B") or 0)
    beam = (dim.get("C") or 0) + (dim.get("D") or 0)
    if not length and not beam:
        return None
    return f"{length}x{beam}"


def decode_message(raw: str | bytes) -> dict[str, Any]:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(msg, dict):
        raise DecodeError(f"expected a JSON object, got {type(msg).__name__}")
    return msg


def extract_stream_error(msg: dict[str, Any]) -> str | None:
    """
    AISStream docs define server-side failures as: {"error": "..."}.
    Surface these explicitly (e.g., invalid API key or bounding box).
    """
    err = msg.get("error") or msg.get("Error")
    if isinstance(err, str):
        err = err.strip()
        return err or None
    return None


def position_from_message(msg: dict[str, Any]) -> PositionReport | None:
    if msg.get("MessageType") != "PositionReport":
        return None
    meta = msg.get("MetaData")
    if not isinstance(meta, dict):
        return None
    pos = (msg.get("Message") or {}).get("PositionReport") or {}
    try:
        mmsi = int(meta.get("MMSI", 0) or pos.get("UserID", 0))
    except (TypeError, ValueError):
        return None
    if not mmsi:
        return None
    try:
        speed = float(pos.get("Sog") or 0)
    except (TypeError, ValueError):
        speed = 0.0
    return PositionReport(
        mmsi=mmsi,
        timestamp=_ts(meta.get("time_utc")),
        speed=speed,
        name=_text(meta.get("ShipName")),
        ship_type=ship_type_text(meta.get("ShipType")),
        latitude=pos.get("Latitude", meta.get("latitude")),
        longitude=pos.get("Longitude", meta.get("longitude")),
        direction=_text(msg.get("direction")),
    )


def static_from_message(msg: dict[str, Any]) -> StaticReport | None:
    if msg.get("MessageType") != "ShipStaticData":
        return None
    meta = msg.get("MetaData") or {}
    static = (msg.get("Message") or {}).get("ShipStaticData")
    if not static:
        return None
    try:
        mmsi = int(meta.get("MMSI", 0) or static.get("UserID", 0))
    except (TypeError, ValueError):
        return None
    if not mmsi:
        return None
    return StaticReport(
        mmsi=mmsi,
        name=_text(static.get("Name")) or _text(meta.get("ShipName")),
        ship_type=ship_type_text(static.get("Type")),
        destination=_text(static.get("Destination")),
        dimensions=_dimensions(static.get("Dimension")),
    )
