from shiptracker.db.database import Store, open_store, try_open_store
from shiptracker.db.models import Base, ShipTransit

__all__ = [
    "Store",
    "open_store",
    "try_open_store",
    "Base",
    "ShipTransit",
]
