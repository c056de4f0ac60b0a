from shiptracker.services.hub import BroadcastHub, Subscriber, SubscriberRegistry
from shiptracker.services.relay import RelayService
from shiptracker.services.transit_tracker import TransitTracker

__all__ = [
    "BroadcastHub",
    "RelayService",
    "Subscriber",
    "SubscriberRegistry",
    "TransitTracker",
]
