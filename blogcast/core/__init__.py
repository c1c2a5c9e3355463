"""
Realtime core: dispatch, fan-out, background work and idle reaping.
"""

from blogcast.core.broadcaster import Broadcaster
from blogcast.core.dispatcher import EventDispatcher
from blogcast.core.gateway import RealtimeGateway
from blogcast.core.reaper import IdleReaper
from blogcast.core.tasks import BackgroundTasks

__all__ = [
    "Broadcaster",
    "EventDispatcher",
    "RealtimeGateway",
    "IdleReaper",
    "BackgroundTasks",
]
