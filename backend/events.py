"""
Event bus for Region Remote.

Observers register callbacks for named events; components publish typed
payloads to them. The event table is fixed so a typo in an event name is
reported instead of silently never firing.

Available Events:
- 'state_changed':    (state: PlaybackState)      snapshot changed the state
- 'settings_changed': (state: PlaybackState)      autoplay / count-in toggled
- 'autoplay_state':   (state: AutoplayState)      controller transition
- 'position_update':  (position: float, state: PlaybackState)  predicted
- 'regions_loaded':   (regions: List[Region])
- 'project_changed':  (project_id: str)          the DAW opened another project
- 'setlists_changed': (setlists: List[dict], selected_id: Optional[str])
- 'error':            (kind: str, message: str)   'connectivity', 'command',
                                                  'validation'
"""

import logging
from typing import Callable, Dict, List

logger = logging.getLogger("RegionRemote.Events")

EVENTS = (
    'state_changed',
    'settings_changed',
    'autoplay_state',
    'position_update',
    'regions_loaded',
    'project_changed',
    'setlists_changed',
    'error',
)


class EventBus:
    """
    Explicit publish/subscribe list.

    Usage:
        bus = EventBus()
        bus.on('state_changed', lambda state: print(state))
        bus.emit('state_changed', state)
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callable]] = {name: [] for name in EVENTS}

    def on(self, event: str, callback: Callable) -> None:
        """
        Register a callback for an event.

        Args:
            event: Event name (see module docstring for available events)
            callback: Function to call when event occurs
        """
        if event in self._callbacks:
            self._callbacks[event].append(callback)
        else:
            logger.warning(f"Unknown event: {event}. Available: {list(self._callbacks.keys())}")

    def off(self, event: str, callback: Callable) -> None:
        """Unregister a callback for an event."""
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)

    def emit(self, event: str, *args) -> None:
        """Emit an event to all registered callbacks."""
        # Copy so a callback may unsubscribe itself while we iterate
        for callback in list(self._callbacks.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in callback for {event}: {e}")
