"""
Playback session for Region Remote.

The PlaybackSession is the owning context for one connection to the DAW. It
builds every component, wires them together and runs them on its scheduler:

    poll task --fetch (worker)--> process_snapshot --> tracker.update_from_snapshot
                                                  +-changed-> predictor.reconcile
                                                             autoplay.evaluate
    refresh task --> predictor.predict --> 'position_update'
    project task --fetch id (worker)--changed--> setlists.load_project
                                                 request_reload

Public methods that change state are safe to call from any thread (web
requests, the console): they are queued onto the scheduler thread.

Usage:
    session = PlaybackSession(ReaperWebGateway())
    session.on('state_changed', on_state)
    session.init()
    ...
    session.toggle_play()
    ...
    session.shutdown()
"""

import logging
from typing import Callable, List, Optional

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import FETCH_FAILURE_ESCALATION_COUNT, PROJECT_POLL_INTERVAL

from .autoplay import AutoplayController
from .commands import CommandDispatcher, thread_runner
from .errors import CommandError, ValidationError
from .events import EventBus
from .marker_directives import MarkerLengthExtractor
from .playback_state import PlaybackStateTracker
from .position_predictor import PositionPredictor
from .regions import Region, RegionCatalog
from .scheduler import Scheduler
from .settings import SessionSettings
from .setlists import SetlistStore

logger = logging.getLogger("RegionRemote.Session")


class PlaybackSession:
    """
    Owns the catalog, tracker, predictor, autoplay controller and their timers.

    Args:
        gateway: TransportGateway implementation
        settings: SessionSettings (defaults from config.py)
        scheduler: Scheduler to run on (a VirtualClock one in tests)
        dispatcher: CommandDispatcher for gateway commands
        fetch_runner: Runs blocking fetches; thread_runner by default
        on_settings_saved: Called with a dict of changed options, used to
            persist them as preferences
        setlists: SetlistStore for the project's setlists (stored under
            SETLIST_DIR by default)
    """

    def __init__(self, gateway, settings: Optional[SessionSettings] = None,
                 scheduler: Optional[Scheduler] = None,
                 dispatcher: Optional[CommandDispatcher] = None,
                 fetch_runner: Optional[Callable] = None,
                 on_settings_saved: Optional[Callable] = None,
                 setlists: Optional[SetlistStore] = None):
        self.gateway = gateway
        self.settings = settings or SessionSettings()
        self.bus = EventBus()
        self.scheduler = scheduler or Scheduler()
        self.dispatcher = dispatcher or CommandDispatcher(self.scheduler)
        self.fetch_runner = fetch_runner or thread_runner
        self.on_settings_saved = on_settings_saved

        self.catalog = RegionCatalog()
        self.extractor = MarkerLengthExtractor()
        self.tracker = PlaybackStateTracker(
            self.bus,
            autoplay_enabled=self.settings.autoplay_enabled,
            count_in_enabled=self.settings.count_in_enabled,
        )
        self.predictor = PositionPredictor(tolerance=self.settings.resync_tolerance_seconds)
        self.setlists = setlists if setlists is not None else SetlistStore()
        self.setlists.on_change = self._on_setlists_changed
        self.autoplay = AutoplayController(
            self.tracker, self.catalog, gateway, self.dispatcher, self.scheduler,
            extractor=self.extractor,
            count_in_lead_seconds=self.settings.count_in_lead_seconds,
            count_in_policy=self.settings.count_in_policy,
            setlists=self.setlists,
        )

        self.project_id: Optional[str] = None
        self._poll_task = None
        self._refresh_task = None
        self._project_task = None
        self._project_fetch_in_flight = False
        self._fetch_in_flight = False
        self._fetch_failures = 0
        self._disconnected = False
        self.initialized = False

        self.bus.on('settings_changed', self._on_settings_changed)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def on(self, event: str, callback: Callable) -> None:
        self.bus.on(event, callback)

    def off(self, event: str, callback: Callable) -> None:
        self.bus.off(event, callback)

    @property
    def state(self):
        return self.tracker.state

    @property
    def autoplay_state(self):
        return self.autoplay.state

    def predicted_position(self) -> float:
        return self.predictor.predict(self.scheduler.now())

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def init(self, start_thread: bool = True) -> None:
        """
        Read the project id, load its setlists and regions, start polling.

        A failed initial region load is reported on the bus and leaves an
        empty catalog; request_reload() can be used later.
        """
        if self.initialized:
            return

        try:
            self._switch_project(self.gateway.fetch_project_id())
        except CommandError as e:
            logger.warning(f"Could not read the project id: {e}")

        try:
            self.load_regions(self.gateway.fetch_regions())
        except CommandError as e:
            logger.warning(f"Could not load regions: {e}")
            self.bus.emit('error', 'connectivity', str(e))
        except ValidationError as e:
            logger.warning(f"Rejected region list: {e}")
            self.bus.emit('error', 'validation', str(e))

        self._poll_task = self.scheduler.call_every(
            self.settings.poll_interval, self._poll, name="poll", start_delay=0.0)
        self._refresh_task = self.scheduler.call_every(
            self.settings.ui_refresh_interval, self._refresh, name="ui_refresh")
        self._project_task = self.scheduler.call_every(
            PROJECT_POLL_INTERVAL, self._poll_project, name="project_poll")
        self.initialized = True

        if start_thread:
            self.scheduler.start()
        logger.info(f"Session started: {len(self.catalog)} regions, "
                    f"autoplay={self.state.autoplay_enabled}, count_in={self.state.count_in_enabled}")

    def shutdown(self) -> None:
        """
        Stop the scheduler, then drop its timers and any pending autoplay
        session.

        The controller is only touched once the scheduler thread has
        stopped, so nothing else is running on it.
        """
        self.scheduler.stop()
        self.scheduler.cancel_all()
        self._poll_task = None
        self._refresh_task = None
        self._project_task = None
        self._fetch_in_flight = False
        self._project_fetch_in_flight = False
        self.autoplay.reset()
        self.initialized = False
        logger.info("Session stopped")

    # =========================================================================
    # REGIONS
    # =========================================================================

    def load_regions(self, regions: List[Region]) -> None:
        """
        Replace the region catalog.

        Raises:
            ValidationError: the list is unsorted or overlapping; the
                previous catalog stays active
        """
        self.catalog.load(regions)
        self.autoplay.reset()
        self.tracker.recompute_region(self.catalog)
        self.bus.emit('regions_loaded', self.catalog.to_list())

    def request_reload(self) -> None:
        """Fetch and load the region list again (project changed)."""
        def job():
            regions, error = None, None
            try:
                regions = self.gateway.fetch_regions()
            except CommandError as e:
                error = e
            except Exception as e:
                error = CommandError("reload_regions", str(e) or e.__class__.__name__)
            self.scheduler.call_soon_threadsafe(self._on_regions_fetched, regions, error)

        self.fetch_runner(job, "reload_regions")

    def _on_regions_fetched(self, regions, error) -> None:
        if error is not None:
            logger.warning(f"Region reload failed: {error}")
            self.bus.emit('error', 'connectivity', str(error))
            return
        try:
            self.load_regions(regions)
        except ValidationError as e:
            logger.warning(f"Rejected region list: {e}")
            self.bus.emit('error', 'validation', str(e))

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def process_snapshot(self, raw: str) -> bool:
        """
        Apply one raw snapshot and propagate a change.

        Runs on the scheduler thread. The next snapshot is not processed
        until this (including any autoplay transition) has returned.
        """
        changed = self.tracker.update_from_snapshot(raw, self.catalog)
        if changed:
            state = self.tracker.state
            self.predictor.reconcile(self.scheduler.now(), state.current_position, state.is_playing)
            self.autoplay.evaluate(state)
        return changed

    def _poll(self) -> None:
        if self._fetch_in_flight:
            return
        self._fetch_in_flight = True

        def job():
            raw, error = None, None
            try:
                raw = self.gateway.fetch_transport()
            except CommandError as e:
                error = e
            except Exception as e:
                # Every failure reaches _on_transport_fetched, which clears
                # the in-flight flag
                error = CommandError("poll", str(e) or e.__class__.__name__)
            self.scheduler.call_soon_threadsafe(self._on_transport_fetched, raw, error)

        self.fetch_runner(job, "poll")

    def _on_transport_fetched(self, raw, error) -> None:
        self._fetch_in_flight = False
        if error is not None:
            self._on_fetch_failed(error)
            return

        if self._disconnected:
            logger.info("Transport reachable again")
        self._fetch_failures = 0
        self._disconnected = False
        self.process_snapshot(raw)

    def _on_fetch_failed(self, error: CommandError) -> None:
        self._fetch_failures += 1
        logger.debug(f"Transport poll failed ({self._fetch_failures}): {error}")
        if self._fetch_failures >= FETCH_FAILURE_ESCALATION_COUNT and not self._disconnected:
            self._disconnected = True
            message = f"Lost contact with the DAW transport: {error}"
            logger.warning(message)
            self.autoplay.reset()
            self.bus.emit('error', 'connectivity', message)

    def _refresh(self) -> None:
        self.bus.emit('position_update', self.predicted_position(), self.tracker.state)

    # =========================================================================
    # PROJECT
    # =========================================================================

    def _poll_project(self) -> None:
        if self._project_fetch_in_flight:
            return
        self._project_fetch_in_flight = True

        def job():
            project_id, error = None, None
            try:
                project_id = self.gateway.fetch_project_id()
            except CommandError as e:
                error = e
            except Exception as e:
                error = CommandError("project_id", str(e) or e.__class__.__name__)
            self.scheduler.call_soon_threadsafe(self._on_project_fetched, project_id, error)

        self.fetch_runner(job, "project_poll")

    def _on_project_fetched(self, project_id, error) -> None:
        self._project_fetch_in_flight = False
        if error is not None:
            # The transport poll reports lost contact
            logger.debug(f"Project id poll failed: {error}")
            return
        if project_id == self.project_id:
            return

        logger.info(f"Project changed: {self.project_id} -> {project_id}")
        self._switch_project(project_id)
        self.bus.emit('project_changed', project_id)
        self.request_reload()

    def _switch_project(self, project_id: str) -> None:
        self.project_id = project_id
        self.autoplay.select_setlist(None)
        self.setlists.load_project(project_id)

    # =========================================================================
    # SETLISTS
    # =========================================================================

    @property
    def selected_setlist_id(self) -> Optional[str]:
        return self.autoplay.selected_setlist_id

    def select_setlist(self, setlist_id: Optional[str]) -> None:
        """Follow a setlist's order for autoplay and next/previous (None: timeline)."""
        self.scheduler.call_soon_threadsafe(self._select_setlist, setlist_id)

    def _select_setlist(self, setlist_id: Optional[str]) -> None:
        if setlist_id is not None and self.setlists.get(setlist_id) is None:
            logger.warning(f"Unknown setlist {setlist_id}")
            self.bus.emit('error', 'validation', f"Unknown setlist {setlist_id}")
            return
        self.autoplay.select_setlist(setlist_id)
        self._on_setlists_changed(self.setlists)

    def _on_setlists_changed(self, store) -> None:
        selected = self.autoplay.selected_setlist_id
        if selected is not None and store.get(selected) is None:
            # The selected setlist was deleted
            self.scheduler.call_soon_threadsafe(self._select_setlist, None)
        self.bus.emit('setlists_changed', store.to_list(), selected)

    # =========================================================================
    # MANUAL ACTIONS (thread-safe)
    # =========================================================================

    def toggle_play(self) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.toggle_play)

    def next_region(self) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.next_region)

    def previous_region(self) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.previous_region)

    def toggle_autoplay(self) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.toggle_autoplay)

    def toggle_count_in(self) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.toggle_count_in)

    def seek_to_region(self, region_id: int) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.seek_to_region, region_id)

    def seek_to_position(self, seconds: float) -> None:
        self.scheduler.call_soon_threadsafe(self.autoplay.seek_to_position, seconds)

    def _on_settings_changed(self, state) -> None:
        self.settings.autoplay_enabled = state.autoplay_enabled
        self.settings.count_in_enabled = state.count_in_enabled
        if self.on_settings_saved is not None:
            self.on_settings_saved({
                'autoplay_enabled': state.autoplay_enabled,
                'count_in_enabled': state.count_in_enabled,
            })
