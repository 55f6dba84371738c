"""
Autoplay controller for Region Remote.

Watches authoritative playback state and, when a song (region) ends, moves
the transport to the next region: the next item of the selected setlist, or
the next region on the timeline when no setlist is selected:

    IDLE ──play──▶ PLAYING ──region end──▶ [COUNT_IN] ──deadline──▶ ADVANCING
                     ▲  │                                              │
                     │  └──enter hard-stop region──▶ HARD_STOPPED      │
                     └──────────── snapshot shows target region ◀──────┘

An advance is one AutoplaySession. It ends by confirmation, failure or
cancellation; a cancelled session never fires its deadline, because every
scheduled callback checks that its session is still the current one.

Manual actions (play/pause, next, previous, seeks, autoplay toggle) cancel a
pending session synchronously and re-enter PLAYING or IDLE from the play
state the action produces. Gateway failures are logged, emitted as
error('command', ...) and leave the controller where it was before the
action, so the next snapshot or click retries. A rejected autoplay or
count-in toggle also puts the flag back.

All methods run on the scheduler thread.
"""

import logging
import itertools
from enum import Enum, auto
from dataclasses import dataclass
from typing import Callable, Optional

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import (
    COUNT_IN_LEAD_SECONDS, COUNT_IN_POLICY, COUNT_IN_BARS, BEATS_PER_BAR,
    AUTOPLAY_END_WINDOW_SECONDS, ADVANCE_CONFIRM_TIMEOUT,
)

from .errors import CommandError
from .marker_directives import MarkerLengthExtractor, extract_bpm, is_hard_stop

logger = logging.getLogger("RegionRemote.Autoplay")

COUNT_IN_POLICIES = ("fixed", "tempo")


class AutoplayState(Enum):
    """Autoplay controller state."""
    IDLE = auto()
    PLAYING = auto()
    COUNT_IN = auto()
    ADVANCING = auto()
    HARD_STOPPED = auto()


@dataclass
class AutoplaySession:
    """
    One pending advance, from trigger to confirmation or cancellation.

    Attributes:
        token: Unique id, checked by every deferred callback
        target_region_id: Region the advance moves to
        prior_state: Controller state to return to if the advance fails
        hard_stop: Target region carries the stop directive
        count_in_deadline: Scheduler time the count-in ends (None without one)
        command_done: seek + play completed successfully
        cancelled: Session was cancelled; deferred callbacks must ignore it
        timer: Pending count-in deadline or confirmation timeout
    """
    token: int
    target_region_id: int
    prior_state: AutoplayState
    hard_stop: bool = False
    count_in_deadline: Optional[float] = None
    command_done: bool = False
    cancelled: bool = False
    timer: object = None


class AutoplayController:
    """
    Autoplay state machine.

    Usage:
        controller = AutoplayController(tracker, catalog, gateway, dispatcher, scheduler)
        bus.on('state_changed', controller.evaluate)
        controller.next_region()
    """

    def __init__(self, tracker, catalog, gateway, dispatcher, scheduler,
                 extractor: Optional[MarkerLengthExtractor] = None,
                 count_in_lead_seconds: float = COUNT_IN_LEAD_SECONDS,
                 count_in_policy: str = COUNT_IN_POLICY,
                 end_window: float = AUTOPLAY_END_WINDOW_SECONDS,
                 confirm_timeout: float = ADVANCE_CONFIRM_TIMEOUT,
                 setlists=None):
        self.tracker = tracker
        self.catalog = catalog
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.bus = tracker.bus
        self.extractor = extractor or MarkerLengthExtractor()
        self.setlists = setlists

        self.count_in_lead_seconds = count_in_lead_seconds
        self.count_in_policy = count_in_policy
        self.end_window = end_window
        self.confirm_timeout = confirm_timeout

        self._state = AutoplayState.IDLE
        self._session: Optional[AutoplaySession] = None
        self._active_region_id: Optional[int] = None
        self._tokens = itertools.count(1)
        self._manual_token = 0
        self._setlist_id: Optional[str] = None

    @property
    def state(self) -> AutoplayState:
        return self._state

    @property
    def session(self) -> Optional[AutoplaySession]:
        return self._session

    @property
    def active_region_id(self) -> Optional[int]:
        return self._active_region_id

    @property
    def selected_setlist_id(self) -> Optional[str]:
        return self._setlist_id

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def set_count_in_policy(self, policy: str, lead_seconds: Optional[float] = None) -> None:
        if policy not in COUNT_IN_POLICIES:
            raise ValueError(f"Unknown count-in policy '{policy}'. Available: {COUNT_IN_POLICIES}")
        self.count_in_policy = policy
        if lead_seconds is not None:
            self.count_in_lead_seconds = max(0.0, float(lead_seconds))

    def count_in_lead(self, target) -> float:
        """Seconds to wait before advancing to `target`."""
        if self.count_in_policy == "tempo":
            bpm = extract_bpm(target)
            if bpm:
                return COUNT_IN_BARS * BEATS_PER_BAR * 60.0 / bpm
        return self.count_in_lead_seconds

    # =========================================================================
    # PLAY ORDER
    # =========================================================================

    def select_setlist(self, setlist_id: Optional[str]) -> None:
        """
        Follow a setlist's order (None: timeline order).

        A pending advance was aimed by the old order, so it is cancelled.
        """
        if setlist_id == self._setlist_id:
            return
        self._setlist_id = setlist_id
        logger.info(f"Play order: {'setlist ' + setlist_id if setlist_id else 'timeline'}")
        if self.cancel_session("play order changed"):
            self._transition(AutoplayState.PLAYING if self.tracker.state.is_playing
                             else AutoplayState.IDLE)

    def _setlist_order(self):
        if self.setlists is None or self._setlist_id is None:
            return ()
        return self.setlists.region_order(self._setlist_id)

    def next_target(self, region_id: Optional[int]):
        """
        Region that follows `region_id` in the current play order.

        In a setlist: outside any region the first item is next; a region
        that is not in the setlist, or is its last item, has no next.
        Items whose region no longer exists are skipped.
        """
        order = self._setlist_order()
        if not order:
            return self.catalog.next_region(region_id) if region_id is not None else None
        if region_id is None:
            following = order
        elif region_id in order:
            following = order[order.index(region_id) + 1:]
        else:
            return None
        return self._first_existing(following)

    def previous_target(self, region_id: Optional[int]):
        """Region before `region_id` in the current play order."""
        order = self._setlist_order()
        if not order:
            return self.catalog.previous_region(region_id) if region_id is not None else None
        if region_id is None or region_id not in order:
            return None
        return self._first_existing(reversed(order[:order.index(region_id)]))

    def _first_existing(self, region_ids):
        for region_id in region_ids:
            region = self.catalog.get(region_id)
            if region is not None:
                return region
        return None

    # =========================================================================
    # STATE EVALUATION
    # =========================================================================

    def evaluate(self, state) -> None:
        """
        Fold a changed PlaybackState into the state machine.

        Called for every 'state_changed' notification, in order.
        """
        if self._session is not None:
            self._evaluate_session(state)
            return

        if not state.is_playing:
            self._active_region_id = state.current_region_id
            if self._state == AutoplayState.PLAYING:
                self._transition(AutoplayState.IDLE)
            return

        if self._state == AutoplayState.HARD_STOPPED:
            self._active_region_id = state.current_region_id
            return

        was_playing = self._state == AutoplayState.PLAYING
        if self._state == AutoplayState.IDLE:
            self._transition(AutoplayState.PLAYING)

        previous = self.catalog.get(self._active_region_id) if self._active_region_id is not None else None
        if state.autoplay_enabled and previous is not None and self._reached_end(previous, state.current_position):
            target = self.next_target(previous.id)
            if target is not None:
                self._begin_advance(target, state)
                return

        if state.current_region_id != self._active_region_id:
            self._active_region_id = state.current_region_id
            region = self.catalog.get(state.current_region_id) if state.current_region_id is not None else None
            if was_playing and state.autoplay_enabled and is_hard_stop(region):
                logger.info(f"Hard stop region {region.id} '{region.name}': autoplay suspended")
                self._transition(AutoplayState.HARD_STOPPED)

    def _reached_end(self, region, position: float) -> bool:
        end = self.extractor.effective_end(region)
        return end <= position <= end + self.end_window

    def _evaluate_session(self, state) -> None:
        session = self._session
        if (self._state == AutoplayState.ADVANCING and session.command_done
                and state.current_region_id == session.target_region_id):
            self._confirm(session, state)

    # =========================================================================
    # ADVANCING
    # =========================================================================

    def _begin_advance(self, target, state) -> None:
        session = AutoplaySession(
            token=next(self._tokens),
            target_region_id=target.id,
            prior_state=self._state,
            hard_stop=is_hard_stop(target),
        )
        self._session = session

        if state.count_in_enabled:
            lead = self.count_in_lead(target)
            session.count_in_deadline = self.scheduler.now() + lead
            session.timer = self.scheduler.call_later(
                lead, self._on_count_in_deadline, session, name="count_in")
            logger.info(f"Count-in {lead:.2f}s before region {target.id} '{target.name}'")
            self._transition(AutoplayState.COUNT_IN)
        else:
            self._issue_advance(session)

    def _on_count_in_deadline(self, session: AutoplaySession) -> None:
        if session is not self._session or session.cancelled:
            return
        session.count_in_deadline = None
        session.timer = None
        self._issue_advance(session)

    def _issue_advance(self, session: AutoplaySession) -> None:
        target_id = session.target_region_id
        logger.info(f"Autoplay advancing to region {target_id}")
        self._transition(AutoplayState.ADVANCING)

        def advance():
            self.gateway.seek_to_region(target_id)
            self.gateway.play()

        session.timer = self.scheduler.call_later(
            self.confirm_timeout, self._on_confirm_timeout, session, name="advance_confirm")
        self.dispatcher.submit(
            "advance", advance,
            on_done=lambda error: self._on_advance_done(session, error),
        )

    def _on_advance_done(self, session: AutoplaySession, error: Optional[CommandError]) -> None:
        if session is not self._session or session.cancelled:
            return
        if error is not None:
            self._fail(session, error)
            return
        session.command_done = True
        state = self.tracker.state
        if state.current_region_id == session.target_region_id:
            self._confirm(session, state)

    def _on_confirm_timeout(self, session: AutoplaySession) -> None:
        if session is not self._session or session.cancelled:
            return
        self._fail(session, CommandError(
            "advance",
            f"region {session.target_region_id} not confirmed within {self.confirm_timeout:.1f}s",
        ))

    def _confirm(self, session: AutoplaySession, state) -> None:
        self._end_session(session)
        self._active_region_id = session.target_region_id
        logger.info(f"Autoplay confirmed region {session.target_region_id}")
        if session.hard_stop and state.autoplay_enabled:
            logger.info(f"Hard stop region {session.target_region_id}: autoplay suspended")
            self._transition(AutoplayState.HARD_STOPPED)
        elif state.is_playing:
            self._transition(AutoplayState.PLAYING)
        else:
            self._transition(AutoplayState.IDLE)

    def _fail(self, session: AutoplaySession, error: CommandError) -> None:
        self._end_session(session)
        logger.warning(f"Autoplay advance failed: {error}")
        self.bus.emit('error', 'command', str(error))
        self._transition(session.prior_state)

    def _end_session(self, session: AutoplaySession) -> None:
        if session.timer is not None:
            session.timer.cancel()
            session.timer = None
        if self._session is session:
            self._session = None

    def cancel_session(self, reason: str = "") -> bool:
        """
        Cancel a pending count-in or advance.

        Returns:
            True if a session was cancelled
        """
        session = self._session
        if session is None:
            return False
        session.cancelled = True
        self._end_session(session)
        logger.info(f"Autoplay to region {session.target_region_id} cancelled"
                    + (f" ({reason})" if reason else ""))
        return True

    def reset(self) -> None:
        """Drop all session state (disconnect, shutdown or project reload)."""
        self.cancel_session("reset")
        self._active_region_id = None
        self._transition(AutoplayState.IDLE)

    # =========================================================================
    # MANUAL ACTIONS
    # =========================================================================

    def toggle_play(self, on_done: Optional[Callable] = None) -> None:
        state = self.tracker.state
        self._manual("toggle_play", self.gateway.toggle_play, not state.is_playing, on_done)

    def next_region(self, on_done: Optional[Callable] = None) -> None:
        if self._setlist_order():
            self._setlist_jump("next_region",
                               self.next_target(self.tracker.state.current_region_id), on_done)
            return
        self._manual("next_region", self.gateway.next_region, self.tracker.state.is_playing,
                     on_done, navigates=True)

    def previous_region(self, on_done: Optional[Callable] = None) -> None:
        if self._setlist_order():
            self._setlist_jump("previous_region",
                               self.previous_target(self.tracker.state.current_region_id), on_done)
            return
        self._manual("previous_region", self.gateway.previous_region, self.tracker.state.is_playing,
                     on_done, navigates=True)

    def _setlist_jump(self, name: str, target, on_done: Optional[Callable]) -> None:
        if target is None:
            error = CommandError(name, "no such item in the setlist")
            logger.info(str(error))
            self.bus.emit('error', 'command', str(error))
            if on_done:
                on_done(error)
            return
        self._manual(name, lambda: self.gateway.seek_to_region(target.id),
                     self.tracker.state.is_playing, on_done, navigates=True)

    def seek_to_region(self, region_id: int, on_done: Optional[Callable] = None) -> None:
        self._manual("seek_to_region", lambda: self.gateway.seek_to_region(region_id),
                     self.tracker.state.is_playing, on_done, navigates=True)

    def seek_to_position(self, seconds: float, on_done: Optional[Callable] = None) -> None:
        self._manual("seek_to_position", lambda: self.gateway.seek_to_position(seconds),
                     self.tracker.state.is_playing, on_done, navigates=True)

    def toggle_autoplay(self, on_done: Optional[Callable] = None) -> None:
        enabled = not self.tracker.state.autoplay_enabled
        self.tracker.apply_settings(autoplay_enabled=enabled)
        self._manual("set_autoplay", lambda: self.gateway.set_autoplay(enabled),
                     self.tracker.state.is_playing, on_done,
                     on_error=lambda: self._restore_setting('autoplay_enabled', enabled))

    def toggle_count_in(self, on_done: Optional[Callable] = None) -> None:
        """Flip count-in. A pending session keeps the mode it started with."""
        enabled = not self.tracker.state.count_in_enabled
        self.tracker.apply_settings(count_in_enabled=enabled)

        def done(error):
            if error is not None:
                logger.warning(f"Count-in toggle failed: {error}")
                self._restore_setting('count_in_enabled', enabled)
                self.bus.emit('error', 'command', str(error))
            if on_done:
                on_done(error)

        self.dispatcher.submit("set_count_in", lambda: self.gateway.set_count_in(enabled), done)

    def _restore_setting(self, name: str, failed_value: bool) -> None:
        # Only if no later toggle has changed it since
        if getattr(self.tracker.state, name) == failed_value:
            self.tracker.apply_settings(**{name: not failed_value})

    def _manual(self, name: str, call: Callable, will_play: bool,
                on_done: Optional[Callable], navigates: bool = False,
                on_error: Optional[Callable] = None) -> None:
        prior = self._session.prior_state if self._session is not None else self._state
        self.cancel_session(name)
        if navigates:
            # The jump target is not "the region that just ended"
            self._active_region_id = None

        self._manual_token += 1
        token = self._manual_token
        self._transition(AutoplayState.PLAYING if will_play else AutoplayState.IDLE)

        def done(error):
            if error is not None:
                logger.warning(f"Command {name} failed: {error}")
                if on_error:
                    on_error()
                self.bus.emit('error', 'command', str(error))
                if token == self._manual_token and self._session is None:
                    self._transition(prior)
            if on_done:
                on_done(error)

        self.dispatcher.submit(name, call, done)

    def _transition(self, new_state: AutoplayState) -> None:
        if new_state == self._state:
            return
        logger.debug(f"Autoplay {self._state.name} -> {new_state.name}")
        self._state = new_state
        self.bus.emit('autoplay_state', new_state)
