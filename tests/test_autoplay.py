"""
Tests for the AutoplayController state machine.

Snapshots are fed through a PlaybackSession on virtual time (see the Rig in
conftest.py), so each test exercises tracker -> predictor -> controller the
way the poll task does.
"""
import pytest

from backend.autoplay import AutoplayState
from backend.regions import Marker, Region
from backend.settings import SessionSettings

from conftest import DeferredRunner, Recorder, Rig, snapshot


def count_in_settings(**overrides):
    return SessionSettings(count_in_enabled=True, **overrides)


# =============================================================================
# Advancing without count-in
# =============================================================================

class TestAdvance:
    """Region end -> seek_to_region(next) + play -> confirmation."""

    def test_crossing_into_adjacent_region_advances_once(self, three_regions):
        rig = Rig(three_regions)
        transitions = Recorder(rig.session, 'autoplay_state')

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(9.9))
        rig.feed(snapshot(10.05))
        rig.feed(snapshot(10.05))
        rig.feed(snapshot(10.3))

        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 2)]
        assert len(rig.gateway.calls_named('play')) == 1
        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.controller.active_region_id == 2
        assert transitions['autoplay_state'] == [
            AutoplayState.PLAYING, AutoplayState.ADVANCING, AutoplayState.PLAYING,
        ]

    def test_no_duplicate_while_command_in_flight(self, three_regions):
        runner = DeferredRunner()
        rig = Rig(three_regions, command_runner=runner)

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        rig.feed(snapshot(10.05))
        rig.feed(snapshot(10.1))
        assert rig.controller.state == AutoplayState.ADVANCING
        assert len(runner.jobs) == 1

        runner.run_all()
        rig.run()

        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 2)]
        assert rig.controller.state == AutoplayState.PLAYING

    def test_marker_length_ends_song_early(self):
        regions = [
            Region(1, 0.0, 60.0, "Song", (Marker(1, 0.5, "!length:0:30"),)),
            Region(2, 60.0, 120.0, "Next"),
        ]
        rig = Rig(regions)
        rig.feed(snapshot(10.0))
        rig.feed(snapshot(30.1))

        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 2)]

    def test_last_region_does_not_advance(self, three_regions):
        rig = Rig(three_regions)
        rig.feed(snapshot(25.0))
        rig.feed(snapshot(30.0))
        rig.feed(snapshot(30.4))

        assert rig.gateway.calls == []
        assert rig.controller.state == AutoplayState.PLAYING

    def test_seek_far_past_end_is_not_an_advance(self, three_regions):
        rig = Rig(three_regions)
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(25.0))

        assert rig.gateway.calls == []
        assert rig.controller.active_region_id == 3

    def test_autoplay_disabled_only_tracks(self, three_regions):
        rig = Rig(three_regions, SessionSettings(autoplay_enabled=False))
        for position in (5.0, 9.9, 10.05, 19.99, 20.1):
            rig.feed(snapshot(position))

        assert rig.gateway.calls == []
        assert rig.controller.state == AutoplayState.PLAYING

    def test_stop_returns_to_idle(self, three_regions):
        rig = Rig(three_regions)
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(6.0, playing=False))
        assert rig.controller.state == AutoplayState.IDLE


# =============================================================================
# Count-in
# =============================================================================

class TestCountIn:
    """COUNT_IN deadline and cancellation."""

    def test_deadline_issues_advance(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))

        assert rig.controller.state == AutoplayState.COUNT_IN
        assert rig.controller.session.count_in_deadline == pytest.approx(4.0)

        rig.advance(3.0)
        assert rig.gateway.calls == []

        rig.advance(1.0)
        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 2)]
        assert rig.controller.state == AutoplayState.PLAYING

    def test_toggle_play_cancels_and_deadline_never_fires(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        rig.advance(1.0)

        rig.controller.toggle_play()
        rig.run()
        assert rig.controller.state == AutoplayState.IDLE
        assert rig.controller.session is None

        rig.advance(10.0)
        assert rig.gateway.calls == [('toggle_play',)]
        assert rig.controller.state == AutoplayState.IDLE

    def test_toggle_play_while_stopped_cancels_into_playing(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        # Band stopped the transport during the count-in
        rig.feed(snapshot(10.2, playing=False))
        assert rig.controller.state == AutoplayState.COUNT_IN

        rig.controller.toggle_play()
        rig.advance(10.0)
        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.gateway.calls_named('seek_to_region') == []

    def test_disabling_autoplay_cancels_countdown(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))

        rig.controller.toggle_autoplay()
        rig.advance(10.0)

        assert rig.gateway.calls == [('set_autoplay', False)]
        assert rig.state.autoplay_enabled is False
        assert rig.controller.state == AutoplayState.PLAYING

    def test_tempo_policy_uses_next_region_bpm(self):
        regions = [
            Region(1, 0.0, 10.0, "One"),
            Region(2, 10.0, 20.0, "Fast", (Marker(1, 10.5, "!bpm:240"),)),
        ]
        rig = Rig(regions, count_in_settings(count_in_policy="tempo"))
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))

        # 2 bars of 4 beats at 240 bpm
        assert rig.controller.session.count_in_deadline == pytest.approx(2.0)

    def test_tempo_policy_falls_back_to_fixed_lead(self, three_regions):
        rig = Rig(three_regions, count_in_settings(count_in_policy="tempo",
                                                   count_in_lead_seconds=3.0))
        assert rig.controller.count_in_lead(three_regions[1]) == 3.0


# =============================================================================
# Hard stops
# =============================================================================

class TestHardStop:
    """Regions carrying the stop directive suspend autoplay."""

    def test_advance_into_hard_stop_region(self, hard_stop_regions):
        rig = Rig(hard_stop_regions)
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.controller.state == AutoplayState.HARD_STOPPED

        rig.feed(snapshot(19.9))
        rig.feed(snapshot(20.05))
        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 2)]
        assert rig.controller.state == AutoplayState.HARD_STOPPED

    def test_entering_hard_stop_region_while_playing(self):
        regions = [
            Region(1, 0.0, 10.0, "One"),
            Region(2, 15.0, 25.0, "Stop", (Marker(1, 15.0, "!1008"),)),
            Region(3, 30.0, 40.0, "Three"),
        ]
        rig = Rig(regions)
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(12.0))
        rig.feed(snapshot(15.0))
        assert rig.controller.state == AutoplayState.HARD_STOPPED

        rig.feed(snapshot(25.0))
        rig.feed(snapshot(25.5))
        assert rig.gateway.calls_named('seek_to_region') == []

    def test_starting_inside_hard_stop_region_is_not_a_stop(self, hard_stop_regions):
        rig = Rig(hard_stop_regions)
        rig.feed(snapshot(15.0))
        assert rig.controller.state == AutoplayState.PLAYING

    def test_manual_next_resumes(self, hard_stop_regions):
        rig = Rig(hard_stop_regions)
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))

        rig.controller.next_region()
        rig.run()
        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.gateway.calls_named('next_region') == [('next_region',)]


# =============================================================================
# Failures
# =============================================================================

class TestFailures:
    """Rejected or timed-out commands leave the prior logical state."""

    def test_rejected_advance_reverts_and_retries(self, three_regions):
        rig = Rig(three_regions)
        errors = Recorder(rig.session, 'error')
        rig.gateway.fail.add('seek_to_region')

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.controller.active_region_id == 1
        assert errors['error'][0][0] == 'command'

        rig.gateway.fail.clear()
        rig.feed(snapshot(10.2))
        assert len(rig.gateway.calls_named('seek_to_region')) == 2
        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.controller.active_region_id == 2

    def test_unconfirmed_advance_times_out(self, three_regions):
        runner = DeferredRunner()
        rig = Rig(three_regions, command_runner=runner)
        errors = Recorder(rig.session, 'error')

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        rig.advance(2.0)

        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.controller.session is None
        assert [e[0] for e in errors['error']] == ['command']

        # The late completion belongs to a finished session
        runner.run_all()
        rig.run()
        assert rig.controller.state == AutoplayState.PLAYING

    def test_rejected_manual_command_reverts(self, three_regions):
        rig = Rig(three_regions)
        rig.gateway.fail.add('toggle_play')
        rig.feed(snapshot(5.0))

        rig.controller.toggle_play()
        assert rig.controller.state == AutoplayState.IDLE
        rig.run()
        assert rig.controller.state == AutoplayState.PLAYING

    def test_rejected_autoplay_toggle_restores_flag(self, three_regions):
        saved = []
        rig = Rig(three_regions, on_settings_saved=saved.append)
        errors = Recorder(rig.session, 'error')
        rig.gateway.fail.add('set_autoplay')

        rig.controller.toggle_autoplay()
        assert rig.state.autoplay_enabled is False
        rig.run()

        assert rig.state.autoplay_enabled is True
        assert saved[-1]['autoplay_enabled'] is True
        assert [e[0] for e in errors['error']] == ['command']

    def test_rejected_count_in_toggle_restores_flag(self, three_regions):
        rig = Rig(three_regions)
        errors = Recorder(rig.session, 'error')
        rig.gateway.fail.add('set_count_in')

        rig.controller.toggle_count_in()
        assert rig.state.count_in_enabled is True
        rig.run()

        assert rig.state.count_in_enabled is False
        assert [e[0] for e in errors['error']] == ['command']


# =============================================================================
# Manual actions
# =============================================================================

class TestManualActions:
    """Manual actions cancel sessions and pick PLAYING / IDLE."""

    def test_next_cancels_pending_advance(self, three_regions):
        runner = DeferredRunner()
        rig = Rig(three_regions, command_runner=runner)
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.controller.state == AutoplayState.ADVANCING

        rig.controller.next_region()
        assert rig.controller.session is None
        assert rig.controller.state == AutoplayState.PLAYING

        runner.run_all()
        rig.run()
        assert rig.controller.state == AutoplayState.PLAYING

    def test_seek_to_position_keeps_play_state(self, three_regions):
        rig = Rig(three_regions)
        rig.feed(snapshot(5.0, playing=False))
        rig.controller.seek_to_position(25.0)
        rig.run()
        assert rig.gateway.calls == [('seek_to_position', 25.0)]
        assert rig.controller.state == AutoplayState.IDLE

    def test_toggle_count_in_does_not_cancel(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))

        rig.controller.toggle_count_in()
        rig.run()
        assert rig.controller.state == AutoplayState.COUNT_IN
        assert rig.state.count_in_enabled is False
        assert rig.gateway.calls == [('set_count_in', False)]

    def test_reload_resets(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))

        rig.session.load_regions(three_regions)
        rig.advance(10.0)
        assert rig.controller.state == AutoplayState.IDLE
        assert rig.gateway.calls == []


# =============================================================================
# Setlist order
# =============================================================================

class TestSetlistOrder:
    """A selected setlist replaces timeline order for advances and next/previous."""

    def select(self, rig, *region_ids):
        setlist = rig.session.setlists.create("Show")
        for region_id in region_ids:
            rig.session.setlists.add_item(setlist.id, region_id)
        rig.controller.select_setlist(setlist.id)
        return setlist

    def test_advance_follows_setlist(self, three_regions):
        rig = Rig(three_regions)
        self.select(rig, 1, 3, 2)

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 3)]
        assert rig.controller.state == AutoplayState.ADVANCING

        rig.feed(snapshot(20.01))
        assert rig.controller.state == AutoplayState.PLAYING
        assert rig.controller.active_region_id == 3

    def test_last_item_does_not_advance(self, three_regions):
        rig = Rig(three_regions)
        self.select(rig, 2, 1)

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.gateway.calls == []
        assert rig.controller.state == AutoplayState.PLAYING

    def test_region_outside_setlist_does_not_advance(self, three_regions):
        rig = Rig(three_regions)
        self.select(rig, 3)

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.gateway.calls == []

    def test_missing_region_is_skipped(self, three_regions):
        rig = Rig(three_regions)
        self.select(rig, 1, 9, 3)

        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.gateway.calls_named('seek_to_region') == [('seek_to_region', 3)]

    def test_manual_next_and_previous(self, three_regions):
        rig = Rig(three_regions)
        self.select(rig, 3, 1)

        rig.feed(snapshot(25.0, playing=False))
        rig.controller.next_region()
        rig.run()
        assert rig.gateway.calls == [('seek_to_region', 1)]

        rig.feed(snapshot(0.0, playing=False))
        rig.controller.previous_region()
        rig.run()
        assert rig.gateway.calls[-1] == ('seek_to_region', 3)
        assert rig.gateway.calls_named('next_region') == []
        assert rig.gateway.calls_named('previous_region') == []

    def test_next_from_gap_goes_to_first_item(self):
        regions = [Region(1, 0.0, 10.0, "One"), Region(2, 20.0, 30.0, "Two")]
        rig = Rig(regions)
        self.select(rig, 2, 1)

        rig.feed(snapshot(15.0, playing=False))
        rig.controller.next_region()
        rig.run()
        assert rig.gateway.calls == [('seek_to_region', 2)]

    def test_next_past_last_item_is_reported(self, three_regions):
        rig = Rig(three_regions)
        errors = Recorder(rig.session, 'error')
        self.select(rig, 1)

        rig.feed(snapshot(5.0, playing=False))
        rig.controller.next_region()
        rig.run()
        assert rig.gateway.calls == []
        assert [e[0] for e in errors['error']] == ['command']

    def test_selecting_setlist_cancels_pending_advance(self, three_regions):
        rig = Rig(three_regions, count_in_settings())
        rig.feed(snapshot(5.0))
        rig.feed(snapshot(10.05))
        assert rig.controller.state == AutoplayState.COUNT_IN

        self.select(rig, 1, 3)
        assert rig.controller.session is None
        assert rig.controller.state == AutoplayState.PLAYING

        rig.advance(10.0)
        assert rig.gateway.calls == []
