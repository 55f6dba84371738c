"""
Shared fixtures: a recording gateway double, deterministic runners and a
session rig driven by a VirtualClock.
"""
import pytest

from backend.commands import CommandDispatcher, inline_runner
from backend.errors import CommandError
from backend.reaper_gateway import TransportGateway
from backend.regions import Marker, Region
from backend.scheduler import Scheduler, VirtualClock
from backend.session import PlaybackSession
from backend.settings import SessionSettings
from backend.setlists import SetlistStore


# =============================================================================
# Doubles
# =============================================================================

class FakeGateway(TransportGateway):
    """Records every command; names in `fail` raise CommandError."""

    def __init__(self, regions=None, snapshots=None):
        self.regions = list(regions or [])
        self.snapshots = list(snapshots or [])
        self.project_id = "project-1"
        self.calls = []
        self.fail = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise CommandError(name, "rejected")

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]

    def fetch_transport(self):
        if 'fetch_transport' in self.fail:
            raise CommandError('TRANSPORT', "timed out")
        if self.snapshots:
            return self.snapshots.pop(0)
        return "TRANSPORT\t0\t0.0"

    def fetch_regions(self):
        if 'fetch_regions' in self.fail:
            raise CommandError('REGION', "timed out")
        return list(self.regions)

    def fetch_project_id(self):
        if 'fetch_project_id' in self.fail:
            raise CommandError('PROJEXTSTATE', "timed out")
        return self.project_id

    def toggle_play(self):
        self._record('toggle_play')

    def play(self):
        self._record('play')

    def seek_to_region(self, region_id):
        self._record('seek_to_region', region_id)

    def seek_to_position(self, seconds):
        self._record('seek_to_position', seconds)

    def next_region(self):
        self._record('next_region')

    def previous_region(self):
        self._record('previous_region')

    def set_autoplay(self, enabled):
        self._record('set_autoplay', enabled)

    def set_count_in(self, enabled):
        self._record('set_count_in', enabled)


class DeferredRunner:
    """Holds jobs until run_all(), to model commands still in flight."""

    def __init__(self):
        self.jobs = []

    def __call__(self, job, name):
        self.jobs.append((name, job))

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for _, job in jobs:
            job()


class Recorder:
    """Collects event payloads by event name."""

    def __init__(self, session, *events):
        self.events = {name: [] for name in events}
        for name in events:
            session.on(name, self._make(name))

    def _make(self, name):
        def callback(*args):
            self.events[name].append(args if len(args) > 1 else args[0])
        return callback

    def __getitem__(self, name):
        return self.events[name]


class Rig:
    """
    A PlaybackSession on virtual time.

    feed() applies a snapshot the way the poll task would and then runs the
    scheduler, so command completions are processed too.
    """

    def __init__(self, regions, settings=None, command_runner=None, fetch_runner=None,
                 on_settings_saved=None):
        self.clock = VirtualClock()
        self.scheduler = Scheduler(clock=self.clock)
        self.gateway = FakeGateway(regions)
        self.dispatcher = CommandDispatcher(self.scheduler, runner=command_runner or inline_runner)
        self.session = PlaybackSession(
            self.gateway,
            settings or SessionSettings(),
            scheduler=self.scheduler,
            dispatcher=self.dispatcher,
            fetch_runner=fetch_runner or inline_runner,
            on_settings_saved=on_settings_saved,
            setlists=SetlistStore(None),
        )
        self.session.load_regions(regions)

    @property
    def controller(self):
        return self.session.autoplay

    @property
    def state(self):
        return self.session.state

    def feed(self, raw):
        changed = self.session.process_snapshot(raw)
        self.run()
        return changed

    def run(self):
        # Completions queued by handed-back callbacks land in the next pass
        self.scheduler.run_pending()
        self.scheduler.run_pending()

    def advance(self, seconds):
        self.clock.advance(seconds)
        self.run()


def snapshot(position, playing=True):
    return f"TRANSPORT\t{1 if playing else 0}\t{position}"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def three_regions():
    return [
        Region(1, 0.0, 10.0, "One"),
        Region(2, 10.0, 20.0, "Two"),
        Region(3, 20.0, 30.0, "Three"),
    ]


@pytest.fixture
def hard_stop_regions():
    return [
        Region(1, 0.0, 10.0, "One"),
        Region(2, 10.0, 20.0, "Intermission", (Marker(10, 10.0, "!1008"),)),
        Region(3, 20.0, 30.0, "Three"),
    ]
