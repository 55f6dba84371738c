"""
Transport gateway for Region Remote.

TransportGateway is the contract the session consumes: blocking calls that
return on success and raise CommandError on rejection or timeout. They are
always invoked from worker threads (see commands.py), never from the
scheduler thread.

ReaperWebGateway talks to REAPER's built-in web interface
(Preferences > Control/OSC/web > "Web browser interface"):

    GET /_/TRANSPORT                   TRANSPORT \t playstate \t pos \t ...
    GET /_/REGION                      REGION_LIST / REGION \t name \t id \t start \t end \t color / REGION_LIST_END
    GET /_/MARKER                      MARKER_LIST / MARKER \t name \t id \t pos \t color / MARKER_LIST_END
    GET /_/SET/POS/<seconds>           move the edit cursor / playhead
    GET /_/<action id>                 run a main-section action
    GET /_/GET/<action id>             CMDSTATE \t id \t state (1 on, 0 off, -1 not a toggle)
    GET /_/GET/PROJEXTSTATE/<s>/<k>    PROJEXTSTATE \t s \t k \t value
    GET /_/SET/PROJEXTSTATE/<s>/<k>/<v>
"""

import time
import uuid
import logging
import threading
import http.client
import urllib.parse
import urllib.request
from typing import List, Optional

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import (
    REAPER_HOST, REAPER_PORT,
    REAPER_REQUEST_TIMEOUT, REAPER_REQUEST_RETRIES, REAPER_RETRY_DELAY,
    REAPER_EXTSTATE_SECTION, REAPER_AUTOPLAY_KEY, REAPER_PROJECT_ID_KEY,
)

from .errors import CommandError, ParseError, ValidationError
from .playback_state import parse_snapshot
from .regions import Marker, Region, RegionCatalog, assign_markers

logger = logging.getLogger("RegionRemote.Gateway")

# REAPER main-section action ids
ACTION_PLAY = 1007
ACTION_PAUSE = 1008
ACTION_TOGGLE_COUNT_IN = 40363

# Seek just inside a region so the start-match can never be lost to rounding
REGION_SEEK_OFFSET = 0.001


class TransportGateway:
    """Commands and snapshots consumed by a PlaybackSession."""

    def fetch_transport(self) -> str:
        """Return one raw transport snapshot line."""
        raise NotImplementedError

    def fetch_regions(self) -> List[Region]:
        """Return the project's regions (with their markers), sorted by start."""
        raise NotImplementedError

    def toggle_play(self) -> None:
        raise NotImplementedError

    def play(self) -> None:
        raise NotImplementedError

    def seek_to_region(self, region_id: int) -> None:
        raise NotImplementedError

    def seek_to_position(self, seconds: float) -> None:
        raise NotImplementedError

    def next_region(self) -> None:
        raise NotImplementedError

    def previous_region(self) -> None:
        raise NotImplementedError

    def set_autoplay(self, enabled: bool) -> None:
        raise NotImplementedError

    def set_count_in(self, enabled: bool) -> None:
        raise NotImplementedError

    def fetch_project_id(self) -> str:
        """Return the id stored in the open project, creating one if it has none."""
        raise NotImplementedError


def parse_region_list(text: str) -> List[Region]:
    """
    Parse a REGION_LIST response.

    Lines that are not REGION lines, or that do not parse, are skipped.
    """
    regions = []
    for line in (text or '').splitlines():
        parts = line.rstrip('\r').split('\t')
        if parts[0] != 'REGION' or len(parts) < 5:
            continue
        try:
            regions.append(Region(
                id=int(parts[2]),
                start=float(parts[3]),
                end=float(parts[4]),
                name=parts[1],
            ))
        except ValueError:
            logger.debug(f"Skipping malformed region line: {line!r}")
    return sorted(regions, key=lambda r: r.start)


def parse_marker_list(text: str) -> List[Marker]:
    """Parse a MARKER_LIST response (same rules as parse_region_list)."""
    markers = []
    for line in (text or '').splitlines():
        parts = line.rstrip('\r').split('\t')
        if parts[0] != 'MARKER' or len(parts) < 4:
            continue
        try:
            markers.append(Marker(id=int(parts[2]), position=float(parts[3]), label=parts[1]))
        except ValueError:
            logger.debug(f"Skipping malformed marker line: {line!r}")
    return sorted(markers, key=lambda m: m.position)


class ReaperWebGateway(TransportGateway):
    """
    TransportGateway over REAPER's web interface.

    Keeps the last region list and transport snapshot it fetched so it can
    resolve region ids to positions and know whether play/pause is next.

    Usage:
        gateway = ReaperWebGateway("127.0.0.1", 8080)
        raw = gateway.fetch_transport()
        gateway.seek_to_region(3)
    """

    def __init__(self, host: str = REAPER_HOST, port: int = REAPER_PORT,
                 timeout: float = REAPER_REQUEST_TIMEOUT,
                 retries: int = REAPER_REQUEST_RETRIES,
                 retry_delay: float = REAPER_RETRY_DELAY):
        self.base_url = f"http://{host}:{port}/_/"
        self.timeout = timeout
        self.retries = max(1, retries)
        self.retry_delay = retry_delay

        self._lock = threading.Lock()
        self._catalog = RegionCatalog()
        self._last_position = 0.0
        self._last_playing = False

    # =========================================================================
    # HTTP
    # =========================================================================

    def _request(self, command: str) -> str:
        """
        Send one web-interface command with retry.

        Raises:
            CommandError: every attempt failed or timed out
        """
        url = self.base_url + command
        last_error = None

        for attempt in range(self.retries):
            try:
                if attempt > 0:
                    time.sleep(self.retry_delay * attempt)

                req = urllib.request.Request(url, headers={'User-Agent': 'RegionRemote/1.0'})
                with urllib.request.urlopen(req, timeout=self.timeout) as response:
                    return response.read().decode('utf-8', errors='replace')

            except (OSError, http.client.HTTPException) as e:
                # URLError, HTTPError and socket timeouts are OSErrors; a
                # truncated or garbled response is an HTTPException
                last_error = e
                logger.debug(f"Request {command} failed (attempt {attempt + 1}/{self.retries}): {e}")

        raise CommandError(command, f"failed after {self.retries} attempts: {last_error}")

    def _action(self, action_id: int) -> None:
        self._request(str(action_id))

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def fetch_transport(self) -> str:
        text = self._request("TRANSPORT")
        line = next((l for l in text.splitlines() if l.startswith("TRANSPORT")), text)
        try:
            snapshot = parse_snapshot(line)
        except ParseError:
            # The tracker owns parse failures; hand the raw line on unchanged
            return line
        with self._lock:
            self._last_position = snapshot.position
            self._last_playing = snapshot.is_playing
        return line

    def fetch_regions(self) -> List[Region]:
        regions = parse_region_list(self._request("REGION"))
        markers = parse_marker_list(self._request("MARKER"))
        regions = assign_markers(regions, markers)

        catalog = RegionCatalog()
        try:
            catalog.load(regions)
        except ValidationError as e:
            # Keep navigating with the previous list; the session reports the
            # validation failure when it loads the same regions
            logger.debug(f"Gateway kept previous regions: {e}")
            return regions
        with self._lock:
            self._catalog = catalog
        return regions

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def toggle_play(self) -> None:
        with self._lock:
            playing = self._last_playing
        self._action(ACTION_PAUSE if playing else ACTION_PLAY)
        with self._lock:
            self._last_playing = not playing

    def play(self) -> None:
        self._action(ACTION_PLAY)
        with self._lock:
            self._last_playing = True

    def seek_to_position(self, seconds: float) -> None:
        seconds = max(0.0, float(seconds))
        self._request(f"SET/POS/{seconds:.6f}")
        with self._lock:
            self._last_position = seconds

    def seek_to_region(self, region_id: int) -> None:
        with self._lock:
            region = self._catalog.get(region_id)
        if region is None:
            raise CommandError("seek_to_region", f"unknown region {region_id}")
        self.seek_to_position(region.start + REGION_SEEK_OFFSET)

    def next_region(self) -> None:
        target = self._neighbour(+1)
        if target is None:
            raise CommandError("next_region", "already at the last region")
        self.seek_to_region(target.id)

    def previous_region(self) -> None:
        target = self._neighbour(-1)
        if target is None:
            raise CommandError("previous_region", "already at the first region")
        self.seek_to_region(target.id)

    def _neighbour(self, step: int) -> Optional[Region]:
        with self._lock:
            catalog = self._catalog
            position = self._last_position
        current = catalog.find_region_at(position)
        if current is None:
            # Between regions: next is the first region after, previous the last before
            ordered = catalog.to_list()
            if step > 0:
                return next((r for r in ordered if r.start > position), None)
            return next((r for r in reversed(ordered) if r.end <= position), None)
        if step > 0:
            return catalog.next_region(current.id)
        return catalog.previous_region(current.id)

    def set_autoplay(self, enabled: bool) -> None:
        self._set_ext_state(REAPER_AUTOPLAY_KEY, "true" if enabled else "false")

    def set_count_in(self, enabled: bool) -> None:
        # REAPER only exposes a toggle for the metronome count-in, so read its
        # state first and flip it only when it differs
        if self.command_state(ACTION_TOGGLE_COUNT_IN) == enabled:
            return
        self._action(ACTION_TOGGLE_COUNT_IN)

    def command_state(self, action_id: int) -> bool:
        """
        On/off state of a toggle action.

        Raises:
            CommandError: no answer, or the action is not a toggle
        """
        text = self._request(f"GET/{action_id}")
        for line in text.splitlines():
            parts = line.rstrip('\r').split('\t')
            if parts[0] == 'CMDSTATE' and len(parts) >= 3 and parts[1] == str(action_id):
                if parts[2] in ('0', '1'):
                    return parts[2] == '1'
                break
        raise CommandError(str(action_id), f"no toggle state in {text.strip()!r}")

    # =========================================================================
    # PROJECT
    # =========================================================================

    def fetch_project_id(self) -> str:
        project_id = self._get_ext_state(REAPER_PROJECT_ID_KEY)
        if project_id:
            return project_id
        project_id = str(uuid.uuid4())
        logger.info(f"Project has no id, assigning {project_id}")
        self._set_ext_state(REAPER_PROJECT_ID_KEY, project_id)
        return project_id

    def _get_ext_state(self, key: str) -> str:
        section = urllib.parse.quote(REAPER_EXTSTATE_SECTION, safe='')
        text = self._request(f"GET/PROJEXTSTATE/{section}/{urllib.parse.quote(key, safe='')}")
        for line in text.splitlines():
            parts = line.rstrip('\r').split('\t')
            if parts[0] == 'PROJEXTSTATE' and len(parts) >= 4:
                return parts[3].replace('\\t', '\t').replace('\\n', '\n').replace('\\\\', '\\')
        return ""

    def _set_ext_state(self, key: str, value: str) -> None:
        section = urllib.parse.quote(REAPER_EXTSTATE_SECTION, safe='')
        self._request(f"SET/PROJEXTSTATE/{section}/{urllib.parse.quote(key, safe='')}/"
                      f"{urllib.parse.quote(value, safe='')}")
