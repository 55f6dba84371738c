"""
Web Server for Region Remote - Local Network Performer Remote.

Serves a mobile-friendly remote for the running session over the local
network: the current song, a countdown to its end, the setlist, and
transport buttons (play/pause, previous/next, autoplay and count-in
toggles). Designed for performers who want the setlist on a phone or tablet
on stage.

Usage:
    The server is started from main.py unless --no-web is given.
    It binds to 0.0.0.0 (default port 8090).

    Devices on the same WiFi network can open the remote at:
        http://<your-local-ip>:<port>

Dependencies:
    pip install flask qrcode pillow
"""

import io
import time
import socket
import logging
import threading
from typing import Optional, Dict, Any

logger = logging.getLogger("RegionRemote.WebServer")

import qrcode
from flask import Flask, jsonify, request, Response
from werkzeug.serving import make_server

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
from config import (
    WEB_SERVER_HOST, WEB_SERVER_PORT, WEB_POLL_INTERVAL_MS, WEB_ERROR_HOLD_SECONDS,
)
from utils.formatting import format_countdown, format_time

from .marker_directives import display_markers, is_hard_stop


def get_local_ip():
    """Get the machine's local network IP address."""
    try:
        # Connect to a public DNS to determine local IP
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(0.5)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def _region_dict(region, extractor):
    if region is None:
        return None
    return {
        "id": region.id,
        "name": region.name,
        "start": region.start,
        "end": region.end,
        "length": extractor.effective_length(region),
        "hard_stop": is_hard_stop(region),
        "markers": [m.to_dict() for m in display_markers(region)],
    }


# =========================================================================
# SHARED STATE (fed by session events, read by web requests)
# =========================================================================

class SharedPlaybackState:
    """Thread-safe shared state between the session and the web server."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state: Dict[str, Any] = {
            "position": 0.0,
            "position_text": format_time(0.0),
            "is_playing": False,
            "autoplay_enabled": True,
            "count_in_enabled": False,
            "autoplay_state": "IDLE",
            "current": None,    # {id, name, start, end, length, hard_stop, markers}
            "next": None,       # same, plus countdown
            "regions": [],      # [{id, name, start, end}]
            "project_id": None,
            "setlists": [],     # [{id, name, projectId, items: [{id, regionId, name}]}]
            "selected_setlist_id": None,
            "last_error": None, # {kind, message}
        }
        self._session = None
        self._error_time = 0.0

    def update(self, **kwargs):
        with self._lock:
            self._state.update(kwargs)

    def get_state(self) -> dict:
        with self._lock:
            return dict(self._state)

    def bind(self, session):
        """Subscribe to a session's events."""
        self._session = session
        session.on('position_update', self._on_position)
        session.on('state_changed', self._on_snapshot)
        session.on('settings_changed', self._on_state)
        session.on('autoplay_state', self._on_autoplay_state)
        session.on('regions_loaded', self._on_regions)
        session.on('project_changed', self._on_project)
        session.on('setlists_changed', self._on_setlists)
        session.on('error', self._on_error)
        self._on_regions(session.catalog.to_list())
        self._on_state(session.state)
        self._on_setlists(session.setlists.to_list(), session.selected_setlist_id)
        self.update(autoplay_state=session.autoplay_state.name, project_id=session.project_id)

    def _on_position(self, position, state):
        session = self._session
        catalog = session.catalog
        current = catalog.get(state.current_region_id) if state.current_region_id is not None else None
        upcoming = session.autoplay.next_target(current.id) if current is not None else None

        current_dict = _region_dict(current, session.extractor)
        next_dict = _region_dict(upcoming, session.extractor)
        if current is not None:
            remaining = session.extractor.effective_end(current) - position
            current_dict["remaining"] = max(0.0, remaining)
            current_dict["remaining_text"] = format_countdown(remaining)
            if next_dict is not None:
                next_dict["countdown"] = max(0.0, remaining)

        self.update(
            position=position,
            position_text=format_time(position),
            current=current_dict,
            next=next_dict,
        )

    def _on_state(self, state):
        self.update(
            is_playing=state.is_playing,
            autoplay_enabled=state.autoplay_enabled,
            count_in_enabled=state.count_in_enabled,
        )

    def _on_snapshot(self, state):
        self._on_state(state)
        with self._lock:
            error = self._state["last_error"]
            if error is None:
                return
            if (error["kind"] == "connectivity"
                    or time.monotonic() - self._error_time >= WEB_ERROR_HOLD_SECONDS):
                self._state["last_error"] = None

    def _on_autoplay_state(self, autoplay_state):
        self.update(autoplay_state=autoplay_state.name)

    def _on_project(self, project_id):
        self.update(project_id=project_id)

    def _on_setlists(self, setlists, selected_id):
        self.update(setlists=setlists, selected_setlist_id=selected_id)

    def _on_regions(self, regions):
        self.update(regions=[
            {"id": r.id, "name": r.name, "start": r.start, "end": r.end}
            for r in regions
        ])

    def _on_error(self, kind, message):
        with self._lock:
            self._state["last_error"] = {"kind": kind, "message": message}
            self._error_time = time.monotonic()


# =========================================================================
# HTML PAGE (embedded - mobile-first responsive design)
# =========================================================================

REMOTE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0, user-scalable=no">
<meta name="apple-mobile-web-app-capable" content="yes">
<title>Region Remote</title>
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  :root {
    --bg: #0d1117; --surface: #161b22; --text: #e6edf3; --dim: #7d8590;
    --green: #3fb950; --yellow: #d29922; --red: #f85149; --blue: #58a6ff;
  }
  body {
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
    background: var(--bg); color: var(--text); min-height: 100dvh;
  }
  .header {
    background: var(--surface); padding: 12px 16px; border-bottom: 1px solid #30363d;
    display: flex; justify-content: space-between; align-items: center;
  }
  .header h1 { font-size: 14px; color: var(--dim); }
  .song { font-size: 22px; font-weight: 700; padding: 16px; text-align: center; }
  .song.hard-stop { color: var(--red); }
  .clock {
    font-family: 'SF Mono', 'Consolas', monospace; font-size: 40px; font-weight: 700;
    text-align: center;
  }
  .remaining { text-align: center; color: var(--dim); margin-bottom: 12px; }
  .remaining.warn { color: var(--yellow); }
  .next { text-align: center; color: var(--blue); margin-bottom: 16px; }
  .buttons { display: grid; grid-template-columns: repeat(3, 1fr); gap: 8px; padding: 8px 16px; }
  button {
    background: var(--surface); color: var(--text); border: 1px solid #30363d;
    border-radius: 10px; font-size: 18px; padding: 18px 0;
  }
  button.on { border-color: var(--green); color: var(--green); }
  .setlist { list-style: none; padding: 8px 16px; }
  .setlist li { padding: 10px; border-bottom: 1px solid #21262d; }
  .setlist li.current { color: var(--green); font-weight: 700; }
  .picker { display: block; margin: 8px 16px 0; width: calc(100% - 32px); padding: 10px;
    background: var(--surface); color: var(--text); border: 1px solid #30363d; border-radius: 8px; }
  .status { position: fixed; bottom: 8px; right: 8px; font-size: 10px; color: var(--dim); }
  .status.error { color: var(--red); }
</style>
</head>
<body>
<div class="header">
  <h1>REGION REMOTE</h1>
  <span id="autoplayState">IDLE</span>
</div>
<div class="song" id="song">--</div>
<div class="clock" id="clock">0:00.00</div>
<div class="remaining" id="remaining"></div>
<div class="next" id="next"></div>
<div class="buttons">
  <button onclick="send('previous')">&#9198;</button>
  <button id="playBtn" onclick="send('toggle_play')">&#9654;</button>
  <button onclick="send('next')">&#9197;</button>
  <button id="autoplayBtn" onclick="send('toggle_autoplay')">Autoplay</button>
  <button id="countInBtn" onclick="send('toggle_count_in')">Count-in</button>
  <button onclick="reload()">Reload</button>
</div>
<select class="picker" id="setlistPicker" onchange="selectSetlist(this.value)"></select>
<ul class="setlist" id="setlist"></ul>
<div class="status" id="status">Connecting...</div>
<script>
const POLL_MS = __POLL_MS__;
let failCount = 0;

function fmt(s) {
  if (s == null) return '--';
  const m = Math.floor(s / 60);
  return m + ':' + String(Math.floor(s % 60)).padStart(2, '0');
}

async function send(action) {
  await fetch('/api/transport/' + action, {method: 'POST'});
}

async function reload() {
  await fetch('/api/regions/reload', {method: 'POST'});
}

async function selectSetlist(id) {
  await fetch('/api/setlists/select', {
    method: 'POST', headers: {'Content-Type': 'application/json'},
    body: JSON.stringify({setlist_id: id || null})
  });
}

let pickerKey = '';

function renderPicker(d) {
  const key = JSON.stringify([d.selected_setlist_id, d.setlists.map(s => [s.id, s.name])]);
  if (key === pickerKey) return;
  pickerKey = key;
  const picker = document.getElementById('setlistPicker');
  picker.innerHTML = '';
  picker.add(new Option('Timeline order', ''));
  for (const s of d.setlists) picker.add(new Option(s.name, s.id));
  picker.value = d.selected_setlist_id || '';
}

async function seekRegion(id) {
  await fetch('/api/seek', {
    method: 'POST', headers: {'Content-Type': 'application/json'},
    body: JSON.stringify({region_id: id})
  });
}

async function poll() {
  try {
    const res = await fetch('/api/state');
    if (!res.ok) throw new Error('HTTP ' + res.status);
    const d = await res.json();
    failCount = 0;

    const song = document.getElementById('song');
    song.textContent = d.current ? d.current.name : '--';
    song.className = 'song' + (d.current && d.current.hard_stop ? ' hard-stop' : '');
    document.getElementById('clock').textContent = d.position_text;

    const rem = document.getElementById('remaining');
    if (d.current) {
      rem.textContent = d.current.remaining_text;
      rem.className = 'remaining' + (d.current.remaining < 15 ? ' warn' : '');
    } else {
      rem.textContent = '';
    }
    document.getElementById('next').textContent = d.next ? 'Next: ' + d.next.name : '';
    document.getElementById('autoplayState').textContent = d.autoplay_state;
    document.getElementById('playBtn').innerHTML = d.is_playing ? '&#9208;' : '&#9654;';
    document.getElementById('autoplayBtn').className = d.autoplay_enabled ? 'on' : '';
    document.getElementById('countInBtn').className = d.count_in_enabled ? 'on' : '';

    renderPicker(d);
    const byId = new Map(d.regions.map(r => [r.id, r]));
    const selected = d.setlists.find(s => s.id === d.selected_setlist_id);
    const rows = selected
      ? selected.items.map(i => byId.get(i.regionId)).filter(r => r)
      : d.regions;

    const list = document.getElementById('setlist');
    list.innerHTML = '';
    for (const r of rows) {
      const li = document.createElement('li');
      li.textContent = r.name + '  ' + fmt(r.end - r.start);
      if (d.current && d.current.id === r.id) li.className = 'current';
      li.onclick = () => seekRegion(r.id);
      list.appendChild(li);
    }

    const status = document.getElementById('status');
    status.textContent = d.last_error ? d.last_error.message : 'Connected';
    status.className = 'status' + (d.last_error ? ' error' : '');
  } catch (e) {
    failCount++;
    const status = document.getElementById('status');
    status.textContent = 'Connection lost (' + failCount + ')';
    status.className = 'status error';
  }
}

setInterval(poll, POLL_MS);
poll();

if ('wakeLock' in navigator) {
  navigator.wakeLock.request('screen').catch(() => {});
}
</script>
</body>
</html>""".replace("__POLL_MS__", str(WEB_POLL_INTERVAL_MS))


# =========================================================================
# FLASK APP
# =========================================================================

TRANSPORT_ACTIONS = {
    'toggle_play': 'toggle_play',
    'next': 'next_region',
    'previous': 'previous_region',
    'toggle_autoplay': 'toggle_autoplay',
    'toggle_count_in': 'toggle_count_in',
}


def create_flask_app(shared_state: SharedPlaybackState, session):
    """Create and configure the Flask app."""
    app = Flask(__name__)
    app.logger.setLevel(logging.WARNING)  # Suppress request logs

    # Suppress werkzeug logs
    wlog = logging.getLogger('werkzeug')
    wlog.setLevel(logging.ERROR)

    @app.route('/')
    def index():
        return Response(REMOTE_HTML, mimetype='text/html')

    @app.route('/api/state')
    def api_state():
        return jsonify(shared_state.get_state())

    @app.route('/api/transport/<action>', methods=['POST'])
    def api_transport(action):
        method = TRANSPORT_ACTIONS.get(action)
        if method is None:
            return jsonify({"error": f"unknown action '{action}'"}), 404
        getattr(session, method)()
        return jsonify({"queued": action}), 202

    @app.route('/api/seek', methods=['POST'])
    def api_seek():
        data = request.get_json(silent=True) or {}
        try:
            if 'region_id' in data:
                region_id = int(data['region_id'])
                if session.catalog.get(region_id) is None:
                    return jsonify({"error": f"unknown region {region_id}"}), 404
                session.seek_to_region(region_id)
                return jsonify({"queued": "seek_to_region", "region_id": region_id}), 202
            if 'position' in data:
                position = float(data['position'])
                if position < 0:
                    raise ValueError("negative position")
                session.seek_to_position(position)
                return jsonify({"queued": "seek_to_position", "position": position}), 202
        except (TypeError, ValueError) as e:
            return jsonify({"error": f"invalid seek target: {e}"}), 400
        return jsonify({"error": "expected 'position' or 'region_id'"}), 400

    @app.route('/api/regions/reload', methods=['POST'])
    def api_reload():
        session.request_reload()
        return jsonify({"queued": "reload"}), 202

    # --- Setlists ---

    store = session.setlists

    def _json_int(data, key):
        value = data.get(key)
        if isinstance(value, bool) or value is None:
            raise ValueError(f"'{key}' must be an integer")
        return int(value)

    @app.route('/api/setlists', methods=['GET'])
    def api_setlists():
        return jsonify({
            "setlists": store.to_list(),
            "selected_id": session.selected_setlist_id,
            "project_id": session.project_id,
        })

    @app.route('/api/setlists', methods=['POST'])
    def api_setlist_create():
        data = request.get_json(silent=True) or {}
        setlist = store.create(str(data.get('name') or '').strip() or None)
        return jsonify(setlist.to_dict()), 201

    @app.route('/api/setlists/select', methods=['POST'])
    def api_setlist_select():
        data = request.get_json(silent=True) or {}
        setlist_id = data.get('setlist_id') or None
        if setlist_id is not None and store.get(setlist_id) is None:
            return jsonify({"error": f"unknown setlist '{setlist_id}'"}), 404
        session.select_setlist(setlist_id)
        return jsonify({"queued": "select_setlist", "setlist_id": setlist_id}), 202

    @app.route('/api/setlists/<setlist_id>', methods=['PATCH'])
    def api_setlist_rename(setlist_id):
        data = request.get_json(silent=True) or {}
        name = str(data.get('name') or '').strip()
        if not name:
            return jsonify({"error": "expected a non-empty 'name'"}), 400
        if not store.rename(setlist_id, name):
            return jsonify({"error": f"unknown setlist '{setlist_id}'"}), 404
        return jsonify(store.get(setlist_id).to_dict())

    @app.route('/api/setlists/<setlist_id>', methods=['DELETE'])
    def api_setlist_delete(setlist_id):
        if not store.delete(setlist_id):
            return jsonify({"error": f"unknown setlist '{setlist_id}'"}), 404
        return jsonify({"deleted": setlist_id})

    @app.route('/api/setlists/<setlist_id>/items', methods=['POST'])
    def api_setlist_add_item(setlist_id):
        data = request.get_json(silent=True) or {}
        try:
            region_id = _json_int(data, 'region_id')
            position = _json_int(data, 'position') if data.get('position') is not None else None
        except (TypeError, ValueError) as e:
            return jsonify({"error": f"invalid item: {e}"}), 400
        region = session.catalog.get(region_id)
        if region is None:
            return jsonify({"error": f"unknown region {region_id}"}), 404
        item = store.add_item(setlist_id, region.id, region.name, position)
        if item is None:
            return jsonify({"error": f"unknown setlist '{setlist_id}'"}), 404
        return jsonify(item.to_dict()), 201

    @app.route('/api/setlists/<setlist_id>/items/<item_id>', methods=['DELETE'])
    def api_setlist_remove_item(setlist_id, item_id):
        if not store.remove_item(setlist_id, item_id):
            return jsonify({"error": f"unknown setlist item '{item_id}'"}), 404
        return jsonify({"deleted": item_id})

    @app.route('/api/setlists/<setlist_id>/items/<item_id>/move', methods=['POST'])
    def api_setlist_move_item(setlist_id, item_id):
        data = request.get_json(silent=True) or {}
        try:
            position = _json_int(data, 'position')
        except (TypeError, ValueError) as e:
            return jsonify({"error": f"invalid position: {e}"}), 400
        if not store.move_item(setlist_id, item_id, position):
            return jsonify({"error": f"unknown setlist item '{item_id}'"}), 404
        return jsonify(store.get(setlist_id).to_dict())

    @app.route('/qr.png')
    def qr_code():
        ip = get_local_ip()
        port = shared_state.get_state().get('_port', WEB_SERVER_PORT)
        url = f"http://{ip}:{port}"

        qr = qrcode.QRCode(version=1, box_size=8, border=2)
        qr.add_data(url)
        qr.make(fit=True)
        img = qr.make_image(fill_color="white", back_color="#0d1117")

        buf = io.BytesIO()
        img.save(buf, format='PNG')
        buf.seek(0)
        return Response(buf.getvalue(), mimetype='image/png')

    return app


# =========================================================================
# SERVER MANAGER
# =========================================================================

class RemoteWebServer:
    """
    Manages the Flask web server lifecycle.

    Usage:
        shared = SharedPlaybackState()
        shared.bind(session)
        server = RemoteWebServer(shared, session)
        server.start()        # Non-blocking, runs in thread
        ...
        server.stop()
    """

    def __init__(self, shared_state: SharedPlaybackState, session,
                 host: str = WEB_SERVER_HOST, port: int = WEB_SERVER_PORT):
        self.shared_state = shared_state
        self.session = session
        self.host = host
        self.port = port
        self._thread: Optional[threading.Thread] = None
        self._server = None
        self.running = False
        self.url = ""

    def start(self) -> str:
        """Start the web server. Returns the URL."""
        if self.running:
            return self.url

        ip = get_local_ip()
        self.url = f"http://{ip}:{self.port}"
        self.shared_state.update(_port=self.port)

        app = create_flask_app(self.shared_state, self.session)

        # werkzeug's make_server gives us a clean shutdown()
        self._server = make_server(self.host, self.port, app, threaded=True)

        def _run():
            logger.info(f"Web server starting on {self.url}")
            try:
                self._server.serve_forever()
            except Exception as e:
                logger.error(f"Web server error: {e}")
            finally:
                self.running = False
                logger.info("Web server stopped")

        self._thread = threading.Thread(target=_run, daemon=True)
        self._thread.start()
        self.running = True

        logger.info(f"Performer remote available at: {self.url}")
        return self.url

    def stop(self):
        """Stop the web server."""
        if self._server:
            self._server.shutdown()
            self._server = None
        self.running = False
        logger.info("Web server shutdown requested")

    def get_url(self) -> str:
        return self.url if self.running else ""
