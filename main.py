#!/usr/bin/env python3
"""
Region Remote - Setlist Autoplay Remote for REAPER

Follows REAPER's transport over its web interface, keeps track of which
region (song) is playing and advances through the setlist automatically,
with optional count-in and hard-stop regions. A performer remote is served
on the local network.

Usage:
    python main.py [--host 127.0.0.1] [--port 8080] [--web-port 8090]
                   [--no-web] [--count-in] [--no-autoplay] [--debug]
"""

import os
import sys
import time
import logging
import argparse
from datetime import datetime

# Ensure we can import from our package
sys.path.insert(0, os.path.dirname(__file__))

from config import (
    LOG_DIR, REAPER_HOST, REAPER_PORT, WEB_SERVER_PORT,
)
from utils.formatting import format_time
from utils.preferences import get_session_preferences, save_preferences


# =============================================================================
# LOGGING
# =============================================================================

def setup_logging(debug: bool = False) -> logging.Logger:
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"region_remote_{timestamp}.log")

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler(log_file)]
    )
    return logging.getLogger("RegionRemote")


def check_dependencies():
    missing = []
    for dep in ['flask', 'werkzeug', 'qrcode', 'PIL']:
        try:
            __import__(dep)
        except ImportError:
            missing.append(dep)
    if missing:
        print(f"Missing: {', '.join(missing)}")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Setlist autoplay remote for REAPER")
    parser.add_argument("--host", default=REAPER_HOST, help="REAPER web interface host")
    parser.add_argument("--port", type=int, default=REAPER_PORT, help="REAPER web interface port")
    parser.add_argument("--web-port", type=int, default=WEB_SERVER_PORT, help="Performer remote port")
    parser.add_argument("--no-web", action="store_true", help="Do not serve the performer remote")
    parser.add_argument("--count-in", action="store_true", default=None,
                        help="Enable count-in before autoplay advances")
    parser.add_argument("--no-autoplay", action="store_true", help="Start with autoplay disabled")
    parser.add_argument("--debug", action="store_true")
    return parser


# =============================================================================
# MAIN
# =============================================================================

def main():
    # 1. SETUP & LOGGING (Must happen first!)
    args = build_parser().parse_args()

    check_dependencies()
    logger = setup_logging(debug=args.debug)
    logger.info("Region Remote Starting")

    # Late imports so the backend logs through the configured handlers
    from backend.reaper_gateway import ReaperWebGateway
    from backend.session import PlaybackSession
    from backend.settings import SessionSettings
    from backend.web_server import SharedPlaybackState, RemoteWebServer

    # 2. SETTINGS (config defaults < saved preferences < command line)
    settings = SessionSettings.from_preferences(get_session_preferences()).with_overrides(
        autoplay_enabled=False if args.no_autoplay else None,
        count_in_enabled=args.count_in,
    )

    # 3. SESSION
    gateway = ReaperWebGateway(args.host, args.port)
    session = PlaybackSession(gateway, settings, on_settings_saved=save_preferences)

    last_region = {'id': None}

    def on_state(state):
        if state.current_region_id == last_region['id']:
            return
        last_region['id'] = state.current_region_id
        region = session.catalog.get(state.current_region_id) if state.current_region_id is not None else None
        name = region.name if region else "-"
        print(f"[{'PLAY' if state.is_playing else 'STOP'}] {format_time(state.current_position)}  {name}")

    def on_error(kind, message):
        logger.warning(f"{kind}: {message}")

    session.on('state_changed', on_state)
    session.on('autoplay_state', lambda s: logger.info(f"Autoplay: {s.name}"))
    session.on('error', on_error)
    session.on('project_changed', lambda pid: logger.info(f"Project changed: {pid}"))

    server = None
    try:
        session.init()

        if not args.no_web:
            shared = SharedPlaybackState()
            shared.bind(session)
            server = RemoteWebServer(shared, session, port=args.web_port)
            try:
                url = server.start()
                logger.info(f"Open {url} on a phone or tablet (QR code at {url}/qr.png)")
            except OSError as e:
                logger.error(f"Could not start web server on port {args.web_port}: {e}")
                server = None

        # 4. RUN UNTIL CTRL-C
        while True:
            time.sleep(0.5)

    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.exception(f"Critical Error: {e}")
    finally:
        if server is not None:
            server.stop()
        session.shutdown()
        logger.info("Region Remote Exiting")


if __name__ == "__main__":
    main()
