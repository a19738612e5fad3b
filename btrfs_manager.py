"""
BTRFS Manager: scheduled snapshots, scrubs and balances for a btrfs volume.

Run directly with ``python btrfs_manager.py`` or serve ``btrfs_manager:app``
from a WSGI server (use a single worker: the scheduler and the state file
belong to one process).
"""

import os
import sys
import atexit
import logging

from flask import Flask, jsonify

from engine import init_engine


# ============================================================================
# CONFIGURATION
# ============================================================================
# All settings come from environment variables, with the defaults below.
# Schedules, paths and retention are edited at runtime through /api/config
# and kept in the state file.
# ============================================================================

# Port and interface the HTTP API listens on.
SERVER_PORT = int(os.environ.get('PORT', 8080))
SERVER_HOST = os.environ.get('HOST', '0.0.0.0')

# JSON file holding the configuration and the operation history.
STATE_FILE = os.environ.get('STATE_FILE', '/data/state.json')

# DEBUG, INFO, WARNING or ERROR.
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

APP_VERSION = 1.0


# --- CONSOLE STYLING ---
class Colors:
    HEADER = '\033[95m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


def print_configuration():
    """Prints the current configuration in a neat, aligned table."""
    print(f"\n{Colors.HEADER}{Colors.BOLD}--- CURRENT CONFIGURATION ---{Colors.RESET}")

    def print_row(key, value, is_path=False):
        color = Colors.CYAN if is_path else Colors.GREEN
        print(f" {Colors.BOLD}{key:<20}{Colors.RESET} : {color}{value}{Colors.RESET}")

    print_row("Server", f"{SERVER_HOST}:{SERVER_PORT}")
    print_row("State File", STATE_FILE, True)
    print_row("Log Level", LOG_LEVEL)

    config = engine.state.get_config()
    print_row("Target Drive", config.target_drive or "Not set", bool(config.target_drive))
    print_row("Snapshot Source", config.snapshot_source or "Not set", bool(config.snapshot_source))
    print_row("Snapshot Dest", config.snapshot_dest or "Not set", bool(config.snapshot_dest))
    active = ', '.join(sorted(engine.registry.jobs())) or 'none'
    print_row("Active Schedules", active)
    print(f"{Colors.HEADER}-----------------------------{Colors.RESET}\n")


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)
# APScheduler logs every job execution at INFO
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = Flask(__name__)


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'version': APP_VERSION})


# --- AUTO-INITIALIZATION FOR WSGI ---
engine = init_engine(app, STATE_FILE)
atexit.register(engine.shutdown)


if __name__ == '__main__':
    print_configuration()

    if not os.path.exists(os.path.dirname(STATE_FILE) or '.'):
        print(f"{Colors.YELLOW}WARNING: State directory does not exist yet, it will be created on first save.{Colors.RESET}")

    print(f"{Colors.GREEN}{Colors.BOLD}🚀 BTRFS Manager started on :{SERVER_PORT}{Colors.RESET}")
    print(f"   (Press CTRL+C to stop)")
    try:
        app.run(host=SERVER_HOST, port=SERVER_PORT, debug=False, threaded=True)
    except OSError as e:
        print(f"{Colors.RED}{Colors.BOLD}CRITICAL ERROR: Cannot listen on port {SERVER_PORT}: {e}{Colors.RESET}")
        sys.exit(1)
