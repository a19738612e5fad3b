"""
BTRFS maintenance engine.

Schedules and runs snapshots, scrubs, balances, defragmentation and
compression reports against one btrfs volume, keeps a bounded history of
every run, and prunes old snapshots according to a retention policy.
Provides a Flask Blueprint exposing the JSON API.
"""

import logging

from flask import Blueprint

from engine.executor import CommandRunner, OperationExecutor
from engine.operations import MaintenanceOperations
from engine.scheduler import ScheduleRegistry
from engine.state import AppState

logger = logging.getLogger(__name__)


class Engine:
    """Owns the shared state and every component that acts on it."""

    def __init__(self, state_file=None, runner=None, scheduler=None):
        self.state = AppState(state_file)
        self.executor = OperationExecutor(self.state, runner or CommandRunner())
        self.operations = MaintenanceOperations(self.state, self.executor)
        self.registry = ScheduleRegistry(self.state, self.operations, scheduler)

    def start(self, paused=False):
        self.state.load()
        self.registry.start(paused=paused)

    def shutdown(self):
        """Stop firing schedules and terminate maintenance commands still running."""
        self.registry.shutdown()
        self.executor.runner.terminate_all()
        logger.info("Engine stopped")


def init_engine(app, state_file, runner=None, scheduler=None, start=True):
    """Create the engine, register its blueprint on the app, and start the schedules.

    Args:
        app: Flask application
        state_file: path of the JSON state file
        runner: command runner (defaults to a subprocess-backed CommandRunner)
        scheduler: APScheduler scheduler (defaults to a BackgroundScheduler)
        start: load state and start the scheduler right away

    Returns:
        The Engine instance, also stored as app.extensions['engine'].
    """
    from engine.routes import register_routes

    engine = Engine(state_file, runner=runner, scheduler=scheduler)
    bp = Blueprint('engine', __name__)
    register_routes(bp, engine.state, engine.operations, engine.registry)
    app.register_blueprint(bp)
    app.extensions['engine'] = engine

    if start:
        engine.start()
    return engine
