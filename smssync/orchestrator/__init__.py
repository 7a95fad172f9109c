"""Sync scheduling, backoff, auto-refresh and the user-facing service.

Public API
----------
* :class:`~smssync.orchestrator.sync.SyncEngine` — sweep and manual sync of
  rentals, with per-rental backoff and in-flight de-duplication.
* :class:`~smssync.orchestrator.backoff.SyncStateRegistry` — per-rental sync
  state and linear capped backoff.
* :class:`~smssync.orchestrator.auto_refresh.AutoRefresh` — 15 s polling
  loops for rentals a user is watching.
* :class:`~smssync.orchestrator.service.RentalService` — rent / extend /
  cancel / sync / export facade.
* :func:`~smssync.orchestrator.runner.open_service` — builds every component
  from settings.
* :func:`~smssync.orchestrator.scheduler.run_continuous` — default runtime
  entry-point; sweeps until stopped.
"""

from smssync.orchestrator.auto_refresh import AutoRefresh
from smssync.orchestrator.backoff import SyncPhase, SyncState, SyncStateRegistry, compute_backoff
from smssync.orchestrator.runner import open_service, run_sweep_once
from smssync.orchestrator.scheduler import run_continuous, sweep_loop
from smssync.orchestrator.service import RentalService
from smssync.orchestrator.sync import SweepStats, SyncEngine, SyncResult

__all__ = [
    # Engine
    "SyncEngine",
    "SyncResult",
    "SweepStats",
    # Backoff
    "SyncPhase",
    "SyncState",
    "SyncStateRegistry",
    "compute_backoff",
    # Auto-refresh
    "AutoRefresh",
    # Service
    "RentalService",
    "open_service",
    "run_sweep_once",
    # Scheduler
    "run_continuous",
    "sweep_loop",
]
