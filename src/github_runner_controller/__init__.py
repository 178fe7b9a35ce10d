"""
GitHub Runner Controller.

Control plane for a fleet of self-hosted GitHub Actions runners, run
either as native processes or as Docker containers.

This package implements:
- Per-pool autoscaling driven by ``workflow_job`` webhooks
- Warm capacity and idle scale-down
- Periodic reconciliation against GitHub and local liveness
- Recovery of persistent runners across controller restarts
"""

__version__ = "0.1.0"
__author__ = "Tyler Zervas"
__email__ = "tyler@example.com"

from .controllers.runner_controller import RunnerController
from .models.runner import IsolationType, Pool, Runner, RunnerStatus

__all__ = [
    "IsolationType",
    "Pool",
    "Runner",
    "RunnerController",
    "RunnerStatus",
]
