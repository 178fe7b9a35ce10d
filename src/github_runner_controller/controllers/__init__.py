"""
Controllers driving the runner fleet.

The autoscaler, reconciler, startup sequencer and webhook dispatcher are
assembled by ``RunnerController``.
"""

from .autoscaler import Autoscaler, labels_match
from .reconciler import ReconcileResult, Reconciler
from .runner_controller import RunnerController
from .startup import StartupReport, StartupSequencer
from .webhooks import DispatchResult, DispatchStatus, WebhookDispatcher

__all__ = [
    "Autoscaler",
    "DispatchResult",
    "DispatchStatus",
    "ReconcileResult",
    "Reconciler",
    "RunnerController",
    "StartupReport",
    "StartupSequencer",
    "WebhookDispatcher",
    "labels_match",
]
