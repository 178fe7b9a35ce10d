"""
Runner provisioning backends.

Both backends implement the ``Provisioner`` lifecycle contract: create,
start, stop, remove, plus liveness and status sync.
"""

from .base import ProvisionHandle, ProvisionOptions, Provisioner, ProvisioningError, select_provisioner
from .container import ContainerProvisioner
from .native import NativeProvisioner

__all__ = [
    "ContainerProvisioner",
    "NativeProvisioner",
    "ProvisionHandle",
    "ProvisionOptions",
    "Provisioner",
    "ProvisioningError",
    "select_provisioner",
]
