"""
Collaborators driven by the upgrade core
"""

# Local
from .base import (
    CreateResult,
    HealthProbeClientBase,
    StatusStoreBase,
    TaskLauncherBase,
    TaskState,
    TaskStatus,
    WorkloadManagerBase,
)
from .http_probe import HttpProbeClient
from .kube import KubeStatusStore, KubeTaskLauncher, KubeWorkloadManager
