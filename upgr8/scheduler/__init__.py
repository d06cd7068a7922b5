"""
Concurrent execution of reconciles across many ManagedApplications
"""

# Local
from .scheduler import ReconcileRequest, ReconcileScheduler
from .timer import TimerEvent, TimerThread
