"""
The ReconcileScheduler runs reconciles of many ManagedApplications on a bounded
pool of worker threads. It guarantees that at most one reconcile of a given
resource is in flight at any time and turns requested requeues into timer
events, so no worker ever blocks waiting for time to pass.
"""

# Standard
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set
import os
import threading

# First Party
import alog

# Local
from .. import config
from ..deploy_manager import DeployManagerBase
from ..reconcile import ReconcileManager, ReconciliationResult
from ..utils import parse_time_delta
from .timer import TimerEvent, TimerThread

log = alog.use_channel("SCHED")

# Reads the latest manifest for a <namespace>/<name> identity
RESOURCE_READER = Callable[[str], Optional[dict]]


@dataclass
class ReconcileRequest:
    """A request to reconcile one resource. Without a resource manifest the
    latest version is read when the request runs.
    """

    uid: str
    app_id: str
    resource: Optional[dict] = None


class ReconcileScheduler:  # pylint: disable=too-many-instance-attributes
    """Bounded, per-resource serialized execution of reconciles"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        reconcile_manager: ReconcileManager,
        resource_reader: Optional[RESOURCE_READER] = None,
        deploy_manager: Optional[DeployManagerBase] = None,
        max_workers: Optional[int] = None,
        reconcile_period: Optional[timedelta] = None,
        timer_thread: Optional[TimerThread] = None,
    ):
        """
        Args:
            reconcile_manager:  ReconcileManager
                The manager whose safe_reconcile is run for each request
            resource_reader:  Optional[RESOURCE_READER]
                Reads the latest manifest of a resource for requeues. Defaults
                to a lookup through deploy_manager.
            deploy_manager:  Optional[DeployManagerBase]
                The deploy manager used by the default resource reader
            max_workers:  Optional[int]
                Size of the worker pool (defaults to config, then cpu count)
            reconcile_period:  Optional[timedelta]
                Interval of the periodic resync of every known resource
                (defaults to config, empty disables)
            timer_thread:  Optional[TimerThread]
                The timer used for requeues
        """
        self.reconcile_manager = reconcile_manager
        if resource_reader is None:
            assert (
                deploy_manager is not None
            ), "Must provide a resource_reader or a deploy_manager"
            resource_reader = self._make_reader(deploy_manager)
        self.resource_reader = resource_reader

        max_workers = (
            max_workers
            or config.scheduler.max_concurrent_reconciles
            or os.cpu_count()
            or 1
        )
        self.max_workers = max_workers
        self.reconcile_period = reconcile_period or parse_time_delta(
            config.scheduler.reconcile_period
        )

        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="reconcile"
        )
        self.timer_thread = timer_thread or TimerThread()

        # Bookkeeping shared between workers and the timer, guarded by _lock
        self._lock = threading.Lock()
        self._running: Set[str] = set()
        self._pending: Dict[str, ReconcileRequest] = {}
        self._requeues: Dict[str, TimerEvent] = {}
        self._known: Dict[str, str] = {}
        self._stopped = False

    ## Lifecycle ###############################################################

    def start(self):
        """Start the timer and the periodic resync"""
        log.info("Starting scheduler with %d workers", self.max_workers)
        self.timer_thread.start_thread()
        if self.reconcile_period:
            self._schedule_resync()

    def stop(self, wait: bool = True):
        """Stop accepting work, cancel requeues and shut down the pool"""
        log.info("Stopping scheduler")
        with self._lock:
            self._stopped = True
            for event in self._requeues.values():
                event.cancel()
            self._requeues.clear()
            self._pending.clear()
        self.timer_thread.stop_thread()
        self.executor.shutdown(wait=wait)

    ## Public Interface ########################################################

    def enqueue(self, resource: dict) -> bool:
        """Request a reconcile of the given manifest. If a reconcile of the same
        resource is in flight, the request replaces any pending request and
        runs when the current one finishes.

        Returns:
            started:  bool
                True if the reconcile was started right away
        """
        metadata = resource.get("metadata", {})
        request = ReconcileRequest(
            uid=metadata.get("uid") or self._app_id(metadata),
            app_id=self._app_id(metadata),
            resource=resource,
        )
        return self._submit(request)

    def requeue(self, uid: str, app_id: str, after: timedelta) -> Optional[TimerEvent]:
        """Schedule a reconcile of the latest version of a resource. Only the
        most recent requeue of a resource is kept.
        """
        with self._lock:
            if self._stopped:
                return None
            previous = self._requeues.pop(uid, None)
            if previous:
                previous.cancel()
            event = self.timer_thread.put_event(
                datetime.now() + after,
                self._fire_requeue,
                ReconcileRequest(uid=uid, app_id=app_id),
            )
            if event:
                self._requeues[uid] = event
        log.debug2("Requeued %s in %s", app_id, after)
        return event

    def is_running(self, uid: str) -> bool:
        with self._lock:
            return uid in self._running

    ## Implementation Details ##################################################

    def _submit(self, request: ReconcileRequest) -> bool:
        with self._lock:
            if self._stopped:
                log.debug("Scheduler stopped. Dropping request for %s", request.app_id)
                return False
            self._known[request.uid] = request.app_id
            if request.uid in self._running:
                log.debug2("Coalescing request for running %s", request.app_id)
                self._pending[request.uid] = request
                return False
            self._running.add(request.uid)
            self.executor.submit(self._run, request)
            return True

    def _run(self, request: ReconcileRequest):
        try:
            resource = request.resource
            if resource is None:
                resource = self.resource_reader(request.app_id)
            if resource is None:
                log.debug("%s no longer exists", request.app_id)
                with self._lock:
                    self._known.pop(request.uid, None)
                    event = self._requeues.pop(request.uid, None)
                    if event:
                        event.cancel()
                return
            result = self.reconcile_manager.safe_reconcile(resource)
            self._handle_result(request, result)
        except Exception as err:  # pylint: disable=broad-except
            log.error(
                "Unhandled error reconciling %s: %s", request.app_id, err, exc_info=True
            )
        finally:
            self._finish(request)

    def _handle_result(self, request: ReconcileRequest, result: ReconciliationResult):
        if not result.requeue:
            log.debug2("No requeue requested for %s", request.app_id)
            return
        self.requeue(request.uid, request.app_id, result.requeue_params.requeue_after)

    def _fire_requeue(self, request: ReconcileRequest) -> bool:
        with self._lock:
            event = self._requeues.get(request.uid)
            if event is not None and event.args[0] is request:
                del self._requeues[request.uid]
        return self._submit(request)

    def _finish(self, request: ReconcileRequest):
        with self._lock:
            next_request = self._pending.pop(request.uid, None)
            if next_request is None or self._stopped:
                self._running.discard(request.uid)
                return
            log.debug2("Running coalesced request for %s", request.app_id)
            self.executor.submit(self._run, next_request)

    def _schedule_resync(self):
        self.timer_thread.put_event(
            datetime.now() + self.reconcile_period, self._resync
        )

    def _resync(self):
        with self._lock:
            known = list(self._known.items())
        log.debug("Resyncing %d resources", len(known))
        for uid, app_id in known:
            self._submit(ReconcileRequest(uid=uid, app_id=app_id))
        self._schedule_resync()

    @staticmethod
    def _app_id(metadata: dict) -> str:
        namespace = metadata.get("namespace") or "default"
        return f"{namespace}/{metadata.get('name')}"

    @staticmethod
    def _make_reader(deploy_manager: DeployManagerBase) -> RESOURCE_READER:
        api_version = f"{config.resource.group}/{config.resource.version}"

        def read_resource(app_id: str) -> Optional[dict]:
            namespace, _, name = app_id.rpartition("/")
            success, content = deploy_manager.get_object_current_state(
                kind=config.resource.kind,
                name=name,
                namespace=namespace,
                api_version=api_version,
            )
            if not success:
                log.warning("Failed to read %s", app_id)
                return None
            return content

        return read_resource
