"""
Reconcile loop for NodeRollouts and NodeReplacements.

Every resync period the manager lists both resource types and reconciles
each object whose backoff has expired. Replacements are visited one at a
time, in-progress first and then by descending priority, so a single
manager never admits two replacements in the same pass.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple

from config import Settings
from drain import DrainPipeline
from errors import OrchestratorError
from kube_client import ClusterClient
from kube_types import PHASE_IN_PROGRESS, ROLLOUT_KIND, REPLACEMENT_KIND, ReconcileResult
from replacement_controller import ReplacementController
from rollout_controller import RolloutController

logger = logging.getLogger(__name__)


class ControllerManager:
    """Runs both controllers over the whole cluster, level-triggered."""

    def __init__(
        self,
        client: ClusterClient,
        rollouts: RolloutController,
        replacements: ReplacementController,
        resync_period_secs: float = 30.0,
        error_backoff_secs: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.rollouts = rollouts
        self.replacements = replacements
        self.resync_period_secs = resync_period_secs
        self.error_backoff_secs = error_backoff_secs
        self._clock = clock
        self._not_before: Dict[Tuple[str, str], float] = {}
        # One pass at a time, so admission never races itself
        self._pass_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, client: ClusterClient, settings: Settings) -> "ControllerManager":
        pipeline = DrainPipeline(
            client,
            grace_period_secs=settings.EVICTION_GRACE_PERIOD_SECS,
            force_delete_timeout_secs=settings.FORCE_DELETE_TIMEOUT_SECS,
            poll_interval_secs=settings.POD_POLL_INTERVAL_SECS,
        )
        return cls(
            client,
            rollouts=RolloutController(
                client,
                max_age_secs=settings.ROLLOUT_MAX_AGE_SECS,
                api_version=f"{settings.CRD_GROUP}/{settings.CRD_VERSION}",
                requeue_after_secs=settings.REQUEUE_AFTER_SECS,
            ),
            replacements=ReplacementController(
                client,
                pipeline,
                requeue_after_secs=settings.REQUEUE_AFTER_SECS,
            ),
            resync_period_secs=settings.RESYNC_PERIOD_SECS,
            error_backoff_secs=settings.REQUEUE_AFTER_SECS,
        )

    def _run(self, kind: str, name: str, reconcile: Callable[[str], ReconcileResult]) -> bool:
        key = (kind, name)
        now = self._clock()
        if self._not_before.get(key, 0.0) > now:
            return False

        try:
            outcome = reconcile(name)
        except OrchestratorError as e:
            logger.error(f"❌ Reconciling {kind} {name} failed: {e}")
            self._not_before[key] = now + self.error_backoff_secs
            return True
        except Exception as e:
            logger.error(f"❌ Unexpected error reconciling {kind} {name}: {e}", exc_info=True)
            self._not_before[key] = now + self.error_backoff_secs
            return True

        if outcome.requeue and outcome.requeue_after > 0:
            self._not_before[key] = now + outcome.requeue_after
        else:
            self._not_before.pop(key, None)
        return True

    def _pass(self) -> Dict[str, int]:
        counts = {ROLLOUT_KIND: 0, REPLACEMENT_KIND: 0}
        seen: Set[Tuple[str, str]] = set()

        for rollout in self.client.list_rollouts():
            seen.add((ROLLOUT_KIND, rollout.name))
            if self._run(ROLLOUT_KIND, rollout.name, self.rollouts.reconcile):
                counts[ROLLOUT_KIND] += 1

        pending = sorted(
            self.client.list_replacements(),
            key=lambda r: (r.status.phase != PHASE_IN_PROGRESS, -r.spec.priority, r.name),
        )
        for replacement in pending:
            seen.add((REPLACEMENT_KIND, replacement.name))
            if self._run(REPLACEMENT_KIND, replacement.name, self.replacements.reconcile):
                counts[REPLACEMENT_KIND] += 1

        # Forget backoffs of deleted objects
        for key in set(self._not_before) - seen:
            del self._not_before[key]

        logger.debug(f"Reconcile pass done: {counts}")
        return counts

    def run_once(self) -> Dict[str, int]:
        """
        Reconcile every rollout and replacement once, waiting for a pass
        already running to finish first.

        Returns:
            Number of objects reconciled per kind
        """
        with self._pass_lock:
            return self._pass()

    def try_run_once(self) -> Optional[Dict[str, int]]:
        """Like ``run_once``, but return None at once if a pass is already running."""
        if not self._pass_lock.acquire(blocking=False):
            return None
        try:
            return self._pass()
        finally:
            self._pass_lock.release()

    def run_forever(self) -> None:
        """Block and reconcile every resync period until stopped."""
        logger.info(f"Controller manager started, resync every {self.resync_period_secs}s")
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"❌ Reconcile pass failed: {e}", exc_info=True)
            self._stop.wait(self.resync_period_secs)
        logger.info("Controller manager stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="controller-manager", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
