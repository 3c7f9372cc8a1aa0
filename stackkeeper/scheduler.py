"""
Scheduler driver: creation-triggered passes and the periodic sweep.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging

from .api.client import ManagementClient
from .config import Settings
from .errors import ConfigError
from .events import emit_event, EventTypes
from .ids import StackIdentity
from .reconcile import Reconciler, ReconcileReport, PassKind
from .state import PolicyStore

logger = logging.getLogger(__name__)


class SchedulerDriver:
    """Triggers reconciliation for new stacks and re-runs it for all known stacks on a timer."""

    def __init__(self, reconciler: Reconciler, store: PolicyStore,
                 interval_seconds: float = 3600, max_workers: int = 4):
        self.reconciler = reconciler
        self.store = store
        self.interval_seconds = interval_seconds
        self.max_workers = max(1, max_workers)
        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def on_stack_created(self, identity: StackIdentity) -> ReconcileReport:
        """
        Run the full pass for a stack that was just created.

        Args:
            identity: The new stack

        Returns:
            ReconcileReport of the pass

        Raises:
            ConfigError: If the stack's policy is invalid
        """
        logger.info(f"Stack {identity} created, running full reconciliation")
        emit_event(identity, EventTypes.STACK_CREATED, {}, self.store.home)
        return self.reconciler.reconcile(identity, PassKind.CREATED, cancel=self.stop_event)

    def on_stack_deleted(self, identity: StackIdentity) -> bool:
        """Forget a deleted stack so sweeps stop touching it."""
        removed = self.store.delete(identity)
        emit_event(identity, EventTypes.STACK_DELETED, {"policy_removed": removed}, self.store.home)
        return removed

    def run_sweep(self) -> Dict[str, Any]:
        """
        Run one periodic pass over every stack in the store.

        Returns:
            Sweep results
        """
        identities = self.store.list_identities()
        reports: List[ReconcileReport] = []
        aborted: List[str] = []
        errors: List[str] = []

        if not identities:
            logger.info("Sweep: no managed stacks")

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self.reconciler.reconcile, identity, PassKind.PERIODIC, self.stop_event): identity
                for identity in identities
            }
            for future in as_completed(futures):
                identity = futures[future]
                try:
                    reports.append(future.result())
                except ConfigError as e:
                    aborted.append(str(identity))
                    logger.error(f"Sweep: invalid policy for {identity}: {e}")
                except Exception as e:
                    errors.append(str(identity))
                    logger.error(f"Sweep: pass for {identity} crashed: {e}")

        failed = sorted(str(r.identity) for r in reports if r.failed)
        result = {
            "total_checked": len(identities),
            "reconciled": len(reports) - len(failed),
            "with_failures": failed,
            "aborted": sorted(aborted),
            "errors": sorted(errors),
            "reports": sorted((r.to_dict() for r in reports), key=lambda d: d["stack"]),
        }
        logger.info(
            f"Sweep done: {result['total_checked']} checked, {result['reconciled']} clean, "
            f"{len(failed)} with failures, {len(aborted)} aborted"
        )
        return result

    def _loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.run_sweep()
            except Exception as e:
                logger.error(f"Sweep failed: {e}")
            if self.stop_event.wait(self.interval_seconds):
                break

    def start(self) -> None:
        """Start sweeping in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="stackkeeper-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Sweeping every {self.interval_seconds:g}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop sweeping. In-flight passes stop at the next step boundary."""
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        self.start()
        try:
            while self._thread is not None and self._thread.is_alive():
                self._thread.join(1.0)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping")
        finally:
            self.stop()


def build_driver(settings: Settings, home: Optional[Path] = None, max_workers: int = 4) -> SchedulerDriver:
    """Wire client, store, reconciler and driver from settings."""
    store = PolicyStore(home)
    client = ManagementClient.from_settings(settings)
    reconciler = Reconciler(client, store, settings)
    return SchedulerDriver(
        reconciler,
        store,
        interval_seconds=settings.sweep_interval_minutes * 60,
        max_workers=max_workers,
    )
