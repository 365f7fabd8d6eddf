"""
Recalculation dispatch - runs the financial recalculation cascade off the
request path.

Mutations call dispatch(project_id) after their own commit and return
immediately. Recalculations run on a bounded thread pool, at most one per
project at a time; a dispatch that arrives while that project is running
marks it dirty so exactly one follow-up run picks up the newer state.
Failures are logged and never reach the caller; the next dispatch (or the
periodic sweep) recomputes everything again.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Callable, Optional, Set

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from buildledger.config import get_config
from buildledger.models import SessionLocal
from buildledger.infrastructure.repositories import ProjectRepository
from buildledger.domain.services.recalculation_service import FinancialRecalculationService

logger = logging.getLogger(__name__)


class RecalculationDispatcher:
    """
    Per-project coalescing dispatcher for FinancialRecalculationService.

    Args:
        session_factory: Creates the session each recalculation runs in
        max_workers: Upper bound on concurrent recalculations
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, max_workers: int = 4):
        self.session_factory = session_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="finance-recalc")
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running: Set[int] = set()
        self._dirty: Set[int] = set()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._closed = False

    def dispatch(self, project_id: int) -> None:
        """Request a recalculation for a project without waiting for it."""
        with self._lock:
            if self._closed:
                logger.warning(f"Dispatcher closed; recalculation for project {project_id} dropped")
                return
            if project_id in self._running:
                self._dirty.add(project_id)
                return
            self._running.add(project_id)
        self._executor.submit(self._run, project_id)

    def _run(self, project_id: int) -> None:
        while True:
            self._recalculate(project_id)
            with self._lock:
                if project_id in self._dirty:
                    self._dirty.discard(project_id)
                    continue
                self._running.discard(project_id)
                self._idle.notify_all()
                return

    def _recalculate(self, project_id: int) -> None:
        session = self.session_factory()
        try:
            FinancialRecalculationService(session).recalculate_project_finances(project_id)
            session.commit()
        except Exception:
            session.rollback()
            logger.exception(f"Background recalculation failed for project {project_id}")
        finally:
            session.close()

    def is_running(self, project_id: int) -> bool:
        with self._lock:
            return project_id in self._running

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no recalculation is running or queued. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout=timeout)

    # =========================================================================
    # Periodic sweep
    # =========================================================================

    def sweep(self) -> int:
        """Dispatch a recalculation for every active project."""
        session = self.session_factory()
        try:
            project_ids = ProjectRepository(session).list_ids()
        finally:
            session.close()
        for project_id in project_ids:
            self.dispatch(project_id)
        logger.info(f"Ledger sweep dispatched {len(project_ids)} recalculations")
        return len(project_ids)

    def start_sweep(self, interval_minutes: int) -> BackgroundScheduler:
        """Start an interval job that bounds how stale any ledger entry can get."""
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler()
            self._scheduler.add_job(self.sweep, 'interval', minutes=interval_minutes, id="ledger_sweep")
            self._scheduler.start()
            logger.info(f"Ledger sweep scheduled every {interval_minutes} minutes")
        return self._scheduler

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._executor.shutdown(wait=wait)


@lru_cache(maxsize=1)
def get_recalculation_dispatcher() -> RecalculationDispatcher:
    """Process-wide dispatcher bound to the application database."""
    return RecalculationDispatcher(max_workers=get_config().recalculation_max_workers)
