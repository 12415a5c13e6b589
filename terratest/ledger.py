"""Run ledger: records scenario runs, resource events and step timings."""
from __future__ import annotations

import contextvars
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Generator, List, Optional, Protocol

from sqlalchemy import select

from .db import DEFAULT_LEDGER_URL, create_ledger_engine, create_session_factory
from .models import Base, ResourceEvent, ScenarioRunRecord, StepSpan

CREATE = "create"
DELETE = "delete"
OK = "ok"
FAILED = "failed"


@dataclass(frozen=True)
class OutstandingResource:
    """A resource created by a run with no successful delete."""
    resource_type: str
    resource_id: str
    region: Optional[str]


class Ledger(Protocol):
    """Minimal ledger interface so runs can be recorded anywhere."""

    def start_run(self, run_id: str, name: str, region: Optional[str]) -> None:
        """Record the start of a scenario run."""
        raise NotImplementedError

    def finish_run(
        self, run_id: str, state: str, error: Optional[str], region: Optional[str] = None
    ) -> None:
        """Record the terminal state of a scenario run."""
        raise NotImplementedError

    def record_resource(
        self,
        run_id: str,
        resource_type: str,
        resource_id: str,
        region: Optional[str],
        action: str,
        status: str,
        detail: Optional[str] = None,
    ) -> None:
        """Record a create or delete of a remote resource."""
        raise NotImplementedError

    def record_step(self, run_id: str, name: str, status: str, duration_ms: float, attempt: int) -> None:
        """Record a timed step under a run."""
        raise NotImplementedError

    def outstanding_resources(self, run_id: str) -> List[OutstandingResource]:
        """Return resources created by the run and never deleted."""
        raise NotImplementedError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NullLedger:
    """Ledger that records nothing."""

    def start_run(self, run_id: str, name: str, region: Optional[str]) -> None:
        return None

    def finish_run(
        self, run_id: str, state: str, error: Optional[str], region: Optional[str] = None
    ) -> None:
        return None

    def record_resource(
        self,
        run_id: str,
        resource_type: str,
        resource_id: str,
        region: Optional[str],
        action: str,
        status: str,
        detail: Optional[str] = None,
    ) -> None:
        return None

    def record_step(self, run_id: str, name: str, status: str, duration_ms: float, attempt: int) -> None:
        return None

    def outstanding_resources(self, run_id: str) -> List[OutstandingResource]:
        return []


class SqliteLedger:
    """Persist runs, resource events and step spans via SQLAlchemy."""

    def __init__(self, url: str = DEFAULT_LEDGER_URL) -> None:
        self.engine = create_ledger_engine(url)
        Base.metadata.create_all(bind=self.engine)
        self._sessions = create_session_factory(self.engine)

    def start_run(self, run_id: str, name: str, region: Optional[str]) -> None:
        """Insert the run row."""
        with self._sessions() as session:
            session.add(
                ScenarioRunRecord(
                    id=run_id,
                    name=name,
                    region=region,
                    state="INIT",
                    started_at=_utc_now(),
                )
            )
            session.commit()

    def finish_run(
        self, run_id: str, state: str, error: Optional[str], region: Optional[str] = None
    ) -> None:
        """Update the run row with its terminal state."""
        with self._sessions() as session:
            record = session.get(ScenarioRunRecord, run_id)
            if record:
                record.state = state
                record.error = error
                record.finished_at = _utc_now()
                if region:
                    record.region = region
            session.commit()

    def record_resource(
        self,
        run_id: str,
        resource_type: str,
        resource_id: str,
        region: Optional[str],
        action: str,
        status: str,
        detail: Optional[str] = None,
    ) -> None:
        """Insert a resource event row."""
        with self._sessions() as session:
            session.add(
                ResourceEvent(
                    id=uuid.uuid4().hex,
                    run_id=run_id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    region=region,
                    action=action,
                    status=status,
                    detail=detail,
                    recorded_at=_utc_now(),
                )
            )
            session.commit()

    def record_step(self, run_id: str, name: str, status: str, duration_ms: float, attempt: int) -> None:
        """Insert a step span row."""
        with self._sessions() as session:
            session.add(
                StepSpan(
                    id=uuid.uuid4().hex,
                    run_id=run_id,
                    name=name,
                    status=status,
                    duration_ms=duration_ms,
                    attempt=attempt,
                    started_at=_utc_now(),
                )
            )
            session.commit()

    def run_state(self, run_id: str) -> Optional[str]:
        """Return the recorded state of a run."""
        with self._sessions() as session:
            record = session.get(ScenarioRunRecord, run_id)
            return record.state if record else None

    def step_names(self, run_id: str) -> List[str]:
        """Return recorded step names for a run, oldest first."""
        with self._sessions() as session:
            rows = session.execute(
                select(StepSpan.name).where(StepSpan.run_id == run_id).order_by(StepSpan.started_at)
            ).all()
        return [row[0] for row in rows]

    def outstanding_resources(self, run_id: str) -> List[OutstandingResource]:
        """Resources with more successful creates than successful deletes."""
        with self._sessions() as session:
            events = session.scalars(
                select(ResourceEvent).where(
                    ResourceEvent.run_id == run_id, ResourceEvent.status == OK
                )
            ).all()
            balance: Counter = Counter()
            regions: dict = {}
            for item in events:
                key = (item.resource_type, item.resource_id)
                regions[key] = item.region
                balance[key] += 1 if item.action == CREATE else -1
        return [
            OutstandingResource(resource_type=key[0], resource_id=key[1], region=regions[key])
            for key, count in sorted(balance.items())
            if count > 0
        ]


_current_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "run_id", default=None
)
_current_ledger: contextvars.ContextVar[Optional[Ledger]] = contextvars.ContextVar(
    "ledger", default=None
)


def create_ledger(url: Optional[str]) -> Ledger:
    """Return a SQLite-backed ledger for a URL, or a null ledger."""
    if not url:
        return NullLedger()
    return SqliteLedger(url)


@contextmanager
def bind_run(ledger: Ledger, run_id: str) -> Generator[None, None, None]:
    """Make the ledger and run id current for steps and resource events."""
    ledger_token = _current_ledger.set(ledger)
    run_token = _current_run_id.set(run_id)
    try:
        yield
    finally:
        _current_run_id.reset(run_token)
        _current_ledger.reset(ledger_token)


def record_resource_event(
    resource_type: str,
    resource_id: str,
    region: Optional[str],
    action: str,
    status: str,
    detail: Optional[str] = None,
) -> None:
    """Record a resource event under the current run, if any."""
    ledger = _current_ledger.get()
    run_id = _current_run_id.get()
    if not ledger or not run_id:
        return
    ledger.record_resource(run_id, resource_type, resource_id, region, action, status, detail)


@contextmanager
def step_span(name: str, attempt: int = 1) -> Generator[None, None, None]:
    """Record a named, timed step under the current run."""
    ledger = _current_ledger.get()
    run_id = _current_run_id.get()
    if not ledger or not run_id:
        yield
        return
    start = time.perf_counter()
    status = FAILED
    try:
        yield
        status = OK
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        ledger.record_step(run_id, name, status, duration_ms, attempt)


def traced(name: str):
    """Decorator to wrap a function in a step span."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            with step_span(name):
                return func(*args, **kwargs)

        return wrapper

    return decorator
