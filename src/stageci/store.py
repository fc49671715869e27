# store.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Set

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import JobExecution, JobState, Run, RunStatus, TriggerEvent, now_utc


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    # sqlite_autoincrement: ids are never reused, so they only ever grow
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    before_rev: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    after_rev: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class JobExecutionRow(Base):
    __tablename__ = "job_executions"

    run_id: Mapped[int] = mapped_column(sa.Integer, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    job_name: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    detail: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    error_kind: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    logs: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    # transitive needs, frozen when the run is created
    upstream: Mapped[List[str]] = mapped_column(sa.JSON, nullable=False, default=list)


class EnvironmentRow(Base):
    # secrets are deliberately not a column
    __tablename__ = "environments"

    name: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    protected: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    last_output: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _engine(url: str) -> sa.Engine:
    u = make_url(url)
    if u.get_backend_name() != "sqlite":
        return sa.create_engine(url, pool_pre_ping=True)

    if u.database and u.database != ":memory:":
        Path(u.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return sa.create_engine(url, connect_args={"check_same_thread": False})
    # one shared in-memory database for every thread
    return sa.create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)


class RunStore:
    """
    Persisted run state: runs, their job execution table, environment outputs.
    Keyed by a monotonically increasing run id.
    """

    def __init__(self, url: str = "sqlite://"):
        self.url = url
        self.engine = _engine(url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = threading.Lock()

    # -----------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------

    def create_run(
        self,
        pipeline: str,
        trigger: TriggerEvent,
        job_names: Iterable[str],
        upstream: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> Run:
        created = now_utc()
        names = list(job_names)
        upstream = upstream or {}
        with self._lock, self.SessionLocal() as s, s.begin():
            row = RunRow(
                pipeline=pipeline,
                ref=trigger.ref,
                before_rev=trigger.before,
                after_rev=trigger.after,
                actor=trigger.actor,
                status=RunStatus.PENDING.value,
                created_at=created,
            )
            s.add(row)
            s.flush()
            run_id = row.id
            for i, name in enumerate(names):
                s.add(
                    JobExecutionRow(
                        run_id=run_id,
                        job_name=name,
                        position=i,
                        state=JobState.PENDING.value,
                        upstream=sorted(upstream.get(name, ())),
                    )
                )

        return Run(
            id=run_id,
            pipeline=pipeline,
            trigger=trigger,
            executions={n: JobExecution(job=n) for n in names},
            created_at=created,
        )

    def save_run(self, run: Run) -> None:
        with self._lock, self.SessionLocal() as s, s.begin():
            row = s.get(RunRow, run.id)
            if row is None:
                return
            row.status = run.status.value
            row.finished_at = run.finished_at

    def save_execution(self, run_id: int, ex: JobExecution) -> None:
        with self._lock, self.SessionLocal() as s, s.begin():
            row = s.get(JobExecutionRow, (run_id, ex.job))
            if row is None:
                return
            row.state = ex.state.value
            row.started_at = ex.started_at
            row.finished_at = ex.finished_at
            row.detail = ex.detail
            row.error_kind = ex.error_kind
            row.attempts = ex.attempts
            row.logs = ex.log

    def load_run(self, run_id: int) -> Optional[Run]:
        with self._lock, self.SessionLocal() as s:
            row = s.get(RunRow, run_id)
            if row is None:
                return None
            q = (
                sa.select(JobExecutionRow)
                .where(JobExecutionRow.run_id == run_id)
                .order_by(JobExecutionRow.position)
            )
            executions = {
                r.job_name: JobExecution(
                    job=r.job_name,
                    state=JobState(r.state),
                    started_at=_utc(r.started_at),
                    finished_at=_utc(r.finished_at),
                    detail=r.detail,
                    error_kind=r.error_kind,
                    attempts=r.attempts,
                    log=r.logs,
                )
                for r in s.execute(q).scalars()
            }
            return Run(
                id=row.id,
                pipeline=row.pipeline,
                trigger=TriggerEvent(ref=row.ref, before=row.before_rev, after=row.after_rev, actor=row.actor),
                status=RunStatus(row.status),
                executions=executions,
                created_at=_utc(row.created_at),
                finished_at=_utc(row.finished_at),
            )

    def load_upstream(self, run_id: int, job: str) -> Set[str]:
        with self._lock, self.SessionLocal() as s:
            row = s.get(JobExecutionRow, (run_id, job))
            return set(row.upstream or ()) if row else set()

    def run_ids(self) -> List[int]:
        with self._lock, self.SessionLocal() as s:
            return list(s.execute(sa.select(RunRow.id).order_by(RunRow.id)).scalars())

    # -----------------------------------------------------------------
    # Environments
    # -----------------------------------------------------------------

    def save_environment(self, name: str, protected: bool, last_output: Optional[str]) -> None:
        with self._lock, self.SessionLocal() as s, s.begin():
            row = s.get(EnvironmentRow, name)
            if row is None:
                row = EnvironmentRow(name=name)
                s.add(row)
            row.protected = protected
            row.last_output = last_output
            row.updated_at = now_utc()

    def load_environment_output(self, name: str) -> Optional[str]:
        with self._lock, self.SessionLocal() as s:
            row = s.get(EnvironmentRow, name)
            return row.last_output if row else None
