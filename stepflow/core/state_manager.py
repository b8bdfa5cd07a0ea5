"""Persistence of runs and the step-run ledger."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import Run, RunStatus, StepRun, StepRunStatus
from ..storage.models import RunModel, StepRunModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import NotFoundError, StateManagementError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.AWAITING_INPUT},
    RunStatus.AWAITING_INPUT: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}

STEP_RUN_TRANSITIONS = {
    StepRunStatus.PENDING: {StepRunStatus.RUNNING, StepRunStatus.FAILED},
    StepRunStatus.RUNNING: {StepRunStatus.COMPLETED, StepRunStatus.FAILED, StepRunStatus.AWAITING_INPUT},
    StepRunStatus.AWAITING_INPUT: {StepRunStatus.COMPLETED, StepRunStatus.FAILED},
    StepRunStatus.COMPLETED: set(),
    StepRunStatus.FAILED: set(),
}

STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.1, max_delay=1.0, retryable_exceptions=[StorageError])

_RUN_COLUMNS = [
    "id", "graph_id", "graph_snapshot", "status", "mode", "trigger", "input", "output", "variables",
    "error", "pending_step_run_id", "resume_token", "created_at", "started_at", "completed_at",
]
_STEP_RUN_COLUMNS = [
    "id", "run_id", "step_id", "status", "attempt", "sequence_number", "input", "output",
    "selected_ports", "error", "duration_ms", "created_at", "started_at", "completed_at",
]


def _column_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_column_value(item) for item in value]
    return value


def _to_columns(record: BaseModel, columns: List[str]) -> Dict[str, Any]:
    data = record.model_dump(mode="json")
    # Timestamps stay datetimes for DateTime columns
    for key in ("created_at", "started_at", "completed_at"):
        data[key] = getattr(record, key)
    return {key: data[key] for key in columns}


def _from_columns(model: Any, columns: List[str]) -> Dict[str, Any]:
    return {key: getattr(model, key) for key in columns}


class StateManager:
    """Creates and transitions Run and StepRun records.

    The ledger is append/transition-only: status changes must follow
    :data:`RUN_TRANSITIONS` / :data:`STEP_RUN_TRANSITIONS`, and terminal
    records are never rewritten.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        logger.info("StateManager initialized")

    def _session(self) -> Session:
        return self._session_factory()

    @with_retry(STORAGE_RETRY)
    def create_run(self, run: Run) -> Run:
        """
        Persist a new run.

        Args:
            run: The run to store, normally in ``pending`` status

        Returns:
            Run: The stored run

        Raises:
            StorageError: If the database write fails
        """
        with self._session() as db:
            try:
                db.add(RunModel(**_to_columns(run, _RUN_COLUMNS)))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to create run: {str(e)}", operation="create_run", table="runs")
        logger.info(f"Created run {run.id} for graph {run.graph_id}")
        return run

    @with_retry(STORAGE_RETRY)
    def update_run(self, run_id: str, **changes) -> Run:
        """
        Apply changes to a run, enforcing the status transition table.

        Args:
            run_id: ID of the run
            **changes: Field values to set

        Returns:
            Run: The updated run

        Raises:
            NotFoundError: If the run does not exist
            StateManagementError: If the status transition is not allowed
            StorageError: If the database write fails
        """
        with self._session() as db:
            try:
                model = db.get(RunModel, run_id)
                if model is None:
                    raise NotFoundError(f"Run '{run_id}' not found", operation="update_run", table="runs")

                if "status" in changes:
                    current = RunStatus(model.status)
                    target = RunStatus(changes["status"])
                    if target not in RUN_TRANSITIONS[current]:
                        raise StateManagementError(
                            f"Illegal run transition {current.value} -> {target.value}",
                            run_id=run_id,
                            operation="update_run",
                        )

                for key, value in changes.items():
                    setattr(model, key, _column_value(value))
                db.commit()
                run = Run(**_from_columns(model, _RUN_COLUMNS))
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to update run: {str(e)}", operation="update_run", table="runs")

        if "status" in changes:
            logger.info(f"Run {run_id} -> {run.status.value}")
        return run

    def get_run(self, run_id: str) -> Run:
        """
        Fetch a run.

        Raises:
            NotFoundError: If the run does not exist
            StorageError: If the database read fails
        """
        with self._session() as db:
            try:
                model = db.get(RunModel, run_id)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to retrieve run: {str(e)}", operation="get_run", table="runs")
            if model is None:
                raise NotFoundError(f"Run '{run_id}' not found", operation="get_run", table="runs")
            return Run(**_from_columns(model, _RUN_COLUMNS))

    def list_runs(self, graph_id: Optional[str] = None, status: Optional[RunStatus] = None,
                  limit: Optional[int] = 100) -> List[Run]:
        with self._session() as db:
            try:
                query = db.query(RunModel)
                if graph_id:
                    query = query.filter(RunModel.graph_id == graph_id)
                if status:
                    query = query.filter(RunModel.status == RunStatus(status).value)
                models = query.order_by(RunModel.created_at.desc()).limit(limit).all()
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to list runs: {str(e)}", operation="list_runs", table="runs")
            return [Run(**_from_columns(m, _RUN_COLUMNS)) for m in models]

    @with_retry(STORAGE_RETRY)
    def create_step_run(self, step_run: StepRun) -> StepRun:
        """
        Append a step attempt to the ledger.

        Raises:
            NotFoundError: If the owning run does not exist
            StorageError: If the database write fails
        """
        with self._session() as db:
            try:
                if db.get(RunModel, step_run.run_id) is None:
                    raise NotFoundError(
                        f"Run '{step_run.run_id}' not found", operation="create_step_run", table="runs"
                    )
                db.add(StepRunModel(**_to_columns(step_run, _STEP_RUN_COLUMNS)))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(
                    f"Failed to create step run: {str(e)}", operation="create_step_run", table="step_runs"
                )
        logger.debug(f"Created step run {step_run.id} ({step_run.step_id} attempt {step_run.attempt})")
        return step_run

    @with_retry(STORAGE_RETRY)
    def update_step_run(self, step_run_id: str, **changes) -> StepRun:
        """
        Apply changes to a step run, enforcing the status transition table.

        Raises:
            NotFoundError: If the step run does not exist
            StateManagementError: If the record is terminal or the transition is not allowed
            StorageError: If the database write fails
        """
        with self._session() as db:
            try:
                model = db.get(StepRunModel, step_run_id)
                if model is None:
                    raise NotFoundError(
                        f"Step run '{step_run_id}' not found", operation="update_step_run", table="step_runs"
                    )

                current = StepRunStatus(model.status)
                if not STEP_RUN_TRANSITIONS[current]:
                    raise StateManagementError(
                        f"Step run {step_run_id} is terminal ({current.value})",
                        run_id=model.run_id,
                        operation="update_step_run",
                    )
                if "status" in changes:
                    target = StepRunStatus(changes["status"])
                    if target not in STEP_RUN_TRANSITIONS[current]:
                        raise StateManagementError(
                            f"Illegal step run transition {current.value} -> {target.value}",
                            run_id=model.run_id,
                            operation="update_step_run",
                        )

                for key, value in changes.items():
                    setattr(model, key, _column_value(value))
                db.commit()
                step_run = StepRun(**_from_columns(model, _STEP_RUN_COLUMNS))
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(
                    f"Failed to update step run: {str(e)}", operation="update_step_run", table="step_runs"
                )
        return step_run

    def get_step_run(self, step_run_id: str) -> StepRun:
        """
        Fetch a step run.

        Raises:
            NotFoundError: If the step run does not exist
        """
        with self._session() as db:
            try:
                model = db.get(StepRunModel, step_run_id)
            except SQLAlchemyError as e:
                raise StorageError(
                    f"Failed to retrieve step run: {str(e)}", operation="get_step_run", table="step_runs"
                )
            if model is None:
                raise NotFoundError(
                    f"Step run '{step_run_id}' not found", operation="get_step_run", table="step_runs"
                )
            return StepRun(**_from_columns(model, _STEP_RUN_COLUMNS))

    def list_step_runs(self, run_id: str) -> List[StepRun]:
        """Step runs of a run in dispatch order."""
        with self._session() as db:
            try:
                models = (
                    db.query(StepRunModel)
                    .filter(StepRunModel.run_id == run_id)
                    .order_by(StepRunModel.sequence_number, StepRunModel.attempt)
                    .all()
                )
            except SQLAlchemyError as e:
                raise StorageError(
                    f"Failed to list step runs: {str(e)}", operation="list_step_runs", table="step_runs"
                )
            return [StepRun(**_from_columns(m, _STEP_RUN_COLUMNS)) for m in models]
