"""FastAPI REST endpoints for the workflow engine."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ..core.autofix import AutoFixer
from ..core.exceptions import (
    GraphValidationError,
    InvalidRunStateError,
    NotFoundError,
    RunNotFoundError,
    StateManagementError,
    WorkflowEngineError,
    create_error_response,
)
from ..core.graph_manager import GraphManager
from ..core.logging import get_logger
from ..core.orchestrator import Orchestrator
from ..core.registry import StepKindRegistry
from ..core.validator import GraphValidator
from ..models.core import (
    AppliedFix,
    Graph,
    GraphSummary,
    Run,
    RunMode,
    RunStatus,
    StepRun,
    ValidationIssue,
    ValidationResult,
    Variable,
)

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application lifespan)
_graph_manager: Optional[GraphManager] = None
_orchestrator: Optional[Orchestrator] = None
_validator: Optional[GraphValidator] = None
_autofixer: Optional[AutoFixer] = None
_registry: Optional[StepKindRegistry] = None


def init_dependencies(
    graph_manager: GraphManager,
    orchestrator: Orchestrator,
    validator: GraphValidator,
    autofixer: AutoFixer,
    registry: StepKindRegistry,
):
    """Initialize the global dependencies."""
    global _graph_manager, _orchestrator, _validator, _autofixer, _registry
    _graph_manager = graph_manager
    _orchestrator = orchestrator
    _validator = validator
    _autofixer = autofixer
    _registry = registry


def _require(component: Any, name: str) -> Any:
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_graph_manager() -> GraphManager:
    """Dependency to get graph manager."""
    return _require(_graph_manager, "Graph manager")


def get_orchestrator() -> Orchestrator:
    """Dependency to get orchestrator."""
    return _require(_orchestrator, "Orchestrator")


def get_validator() -> GraphValidator:
    return _require(_validator, "Validator")


def get_autofixer() -> AutoFixer:
    return _require(_autofixer, "Auto-fixer")


def get_registry() -> StepKindRegistry:
    return _require(_registry, "Step kind registry")


def _status_for(error: WorkflowEngineError) -> int:
    if isinstance(error, GraphValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, (NotFoundError, RunNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (InvalidRunStateError, StateManagementError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(error: Exception, action: str) -> HTTPException:
    """Translate an exception into an HTTPException with a standard body."""
    if isinstance(error, WorkflowEngineError):
        code = _status_for(error)
        if code >= 500:
            logger.error(f"Workflow engine error while {action}: {error.message}")
        else:
            logger.warning(f"Request failed while {action}: {error.message}")
        return HTTPException(status_code=code, detail=create_error_response(error))

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models
class ValidateGraphRequest(BaseModel):
    """Request model for validating a graph."""
    graph: Graph = Field(..., description="Graph definition to validate")
    fail_fast: bool = Field(default=False, description="Stop after the first failing pass")


class AutoFixRequest(BaseModel):
    """Request model for auto-fixing a graph."""
    graph: Graph = Field(..., description="Graph definition to repair")
    issues: Optional[List[ValidationIssue]] = Field(None, description="Findings to repair; validated when omitted")


class AutoFixResponse(BaseModel):
    """Applied fixes plus the re-validation of the repaired graph."""
    fixes: List[AppliedFix] = Field(default_factory=list)
    graph: Graph
    unfixed: List[ValidationIssue] = Field(default_factory=list)
    validation: ValidationResult


class CreateGraphRequest(BaseModel):
    """Request model for storing a graph."""
    graph: Graph = Field(..., description="Graph definition to store")


class CreateGraphResponse(BaseModel):
    """Response model for graph creation."""
    graph_id: str = Field(..., description="Identifier of the stored graph")
    message: str = Field(..., description="Success message")
    validation_warnings: List[ValidationIssue] = Field(default_factory=list, description="Validation warnings")


class RunRequest(BaseModel):
    """Request model for starting a run of an inline or stored graph."""
    graph: Optional[Graph] = Field(None, description="Inline graph definition")
    graph_id: Optional[str] = Field(None, description="ID of a stored graph")
    input: Any = Field(None, description="Run input")
    mode: RunMode = Field(default=RunMode.TEST, description="Execution mode")
    variables: List[Variable] = Field(default_factory=list, description="Run scoped variables")
    wait: bool = Field(default=False, description="Wait for the run to stop before responding")
    timeout: Optional[float] = Field(None, gt=0, description="Maximum seconds to wait")


class RunResponse(BaseModel):
    """A run together with its step-run ledger."""
    run: Run
    step_runs: List[StepRun] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    """Request model for resuming a suspended run."""
    step_run_id: str = Field(..., description="StepRun awaiting input")
    payload: Any = Field(None, description="Approver response, becomes the step output")
    resume_token: Optional[str] = Field(None, description="Token issued when the run suspended")


class SignalRequest(BaseModel):
    """Request model for releasing signal waits."""
    name: str = Field(..., description="Signal name")
    payload: Any = Field(None, description="Signal payload")


def _run_response(orchestrator: Orchestrator, run_id: str) -> RunResponse:
    return RunResponse(
        run=orchestrator.get_run(run_id),
        step_runs=orchestrator.list_step_runs(run_id),
    )


# Endpoints

@router.post(
    "/graphs/validate",
    response_model=ValidationResult,
    summary="Validate a workflow graph",
)
async def validate_graph(
    request: ValidateGraphRequest,
    validator: GraphValidator = Depends(get_validator)
) -> ValidationResult:
    """Validate a graph and return itemized errors and warnings."""
    try:
        return validator.validate(request.graph, fail_fast=request.fail_fast)
    except Exception as e:
        raise _http_error(e, "validating graph")


@router.post(
    "/graphs/autofix",
    response_model=AutoFixResponse,
    summary="Apply deterministic repairs to a workflow graph",
)
async def autofix_graph(
    request: AutoFixRequest,
    autofixer: AutoFixer = Depends(get_autofixer),
    validator: GraphValidator = Depends(get_validator)
) -> AutoFixResponse:
    """Repair a graph and re-validate the result."""
    try:
        result = autofixer.fix(request.graph, request.issues)
        logger.info(f"Auto-fix applied {len(result.fixes)} fix(es) to graph '{request.graph.name}'")
        return AutoFixResponse(
            fixes=result.fixes,
            graph=result.graph,
            unfixed=result.unfixed,
            validation=validator.validate(result.graph),
        )
    except Exception as e:
        raise _http_error(e, "auto-fixing graph")


@router.post(
    "/graphs",
    response_model=CreateGraphResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a workflow graph",
)
async def create_graph(
    request: CreateGraphRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> CreateGraphResponse:
    """
    Validate and store a graph.

    Raises:
        HTTPException: 400 if validation fails, 500 on storage errors
    """
    try:
        validation_result = graph_manager.validate_graph(request.graph)
        graph_id = graph_manager.create_graph(request.graph)
        return CreateGraphResponse(
            graph_id=graph_id,
            message=f"Graph '{request.graph.name}' created successfully",
            validation_warnings=validation_result.warnings
        )
    except Exception as e:
        raise _http_error(e, "creating graph")


@router.get("/graphs", response_model=List[GraphSummary], summary="List stored graphs")
async def list_graphs(graph_manager: GraphManager = Depends(get_graph_manager)) -> List[GraphSummary]:
    try:
        return graph_manager.list_graphs()
    except Exception as e:
        raise _http_error(e, "listing graphs")


@router.get("/graphs/{graph_id}", response_model=Graph, summary="Fetch a stored graph")
async def get_graph(graph_id: str, graph_manager: GraphManager = Depends(get_graph_manager)) -> Graph:
    try:
        return graph_manager.get_graph(graph_id)
    except Exception as e:
        raise _http_error(e, "retrieving graph")


@router.delete("/graphs/{graph_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a stored graph")
async def delete_graph(graph_id: str, graph_manager: GraphManager = Depends(get_graph_manager)):
    try:
        deleted = graph_manager.delete_graph(graph_id)
    except Exception as e:
        raise _http_error(e, "deleting graph")
    if not deleted:
        raise _http_error(NotFoundError(f"Graph with ID '{graph_id}' not found"), "deleting graph")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/runs",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run an inline or stored graph",
)
async def create_run(
    request: RunRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> RunResponse:
    """
    Start a run. With ``wait`` the response is sent once the run completes,
    fails, is cancelled or suspends for input (or the timeout elapses).
    """
    if (request.graph is None) == (request.graph_id is None):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide exactly one of 'graph' or 'graph_id'"
        )
    try:
        graph = request.graph or graph_manager.get_graph(request.graph_id)
        run = await orchestrator.execute(
            graph,
            input=request.input,
            mode=request.mode,
            variables=request.variables,
            graph_id=request.graph_id,
        )
        if request.wait:
            try:
                await orchestrator.wait_for_run(run.id, timeout=request.timeout)
            except asyncio.TimeoutError:
                logger.info(f"Run {run.id} still executing after {request.timeout}s")
        return _run_response(orchestrator, run.id)
    except Exception as e:
        raise _http_error(e, "starting run")


@router.get("/runs", response_model=List[Run], summary="List runs, newest first")
async def list_runs(
    graph_id: Optional[str] = Query(None, description="Only runs of this graph"),
    run_status: Optional[RunStatus] = Query(None, alias="status", description="Only runs in this status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of runs"),
    orchestrator: Orchestrator = Depends(get_orchestrator)
) -> List[Run]:
    try:
        return orchestrator.list_runs(graph_id=graph_id, status=run_status, limit=limit)
    except Exception as e:
        raise _http_error(e, "listing runs")


@router.get("/runs/{run_id}", response_model=RunResponse, summary="Fetch a run with its step runs")
async def get_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> RunResponse:
    try:
        return _run_response(orchestrator, run_id)
    except Exception as e:
        raise _http_error(e, "retrieving run")


@router.post("/runs/{run_id}/resume", response_model=RunResponse, summary="Resume a suspended run")
async def resume_run(
    run_id: str,
    request: ResumeRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
) -> RunResponse:
    try:
        await orchestrator.resume(run_id, request.step_run_id, request.payload, request.resume_token)
        return _run_response(orchestrator, run_id)
    except Exception as e:
        raise _http_error(e, "resuming run")


@router.post("/runs/{run_id}/cancel", response_model=RunResponse, summary="Cancel a run")
async def cancel_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> RunResponse:
    try:
        await orchestrator.cancel(run_id)
        return _run_response(orchestrator, run_id)
    except Exception as e:
        raise _http_error(e, "cancelling run")


@router.post("/runs/{run_id}/signal", response_model=RunResponse, summary="Send a signal to a run")
async def signal_run(
    run_id: str,
    request: SignalRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
) -> RunResponse:
    try:
        orchestrator.signal(run_id, request.name, request.payload)
        return _run_response(orchestrator, run_id)
    except Exception as e:
        raise _http_error(e, "signalling run")


@router.get("/kinds", summary="Describe the registered step kinds")
async def list_kinds(registry: StepKindRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return registry.describe()


@router.get("/health", summary="Health check")
async def health_check() -> Dict[str, Any]:
    return {
        "status": "healthy" if _orchestrator is not None else "starting",
        "service": "stepflow",
        "timestamp": datetime.utcnow().isoformat()
    }
