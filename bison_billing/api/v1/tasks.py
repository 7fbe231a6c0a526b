"""/v1/tasks - Scheduler execution history and on-demand billing"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from bison_billing.api.dependencies import get_engine
from bison_billing.api.v1.schemas import RunBillingResponse, TaskExecutionListResponse, TaskExecutionSchema
from bison_billing.domain.models import TaskExecution
from bison_billing.engine.container import Engine

router = APIRouter()


def _execution_schema(execution: TaskExecution) -> TaskExecutionSchema:
    return TaskExecutionSchema(
        task_name=execution.task_name,
        start_time=execution.start_time,
        end_time=execution.end_time,
        status=execution.status,
        error=execution.error,
    )


@router.get("/tasks/executions", response_model=TaskExecutionListResponse)
def list_executions(
    limit: int = Query(50, ge=1, le=1000),
    task_name: Optional[str] = Query(None),
    engine: Engine = Depends(get_engine),
):
    """Scheduler runs, most recent first"""
    executions = engine.scheduler.get_executions(limit=limit, task_name=task_name)
    return TaskExecutionListResponse(executions=[_execution_schema(e) for e in executions])


@router.post("/tasks/billing/run", response_model=RunBillingResponse)
async def run_billing(engine: Engine = Depends(get_engine)):
    """
    Run a billing cycle now.

    Safe to call while the scheduled cycle runs: every charge is
    version-checked, so a team is never billed twice for the same window.
    """
    execution, report = await engine.scheduler.run_billing_now()

    counts = {}
    if report is not None:
        for outcome in report.outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1

    return RunBillingResponse(
        execution=_execution_schema(execution),
        outcomes=counts,
        suspended=[o.entity_id for o in report.suspended] if report is not None else [],
        total_charged=report.total_charged if report is not None else 0,
    )
