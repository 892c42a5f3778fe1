"""HTTP API exposing orchestrator capabilities."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from agentmesh.agents.factory import create_agent
from agentmesh.core.errors import NotFoundError, OrchestrationError
from agentmesh.core.models import AgentConfig, AgentDescriptor, Task, TaskPriority, TaskStatus
from agentmesh.orchestration.orchestrator import Orchestrator
from agentmesh.runtime import get_llm_provider, get_orchestrator

agents_router = APIRouter(prefix="/agents", tags=["agents"])
tasks_router = APIRouter(prefix="/tasks", tags=["tasks"])
metrics_router = APIRouter(tags=["metrics"])


class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    required_capabilities: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    input: Any = None
    estimated_duration: Optional[float] = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskAssignRequest(BaseModel):
    agent_id: Optional[str] = None


class TaskResponse(BaseModel):
    id: str
    title: str
    description: str
    priority: TaskPriority
    status: TaskStatus
    progress: int
    assigned_to: Optional[str]
    dependencies: List[str] = Field(default_factory=list)
    required_capabilities: List[str] = Field(default_factory=list)
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    estimated_duration: Optional[float]
    actual_duration: Optional[float]
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(**task.to_record())


class AgentCreateRequest(BaseModel):
    name: str = Field(..., description="Logical agent name")
    role: str = Field("echo", description="Catalog role to instantiate")
    capabilities: List[str] = Field(default_factory=list)
    max_concurrent_tasks: int = Field(1, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    role: str
    status: str
    capabilities: List[str]
    current_tasks: List[str]
    tasks_completed: int
    tasks_failed: int
    last_error: Optional[str]

    @classmethod
    def from_descriptor(cls, descriptor: AgentDescriptor) -> "AgentResponse":
        return cls(
            agent_id=descriptor.agent_id,
            name=descriptor.config.name,
            role=descriptor.config.role,
            status=descriptor.status.value,
            capabilities=sorted(descriptor.config.capabilities),
            current_tasks=descriptor.current_task_ids,
            tasks_completed=descriptor.metrics.tasks_completed,
            tasks_failed=descriptor.metrics.tasks_failed,
            last_error=descriptor.last_error,
        )


def _http_error(exc: OrchestrationError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@tasks_router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    request: TaskCreateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    try:
        task = await orchestrator.create_task(
            request.title,
            request.description,
            priority=request.priority,
            required_capabilities=request.required_capabilities,
            dependencies=request.dependencies,
            input=request.input,
            estimated_duration=request.estimated_duration,
            metadata=request.metadata,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return TaskResponse.from_task(task)


@tasks_router.get("", response_model=List[TaskResponse])
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[TaskResponse]:
    return [TaskResponse.from_task(task) for task in orchestrator.get_tasks(status_filter)]


@tasks_router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> TaskResponse:
    try:
        return TaskResponse.from_task(orchestrator.get_task(task_id))
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@tasks_router.post("/{task_id}/assign", response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED)
async def assign_task(
    task_id: str,
    request: Optional[TaskAssignRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    agent_id = request.agent_id if request is not None else None
    try:
        task = await orchestrator.assign_task(task_id, agent_id)
    except OrchestrationError as exc:
        raise _http_error(exc) from exc
    return TaskResponse.from_task(task)


@tasks_router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> TaskResponse:
    try:
        await orchestrator.cancel_task(task_id)
        return TaskResponse.from_task(orchestrator.get_task(task_id))
    except OrchestrationError as exc:
        raise _http_error(exc) from exc


@agents_router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def register_agent(
    request: AgentCreateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentResponse:
    config = AgentConfig(
        name=request.name,
        role=request.role,
        capabilities=frozenset(request.capabilities),
        max_concurrent_tasks=request.max_concurrent_tasks,
        metadata=request.metadata,
    )
    try:
        agent = create_agent(config, provider=get_llm_provider())
    except (KeyError, ValueError) as exc:
        detail = exc.args[0] if exc.args else str(exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail) from exc
    try:
        descriptor = await orchestrator.register_agent(agent)
    except OrchestrationError as exc:
        raise _http_error(exc) from exc
    return AgentResponse.from_descriptor(descriptor)


@agents_router.get("", response_model=List[AgentResponse])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[AgentResponse]:
    return [AgentResponse.from_descriptor(desc) for desc in orchestrator.list_agents()]


@agents_router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    try:
        await orchestrator.unregister_agent(agent_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@metrics_router.get("/metrics")
async def get_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.get_metrics()
