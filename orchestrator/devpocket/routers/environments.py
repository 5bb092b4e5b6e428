"""
Environments Router

REST endpoints that drive an environment's cluster resources. Records are
created by the platform API; these routes provision, observe and tear them
down.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..auth import get_current_user
from ..models import User
from ..services.orchestration.context import OrchestratorContext, get_orchestrator_context
from ..services.orchestration.errors import NotDeployed

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response Models

class EnvironmentInfoResponse(BaseModel):
    id: str
    name: str
    status: str
    namespace: Optional[str] = None
    pod_name: Optional[str] = None
    service_name: Optional[str] = None
    external_url: Optional[str] = None
    pod_phase: Optional[str] = None
    cpu_usage: Optional[float] = None
    memory_usage: Optional[int] = None
    message: Optional[str] = None


class ActionResponse(BaseModel):
    id: str
    action: str
    message: str


class ExecRequest(BaseModel):
    command: str = Field(min_length=1, max_length=10000)


class ExecResponse(BaseModel):
    success: bool
    output: str
    error: str


async def get_owned_environment(
    environment_id: str,
    current_user: User = Depends(get_current_user),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    environment = await context.store.get_owned_environment(environment_id, current_user.id)
    if environment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Environment not found"
        )
    return environment


# Endpoints

@router.post("/{environment_id}/provision", response_model=EnvironmentInfoResponse, status_code=status.HTTP_202_ACCEPTED)
async def provision_environment(
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    """Create the namespace, volume, startup config, pod and service."""
    info = await context.provisioner.create_environment(environment.id)
    return info.to_dict()


@router.get("/{environment_id}/status", response_model=EnvironmentInfoResponse)
async def get_environment_status(
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    info = await context.lifecycle.get_info(environment.id)
    return info.to_dict()


@router.post("/{environment_id}/start", response_model=ActionResponse)
async def start_environment(
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    await context.lifecycle.start(environment.id)
    return ActionResponse(id=environment.id, action="start", message="Environment start initiated")


@router.post("/{environment_id}/stop", response_model=ActionResponse)
async def stop_environment(
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    await context.lifecycle.stop(environment.id)
    return ActionResponse(id=environment.id, action="stop", message="Environment stop initiated")


@router.post("/{environment_id}/restart", response_model=ActionResponse)
async def restart_environment(
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    await context.lifecycle.restart(environment.id)
    return ActionResponse(id=environment.id, action="restart", message="Environment restart initiated")


@router.delete("/{environment_id}", response_model=ActionResponse)
async def delete_environment(
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    """Remove cluster resources; the record stays, marked TERMINATED."""
    await context.lifecycle.delete(environment.id)
    return ActionResponse(id=environment.id, action="delete", message="Environment deleted")


@router.get("/{environment_id}/logs")
async def get_environment_logs(
    lines: Optional[int] = Query(None, ge=1, le=10000),
    follow: bool = Query(False),
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    """Recent container log lines, or a chunked stream with ``follow=true``."""
    if not follow:
        logs = await context.lifecycle.get_logs(environment.id, tail_lines=lines)
        return PlainTextResponse(logs)

    # Streaming responses cannot change status once started, so check first
    if not (environment.kubernetes_namespace and environment.kubernetes_pod_name):
        raise NotDeployed(environment.id)

    return StreamingResponse(
        context.lifecycle.stream_logs(environment.id, tail_lines=lines),
        media_type="text/plain"
    )


@router.post("/{environment_id}/exec", response_model=ExecResponse)
async def exec_in_environment(
    request: ExecRequest,
    environment=Depends(get_owned_environment),
    context: OrchestratorContext = Depends(get_orchestrator_context),
):
    """Run a one-shot command in the workspace container."""
    result = await context.executor.execute_command(environment.id, request.command)
    return result.to_dict()
