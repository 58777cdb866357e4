"""
Project endpoints - create, scaffold and run generated apps.

Scaffolding is asynchronous: POST /projects/{id}/scaffold returns 202 with
the project in "generating" and the client polls GET /projects/{id} for
status and build steps.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from app.db import User
from app.schemas import ProjectCreate, ProjectResponse, ProjectDetailResponse
from app.api.auth import get_current_user
from app.services.credit_service import CreditLedger, get_credit_ledger
from app.services.project_lifecycle import (
    NoPortAvailableError, ProjectLifecycleManager, ProjectNotFoundError, ProjectStateError,
    get_lifecycle_manager,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/projects", tags=["projects"])


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")


def _conflict(e: ProjectStateError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Cannot {e.action} project while it is {e.status}",
    )


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    current_user: User = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    if not await ledger.can_start_new_work(current_user.id):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Balance too low to start new work. Please top up to continue.",
        )
    return await lifecycle.create_project(
        current_user.id, body.name, body.project_type, description=body.description,
    )


@router.get("", response_model=List[ProjectResponse])
async def list_projects(
    current_user: User = Depends(get_current_user),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    return await lifecycle.list_projects(current_user.id)


@router.get("/{project_id}", response_model=ProjectDetailResponse)
async def get_project(
    project_id: str,
    current_user: User = Depends(get_current_user),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        return await lifecycle.get_project(project_id, current_user.id)
    except ProjectNotFoundError:
        raise _not_found()


@router.post("/{project_id}/scaffold", response_model=ProjectDetailResponse, status_code=status.HTTP_202_ACCEPTED)
async def scaffold_project(
    project_id: str,
    current_user: User = Depends(get_current_user),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        return await lifecycle.scaffold(project_id, current_user.id)
    except ProjectNotFoundError:
        raise _not_found()
    except ProjectStateError as e:
        raise _conflict(e)
    except NoPortAvailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No preview port available, try again later",
        )


@router.post("/{project_id}/start", response_model=ProjectDetailResponse)
async def start_project(
    project_id: str,
    current_user: User = Depends(get_current_user),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        return await lifecycle.start(project_id, current_user.id)
    except ProjectNotFoundError:
        raise _not_found()
    except ProjectStateError as e:
        raise _conflict(e)
    except NoPortAvailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No preview port available, try again later",
        )
    except OSError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to start dev server")


@router.post("/{project_id}/stop", response_model=ProjectDetailResponse)
async def stop_project(
    project_id: str,
    current_user: User = Depends(get_current_user),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        return await lifecycle.stop(project_id, current_user.id)
    except ProjectNotFoundError:
        raise _not_found()
    except ProjectStateError as e:
        raise _conflict(e)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    current_user: User = Depends(get_current_user),
    lifecycle: ProjectLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        await lifecycle.delete(project_id, current_user.id)
    except ProjectNotFoundError:
        raise _not_found()
    logger.info(f"Deleted project {project_id} for user {current_user.id}")
