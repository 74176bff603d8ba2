from fastapi import APIRouter, Depends, Query, Response, status
from typing import List

from control_plane.api.schemas.rollouts import (
    ProjectCreate,
    ProjectDetailResponse,
    ProjectResponse,
    RolloutCreate,
    RolloutMutationResponse,
    RolloutResponse,
    RolloutUpdate,
)
from control_plane.dependencies import get_record_store
from control_plane.services.record_store import RecordStore

router = APIRouter(tags=["records"])


def _mutation_response(rollout, report) -> dict:
    return {
        "rollout": rollout.to_dict(),
        "apply": report.to_dict() if report is not None else None,
    }


# === PROJETS ===
@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
def create_project(
    project: ProjectCreate,
    record_store: RecordStore = Depends(get_record_store)
):
    """Crée un projet et son namespace"""
    return record_store.create_project(project.model_dump(exclude_none=True)).to_dict()


@router.get("/projects", response_model=List[ProjectResponse])
def list_projects(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    record_store: RecordStore = Depends(get_record_store)
):
    return [project.to_dict() for project in record_store.list_projects(skip=skip, limit=limit)]


@router.get("/projects/{project_id}", response_model=ProjectDetailResponse)
def get_project(
    project_id: int,
    record_store: RecordStore = Depends(get_record_store)
):
    project = record_store.get_project(project_id)
    return dict(project.to_dict(), rollouts=[rollout.to_dict() for rollout in project.rollouts])


@router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(
    project_id: int,
    record_store: RecordStore = Depends(get_record_store)
):
    """Supprime le projet, ses rollouts et leurs objets du cluster"""
    record_store.delete_project(project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# === ROLLOUTS ===
@router.post(
    "/projects/{project_id}/rollouts",
    response_model=RolloutMutationResponse,
    status_code=status.HTTP_201_CREATED
)
def create_rollout(
    project_id: int,
    rollout: RolloutCreate,
    record_store: RecordStore = Depends(get_record_store)
):
    """Enregistre un rollout; ses objets sont créés sur le cluster avant le commit"""
    created, report = record_store.create_rollout(project_id, rollout.model_dump(exclude_none=True))
    return _mutation_response(created, report)


@router.get("/projects/{project_id}/rollouts", response_model=List[RolloutResponse])
def list_rollouts(
    project_id: int,
    record_store: RecordStore = Depends(get_record_store)
):
    return [rollout.to_dict() for rollout in record_store.list_rollouts(project_id)]


@router.get("/rollouts/{rollout_id}", response_model=RolloutResponse)
def get_rollout(
    rollout_id: int,
    record_store: RecordStore = Depends(get_record_store)
):
    return record_store.get_rollout(rollout_id).to_dict()


@router.patch("/rollouts/{rollout_id}", response_model=RolloutMutationResponse)
def update_rollout(
    rollout_id: int,
    changes: RolloutUpdate,
    record_store: RecordStore = Depends(get_record_store)
):
    """Mise à jour partielle; une application partielle est rapportée dans 'apply.error'"""
    updated, report = record_store.update_rollout(rollout_id, changes.model_dump(exclude_unset=True))
    return _mutation_response(updated, report)


@router.delete("/rollouts/{rollout_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rollout(
    rollout_id: int,
    record_store: RecordStore = Depends(get_record_store)
):
    record_store.delete_rollout(rollout_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
