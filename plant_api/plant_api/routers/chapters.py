"""Chapter endpoints.

Any signed-in user may list chapters (signup and profile forms need the
names); creating, renaming, re-assigning leaders and deleting are
administrator operations.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from plant_api.dependencies import SessionDep, UserDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_api.services.admin_service import AdminService
from plant_api.services.errors import ConflictError, NotFoundError, http_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chapters", tags=["chapters"])


class CreateChapterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    leader_id: str | None = None


class UpdateChapterRequest(BaseModel):
    """Partial chapter update.  An explicit ``leader_id: null`` removes the leader."""

    name: str | None = Field(None, min_length=1, max_length=256)
    leader_id: str | None = None


@router.get("")
async def list_chapters(
    session: SessionDep,
    _role: Role = Depends(require_permission(Permission.READ_CHAPTERS)),
) -> list[dict[str, Any]]:
    """All chapters with leader, member count, revenue and metric count."""
    return await AdminService(session).list_chapters()


@router.post("", status_code=201)
async def create_chapter(
    body: CreateChapterRequest,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_CHAPTERS)),
) -> dict[str, Any]:
    try:
        return await AdminService(session, actor_id=user).create_chapter(body.name, body.leader_id)
    except (NotFoundError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc


@router.patch("/{chapter_id}")
async def update_chapter(
    chapter_id: str,
    body: UpdateChapterRequest,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_CHAPTERS)),
) -> dict[str, Any]:
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return await AdminService(session, actor_id=user).update_chapter(chapter_id, **fields)
    except (NotFoundError, ValueError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc


@router.delete("/{chapter_id}", status_code=204)
async def delete_chapter(
    chapter_id: str,
    session: SessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_CHAPTERS)),
) -> Response:
    """Delete a chapter that has no members left."""
    try:
        await AdminService(session, actor_id=user).delete_chapter(chapter_id)
    except (NotFoundError, ConflictError) as exc:
        raise HTTPException(status_code=http_status(exc), detail=str(exc)) from exc
    return Response(status_code=204)
