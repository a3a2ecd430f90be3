from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_user, get_social_graph
from app.core.errors import SocialGraphError
from app.schemas.groups import (
    GroupCreateRequest,
    GroupDeletionRead,
    GroupDetailRead,
    GroupInvitationCreated,
    GroupInvitationRead,
    GroupInviteRequest,
    GroupRead,
    GroupRenameRequest,
)
from app.schemas.profile import UserRead
from app.services.social_graph import SocialGraph

router = APIRouter()


@router.get("", response_model=list[GroupRead])
async def list_groups(
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[GroupRead]:
    try:
        return await graph.membership.list_groups(current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("", response_model=GroupRead, status_code=status.HTTP_201_CREATED)
async def create_group(
    payload: GroupCreateRequest,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupRead:
    try:
        return await graph.create_group(current_user.id, payload.name)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/invitations", response_model=list[GroupInvitationRead])
async def list_pending_invitations(
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[GroupInvitationRead]:
    try:
        return await graph.membership.list_pending_invitations(current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/invitations/{invitation_id}/accept", response_model=GroupInvitationRead)
async def accept_invitation(
    invitation_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupInvitationRead:
    try:
        return await graph.respond_to_invitation(invitation_id, current_user.id, accept=True)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/invitations/{invitation_id}/decline", response_model=GroupInvitationRead)
async def decline_invitation(
    invitation_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupInvitationRead:
    try:
        return await graph.respond_to_invitation(invitation_id, current_user.id, accept=False)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/{group_id}", response_model=GroupDetailRead)
async def get_group(
    group_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupDetailRead:
    try:
        group = await graph.membership.get_group(group_id)
        if not group.has_member(current_user.id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
        members = await graph.membership.list_group_members(group_id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return GroupDetailRead(**group.model_dump(), members=members)


@router.patch("/{group_id}", response_model=GroupRead)
async def rename_group(
    group_id: str,
    payload: GroupRenameRequest,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupRead:
    try:
        return await graph.membership.rename_group(group_id, current_user.id, payload.name)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.delete("/{group_id}", response_model=GroupDeletionRead)
async def delete_group(
    group_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupDeletionRead:
    try:
        return await graph.delete_group(group_id, current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post(
    "/{group_id}/invitations",
    response_model=GroupInvitationCreated,
    status_code=status.HTTP_201_CREATED,
)
async def invite_to_group(
    group_id: str,
    payload: GroupInviteRequest,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupInvitationCreated:
    try:
        invitation_id = await graph.invite_to_group(current_user.id, payload.invitee_id, group_id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return GroupInvitationCreated(id=invitation_id)


@router.get("/{group_id}/available-invitees", response_model=list[UserRead])
async def list_available_invitees(
    group_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[UserRead]:
    try:
        return await graph.list_available_invitees_for_group(group_id, current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.delete("/{group_id}/members/{user_id}", response_model=GroupRead)
async def remove_member(
    group_id: str,
    user_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> GroupRead:
    try:
        return await graph.remove_member(group_id, user_id, current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/{group_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_group(
    group_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> None:
    try:
        await graph.leave_group(group_id, current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
