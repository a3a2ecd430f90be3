from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_user, get_social_graph
from app.core.errors import SocialGraphError
from app.schemas.profile import UserRead
from app.schemas.social import (
    FriendRequestCreateRequest,
    FriendRequestCreated,
    FriendRequestRead,
    SocialOverviewRead,
)
from app.services.social_graph import SocialGraph

router = APIRouter()


@router.get("/overview", response_model=SocialOverviewRead)
async def get_social_overview(
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> SocialOverviewRead:
    try:
        return await graph.social_overview(current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/friends", response_model=list[UserRead])
async def list_friends(
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[UserRead]:
    try:
        return await graph.list_friends(current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.delete("/friends/{friend_user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_friend(
    friend_user_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> None:
    try:
        await graph.remove_friend(current_user.id, friend_user_id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/friends/request", response_model=FriendRequestCreated, status_code=status.HTTP_201_CREATED)
async def send_friend_request(
    payload: FriendRequestCreateRequest,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> FriendRequestCreated:
    try:
        request_id = await graph.send_friend_request(current_user.id, payload.username)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return FriendRequestCreated(id=request_id)


@router.get("/friends/requests/incoming", response_model=list[FriendRequestRead])
async def list_incoming_requests(
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[FriendRequestRead]:
    try:
        return await graph.list_pending_incoming(current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/friends/requests/outgoing", response_model=list[FriendRequestRead])
async def list_outgoing_requests(
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[FriendRequestRead]:
    try:
        return await graph.list_pending_outgoing(current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/friends/requests/{request_id}/accept", response_model=FriendRequestRead)
async def accept_friend_request(
    request_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> FriendRequestRead:
    try:
        return await graph.respond_to_friend_request(request_id, current_user.id, accept=True)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/friends/requests/{request_id}/decline", response_model=FriendRequestRead)
async def decline_friend_request(
    request_id: str,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> FriendRequestRead:
    try:
        return await graph.respond_to_friend_request(request_id, current_user.id, accept=False)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
