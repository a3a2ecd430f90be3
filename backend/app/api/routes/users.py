from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_user, get_social_graph
from app.core.errors import SocialGraphError
from app.schemas.profile import ProfileUpdateRequest, UserRead, UserRegisterRequest
from app.services.social_graph import SocialGraph

router = APIRouter()


@router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: UserRegisterRequest,
    graph: SocialGraph = Depends(get_social_graph),
) -> UserRead:
    try:
        return await graph.identity.register_user(
            payload.username,
            payload.display_name,
            email=payload.email,
            phone_number=payload.phone_number,
        )
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/me", response_model=UserRead)
async def get_me(current_user: UserRead = Depends(get_current_user)) -> UserRead:
    return current_user


@router.patch("/me", response_model=UserRead)
async def update_me(
    payload: ProfileUpdateRequest,
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> UserRead:
    updates = payload.model_dump(exclude_unset=True)
    try:
        return await graph.identity.update_profile(current_user.id, current_user.id, **updates)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/search", response_model=list[UserRead])
async def search_users(
    q: str = Query(default="", max_length=40),
    current_user: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> list[UserRead]:
    try:
        return await graph.identity.search_users(q, exclude_user_id=current_user.id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/lookup", response_model=UserRead)
async def lookup_user(
    username: str | None = None,
    phone_number: str | None = None,
    email: str | None = None,
    _: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> UserRead:
    try:
        if username:
            return await graph.identity.lookup_by_username(username)
        if phone_number:
            return await graph.identity.lookup_by_phone(phone_number)
        if email:
            return await graph.identity.lookup_by_email(email)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail="Provide username, phone_number or email",
    )


@router.get("/{user_id}", response_model=UserRead)
async def get_user(
    user_id: str,
    _: UserRead = Depends(get_current_user),
    graph: SocialGraph = Depends(get_social_graph),
) -> UserRead:
    try:
        return await graph.identity.get_user(user_id)
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
