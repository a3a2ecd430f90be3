from fastapi import Depends, Header, HTTPException, Request, status

from app.core.errors import NotFound, SocialGraphError
from app.schemas.profile import UserRead
from app.services.social_graph import SocialGraph


def get_social_graph(request: Request) -> SocialGraph:
    graph = getattr(request.app.state, "social_graph", None)
    if graph is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store is not ready",
        )
    return graph


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    graph: SocialGraph = Depends(get_social_graph),
) -> UserRead:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    try:
        return await graph.identity.get_user(user_id)
    except NotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        ) from exc
    except SocialGraphError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

