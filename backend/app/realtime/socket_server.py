import logging
from urllib.parse import parse_qs

import socketio

from app.core.errors import SocialGraphError
from app.realtime.change_feed import (
    FRIENDS,
    GROUPS_VIEW,
    PENDING_FRIEND_REQUESTS,
    PENDING_INVITATIONS,
    ChangeFeedSubscriber,
    ProjectionUpdate,
)
from app.services.social_graph import SocialGraph

logger = logging.getLogger(__name__)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")

VIEW_EVENTS = {
    FRIENDS: "friends",
    PENDING_FRIEND_REQUESTS: "friend_requests",
    GROUPS_VIEW: "groups",
    PENDING_INVITATIONS: "group_invitations",
}

_graph: SocialGraph | None = None
_sid_to_feed: dict[str, ChangeFeedSubscriber] = {}
_sid_to_user: dict[str, str] = {}


def attach_social_graph(graph: SocialGraph | None) -> None:
    global _graph
    _graph = graph


def _resolve_user_id(auth: dict | None, environ: dict) -> str | None:
    user_id = auth.get("user_id") if isinstance(auth, dict) else None
    if not user_id:
        user_id = parse_qs(environ.get("QUERY_STRING", "")).get("user_id", [None])[0]
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return None


def serialize_update(update: ProjectionUpdate) -> dict:
    return {
        "view": update.view,
        "user_id": update.user_id,
        "sequence": update.sequence,
        "items": [item.model_dump(mode="json") for item in update.items],
        "events": [
            {"kind": event.kind, "id": event.entity_id}
            for event in update.events
        ],
    }


def _emitter_for(sid: str):
    async def emit_update(update: ProjectionUpdate) -> None:
        event = VIEW_EVENTS.get(update.view)
        if event is None:
            return
        await sio.emit(event, serialize_update(update), room=sid)

    return emit_update


@sio.event
async def connect(sid: str, environ: dict, auth: dict | None = None) -> bool:
    if _graph is None:
        logger.warning("Socket connection %s refused, no social graph attached", sid)
        return False
    user_id = _resolve_user_id(auth, environ)
    if not user_id:
        return False
    try:
        user = await _graph.identity.get_user(user_id)
    except SocialGraphError:
        return False

    feed = _graph.open_feed()
    feed.add_consumer(_emitter_for(sid))
    _sid_to_feed[sid] = feed
    _sid_to_user[sid] = user.id
    await sio.emit(
        "system",
        {"message": "connected", "user_id": user.id, "username": user.username},
        room=sid,
    )
    try:
        await feed.bind(user.id)
    except SocialGraphError:
        logger.exception("Could not open change feed for %s", user.id)
        await _release(sid)
        return False
    logger.info("Socket %s connected for user %s", sid, user.id)
    return True


async def _release(sid: str) -> None:
    feed = _sid_to_feed.pop(sid, None)
    _sid_to_user.pop(sid, None)
    if feed is None:
        return
    if _graph is not None:
        await _graph.release_feed(feed)
    else:
        await feed.close()


@sio.event
async def disconnect(sid: str) -> None:
    user_id = _sid_to_user.get(sid)
    await _release(sid)
    if user_id and _graph is not None:
        try:
            await _graph.identity.touch_last_seen(user_id)
        except SocialGraphError:
            logger.warning("Could not record last_seen for %s", user_id)
    logger.info("Socket %s disconnected", sid)


@sio.event
async def refresh(sid: str, _: dict | None = None) -> dict:
    feed = _sid_to_feed.get(sid)
    if feed is None:
        return {"ok": False, "error": "unauthorized"}
    await feed.refresh()
    return {"ok": True}


def build_socket_app(api_app) -> socketio.ASGIApp:
    return socketio.ASGIApp(sio, other_asgi_app=api_app, socketio_path="socket.io")
