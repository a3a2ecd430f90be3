from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
def health(request: Request) -> dict:
    graph = getattr(request.app.state, "social_graph", None)
    return {
        "status": "ok" if graph is not None and graph.store.is_connected else "degraded",
        "store": graph.store.name if graph is not None else None,
    }
