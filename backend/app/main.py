import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.logging_config import setup_logging
from app.realtime.socket_server import attach_social_graph, build_socket_app
from app.services.social_graph import create_social_graph

settings = get_settings()
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)

api_app = FastAPI(title=settings.app_name, debug=settings.debug)
api_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
api_app.include_router(api_router, prefix=settings.api_prefix)


@api_app.on_event("startup")
async def on_startup() -> None:
    graph = getattr(api_app.state, "social_graph", None)
    if graph is None:
        graph = await create_social_graph(settings)
        api_app.state.social_graph = graph
    else:
        await graph.start()
    attach_social_graph(graph)
    logger.info("%s started on the %s store", settings.app_name, graph.store.name)


@api_app.on_event("shutdown")
async def on_shutdown() -> None:
    graph = getattr(api_app.state, "social_graph", None)
    attach_social_graph(None)
    if graph is not None:
        await graph.close()
        api_app.state.social_graph = None


app = build_socket_app(api_app)
