from fastapi import APIRouter
from agent_graph.api.v1.endpoints import runs

api_router = APIRouter()

api_router.include_router(runs.router, prefix="/runs", tags=["runs"])
