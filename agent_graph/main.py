# main.py

"""
Main FastAPI application file. Multi-agent workflow runner.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from agent_graph.api.v1.router import api_router
from agent_graph.core.config import settings
from agent_graph.services.run_service import get_run_service

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    run_service = await get_run_service()
    app.state.run_service = run_service
    logger.info("--- Run Service Initialized ---")

    yield

    await app.state.run_service.stop()
    logger.info("--- Run Service Closed ---")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/", tags=["Root"])
def root():
    return {
        "message": "Welcome to the Agent Graph workflow runner!"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agent_graph.main:app", host="0.0.0.0", port=8000)
