"""
FastAPI endpoints for workflow runs
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from agent_graph.api.v1.schemas.run import RunCancelResponse, RunRequest
from agent_graph.services.run_service import RunCapacityError, RunServiceError, get_run_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/stream")
async def stream_run(
    request: RunRequest,
    run_service = Depends(get_run_service)
):
    """Run a workflow and stream its events"""
    try:
        queue: asyncio.Queue = asyncio.Queue()
        run = await run_service.create_run(request, queue)
        messages = run_service.build_messages(request)

        return StreamingResponse(
            run_service.stream_run(run, queue, messages, thread_id=request.thread_id),
            media_type="text/plain",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Content-Type": "text/event-stream"
            }
        )

    except RunCapacityError as e:
        logger.warning(f"Run capacity reached: {e}")
        raise HTTPException(status_code=429, detail=str(e))
    except RunServiceError as e:
        logger.error(f"Run service error: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error streaming run: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/health")
async def health_check(run_service = Depends(get_run_service)):
    """Health check endpoint"""
    try:
        health_status = await run_service.health_check()

        if health_status["status"] != "healthy":
            raise HTTPException(status_code=503, detail=health_status)

        return health_status

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected error in health check: {e}")
        raise HTTPException(status_code=500, detail="Health check failed")


@router.delete("/{run_id}", response_model=RunCancelResponse)
async def cancel_run(
    run_id: str,
    run_service = Depends(get_run_service)
):
    """Abort a running workflow"""
    try:
        cancelled = await run_service.cancel_run(run_id)

        if not cancelled:
            raise HTTPException(
                status_code=404,
                detail="Run not found or already completed"
            )

        return RunCancelResponse(run_id=run_id, message="Run cancelled successfully")

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected error cancelling run: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
