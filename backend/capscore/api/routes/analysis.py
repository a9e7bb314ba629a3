from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
import json
import asyncio
from concurrent.futures import ThreadPoolExecutor
import threading
import queue
import logging
import time

from capscore.core.config import get_settings
from capscore.models.schemas import AnalysisRequest, CompleteEvent, ErrorEvent
from capscore.services.datasets import DatasetBundle, get_dataset_bundle
from capscore.services.engine import MissingDatasetError, execute_analysis, run_analysis

router = APIRouter()
logger = logging.getLogger(__name__)

# Thread pool for CPU-bound analysis
analysis_executor = ThreadPoolExecutor(max_workers=get_settings().analysis_workers)


def resolve_datasets(request: AnalysisRequest) -> DatasetBundle:
    """Catalog datasets, with any inline GeoJSON datasets taking precedence."""
    bundle = get_dataset_bundle()
    if request.datasets:
        logger.info("Using %d inline datasets: %s", len(request.datasets), ", ".join(request.datasets))
        bundle = bundle.merged(DatasetBundle.from_geojson(request.datasets))
    return bundle


def run_analysis_sync(request: AnalysisRequest) -> dict:
    """
    Run the analysis synchronously in a worker thread.

    Returns:
        The `complete` event payload
    """
    logger.info(
        "Analysis thread started (segment_length=%d freeways=%s)",
        request.config.segment_length,
        request.config.selected_freeways,
    )
    start_time = time.time()
    result = run_analysis(request.config, resolve_datasets(request))
    logger.info(
        "Analysis thread finished in %.1fs (segments=%d)",
        time.time() - start_time,
        result.total_segments,
    )
    return result.to_dict()


@router.post("/analyze", response_model=CompleteEvent)
async def analyze_segments(request: AnalysisRequest):
    """
    Score and rank freeway cap candidate segments.

    Inline datasets in the request body override catalog datasets with the
    same key.
    """
    try:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(analysis_executor, run_analysis_sync, request)
    except MissingDatasetError as e:
        logger.warning("Missing dataset in /analyze: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        logger.warning("Validation error in /analyze: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Unhandled error in /analyze")
        raise HTTPException(status_code=500, detail=f"Error analyzing segments: {str(e)}")


@router.post("/analyze/stream")
async def analyze_segments_stream(request: AnalysisRequest):
    """
    Score and rank segments with streaming progress updates.

    Returns Server-Sent Events: progress events followed by exactly one
    complete or error event.
    """
    # Thread-safe queue for cross-thread communication
    event_queue = queue.Queue()
    state = {"done": False}

    def run_in_thread():
        try:
            execute_analysis(request.config, resolve_datasets(request), event_queue.put_nowait)
        except Exception as e:
            # Dataset loading failed before the engine took over
            logger.exception("Stream analysis thread error")
            event_queue.put_nowait(ErrorEvent(message=str(e), detail=type(e).__name__).model_dump())
        finally:
            state["done"] = True

    async def generate():
        thread = threading.Thread(target=run_in_thread, daemon=True)
        thread.start()
        logger.info("Streaming response started")

        while not state["done"]:
            try:
                event = event_queue.get_nowait()
                yield f"data: {json.dumps(event)}\n\n"
            except queue.Empty:
                await asyncio.sleep(0.1)
                continue

        # Drain any remaining events
        while True:
            try:
                event = event_queue.get_nowait()
                yield f"data: {json.dumps(event)}\n\n"
            except queue.Empty:
                break

        thread.join(timeout=1.0)
        logger.info("Streaming response finished")

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
