import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response, StreamingResponse

from comfyui_client import ComfyUIClient, ComfyUIError
from engine_adapter import EngineAdapter
from jobs import JobStore
from models import GenerateRequest
from progress import ProgressRegistry
from publisher import DEFAULT_STEPS, stream_progress

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = ComfyUIClient()
    app.state.comfyui = client
    app.state.registry = ProgressRegistry(EngineAdapter(client.ws_url()))
    app.state.jobs = JobStore()
    app.state.tracking = set()
    yield
    for task in app.state.tracking:
        task.cancel()
    await asyncio.gather(*app.state.tracking, return_exceptions=True)
    await app.state.registry.close()


# --- FastAPI app ---

app = FastAPI(title="Diffusion Progress Bridge", lifespan=lifespan)


@app.post("/api/generate")
async def generate(request: Request, body: GenerateRequest):
    """Queue a workflow on ComfyUI and start following it."""
    state = request.app.state
    try:
        job_id = await state.comfyui.queue_prompt(body.workflow)
    except ComfyUIError as e:
        log.warning("ComfyUI rejected prompt: %s", e)
        raise HTTPException(status_code=502, detail=str(e))

    state.jobs.create(job_id, body.steps or DEFAULT_STEPS)
    task = asyncio.create_task(state.jobs.track(state.comfyui, job_id))
    state.tracking.add(task)
    task.add_done_callback(state.tracking.discard)
    log.info("Queued job %s", job_id)
    return {"job_id": job_id, "status": "pending"}


@app.get("/api/generate/progress")
async def progress_stream(
    request: Request,
    promptId: Optional[str] = None,
    totalSteps: Optional[int] = Query(default=None, ge=1),
):
    """SSE endpoint for real-time generation progress."""
    if not promptId:
        raise HTTPException(status_code=400, detail="promptId is required")
    state = request.app.state
    return StreamingResponse(
        stream_progress(promptId, state.registry, state.jobs, total_steps=totalSteps),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/generations")
async def list_generations(
    request: Request,
    page: int = 1,
    pageSize: int = 10,
):
    return request.app.state.jobs.list_jobs(page, pageSize).model_dump()


@app.get("/api/generations/{job_id}")
async def get_generation(request: Request, job_id: str):
    record = request.app.state.jobs.get(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Generation not found")
    return record.model_dump()


@app.get("/api/view")
async def view_image(request: Request, filename: str, subfolder: str = "", type: str = "output"):
    """Proxy a generated image from ComfyUI."""
    try:
        content = await request.app.state.comfyui.get_image(filename, subfolder, type)
    except ComfyUIError as e:
        log.warning("Image %s unavailable: %s", filename, e)
        raise HTTPException(status_code=502, detail=str(e))
    return Response(content=content, media_type="image/png")


@app.post("/api/upload")
async def upload_image(request: Request, file: UploadFile = File(...)):
    """Forward a reference image to ComfyUI's input folder."""
    filename = file.filename or "upload.png"
    data = await file.read()
    try:
        result = await request.app.state.comfyui.upload_image(data, filename)
    except ComfyUIError as e:
        log.warning("Upload of %s rejected: %s", filename, e)
        raise HTTPException(status_code=502, detail=str(e))
    log.info("Uploaded %s (%d bytes)", filename, len(data))
    return result


@app.get("/health")
async def health(request: Request):
    ok = await request.app.state.comfyui.health_check()
    return {"status": "ok" if ok else "unavailable", "comfyui": ok}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=3001, reload=True)
