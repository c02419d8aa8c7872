# backend/zephyr_worker/main.py
import asyncio
import logging
import os

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from sqlmodel import Session

from .comfyui import ComfyUIClient
from .config import Settings
from .db import get_engine, get_session, init_db
from .models import JOB_MODELS, JobStatus
from .storage import LocalStorage, StorageError

logger = logging.getLogger(__name__)

settings = Settings.from_env()

app = FastAPI(title="Zephyr Worker Status")

# --- CORS for development ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # open for dev; lock down in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup():
    init_db()
    os.makedirs(settings.storage_dir, exist_ok=True)


def job_model(kind: str):
    model = JOB_MODELS.get(kind)
    if model is None:
        raise HTTPException(status_code=404, detail=f"Unknown job kind: {kind}")
    return model


def job_payload(kind: str, job) -> dict:
    return {
        "job_id": job.id,
        "kind": kind,
        "status": job.status,
        "progress": job.progress,
        "stage": job.current_stage,
        "error": job.error_message,
    }


@app.get("/health")
async def health():
    client = ComfyUIClient(settings.comfyui_url)
    try:
        comfyui_ok = await client.check_health()
    finally:
        await client.http.aclose()
    return {"status": "ok", "comfyui": comfyui_ok}


@app.get("/jobs/{kind}/{job_id}")
def get_status(kind: str, job_id: str, db: Session = Depends(get_session)):
    job = db.get(job_model(kind), job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_payload(kind, job)


@app.get("/result/{key:path}")
def result(key: str):
    storage = LocalStorage(settings.storage_dir, settings.public_base_url)
    try:
        path = storage.path_for(key)
    except StorageError:
        raise HTTPException(status_code=404, detail="Result not found")
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Result not ready")
    return FileResponse(path=path, filename=os.path.basename(path), media_type="image/png")


@app.websocket("/render-progress")
async def render_progress(websocket: WebSocket):
    await websocket.accept()
    kind = websocket.query_params.get("kind", "asset")
    job_id = websocket.query_params.get("jobId") or websocket.query_params.get("job_id")
    model = JOB_MODELS.get(kind)
    if not job_id or model is None:
        await websocket.send_json({"error": "missing jobId or unknown kind"})
        await websocket.close(code=1008)
        return

    try:
        while True:
            # short session per read so the worker's writes are visible
            with Session(get_engine()) as session:
                job = session.get(model, job_id)

            if not job:
                await websocket.send_json({"error": "job_not_found"})
                await websocket.close()
                return

            await websocket.send_json(job_payload(kind, job))

            if job.status in JobStatus.TERMINAL:
                await websocket.close()
                return

            await asyncio.sleep(1.0)

    except WebSocketDisconnect:
        logger.info("render_progress client disconnected from %s %s", kind, job_id)
