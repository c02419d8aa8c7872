# backend/zephyr_worker/worker.py
import asyncio
import copy
import functools
import logging
import random
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .comfyui import ComfyUIClient
from .config import Settings, configure_logging, load_workflows
from .db import init_db, make_engine
from .graph import Workflow
from .models import AssetGeneration, JobStatus, RotationJob, TextureGeneration, User, utcnow
from .progress import ProgressInfo, format_progress
from .storage import make_storage

logger = logging.getLogger(__name__)

ROTATION_TIMEOUT = 900.0  # SV3D is slow
ASSET_TIMEOUT = 300.0
TEXTURE_TIMEOUT = 600.0

# SV3D outputs all 8 directions from node 129 as one batch, in this order
ROTATION_DIRECTIONS = ["n", "ne", "e", "se", "s", "sw", "w", "nw"]
ROTATION_OUTPUT_NODE = "129"

TEXTURE_OUTPUT_NODES = {
    "9": "basecolor",
    "14": "normal",
    "16": "height",
    "17": "roughness",
    "18": "metallic",
}
TEXTURE_PROMPT_SUFFIX = ", seamless tileable texture, top-down flat view, no shadows, texture map"


class JobError(Exception):
    pass


@dataclass
class WorkerContext:
    settings: Settings
    workflows: Dict[str, Optional[Workflow]]
    storage: Any
    engine: Engine
    client_factory: Optional[Callable[[], ComfyUIClient]] = field(default=None)
    # one thread, so job store writes land in submission order and never block the loop
    db_executor: ThreadPoolExecutor = field(
        default_factory=lambda: ThreadPoolExecutor(max_workers=1, thread_name_prefix="jobstore")
    )

    def new_client(self) -> ComfyUIClient:
        if self.client_factory is not None:
            return self.client_factory()
        return ComfyUIClient(
            self.settings.comfyui_url,
            ws_url=self.settings.comfyui_ws_url,
            node_weights=self.settings.node_weights,
        )

    async def run_db(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.db_executor, functools.partial(fn, *args, **kwargs))

    def close(self):
        self.db_executor.shutdown(wait=True)


def random_seed() -> int:
    return random.randrange(2 ** 31)


def update_job(ctx: WorkerContext, model, job_id: str, **values):
    with Session(ctx.engine) as session:
        job = session.get(model, job_id)
        if not job:
            return
        for key, value in values.items():
            setattr(job, key, value)
        session.add(job)
        session.commit()


def refund_tokens(ctx: WorkerContext, user_id: str, amount: int):
    # computed in sql so a concurrent charge by the web app is not overwritten
    statement = update(User).where(User.id == user_id).values(tokens=User.tokens + amount)
    with Session(ctx.engine) as session:
        result = session.execute(statement)
        session.commit()
    if result.rowcount == 0:
        logger.warning("Cannot refund %d tokens, user %s not found", amount, user_id)


async def save_job(ctx: WorkerContext, model, job_id: str, **values):
    await ctx.run_db(update_job, ctx, model, job_id, **values)


async def fail_job(ctx: WorkerContext, model, job, message: str, log_prefix: str):
    logger.error("%s Failed: %s", log_prefix, message)
    await save_job(ctx, model, job.id, status=JobStatus.FAILED, error_message=message)
    await ctx.run_db(refund_tokens, ctx, job.user_id, job.token_cost)
    logger.info("%s Tokens refunded", log_prefix)


def _log_write_failure(future: Future):
    error = future.exception()
    if error is not None:
        logger.error("Progress write failed: %s", error)


def progress_writer(ctx: WorkerContext, model, job_id: str, log_prefix: str,
                    scale: Callable[[int], int] = lambda p: p):
    """
    Progress callback for the socket listener. Writes are queued on the
    job store thread instead of running on the event loop.
    """
    def on_progress(info: ProgressInfo) -> Future:
        progress = scale(info.progress)
        logger.info("%s %d%% - %s", log_prefix, progress, info.stage)
        future = ctx.db_executor.submit(
            update_job, ctx, model, job_id, progress=progress, current_stage=format_progress(info)
        )
        future.add_done_callback(_log_write_failure)
        return future
    return on_progress


def set_input(workflow: Workflow, node_id: str, **inputs):
    node = workflow.get(node_id)
    if node and isinstance(node.get("inputs"), dict):
        node["inputs"].update(inputs)


def output_images(output) -> List[Dict[str, Any]]:
    if not isinstance(output, dict):
        return []
    images = output.get("images")
    return images if isinstance(images, list) else []


async def download(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as http:
        response = await http.get(url)
    if response.status_code >= 400:
        raise JobError(f"Failed to download input image: {response.status_code}")
    return response.content


async def fetch_and_store(ctx: WorkerContext, client: ComfyUIClient, image: Dict[str, Any], key: str) -> str:
    data = await client.get_image(image["filename"], image.get("subfolder", ""), image.get("type", "output"))
    return await ctx.storage.upload(data, key)


# ============ ROTATION JOBS ============
async def process_rotation_job(ctx: WorkerContext, job: RotationJob):
    log_prefix = f"[Rotate:{job.id[:8]}]"
    logger.info("%s Processing", log_prefix)
    client = ctx.new_client()

    try:
        if not ctx.workflows.get("rotate"):
            raise JobError("Rotation workflow not loaded")
        if not job.input_image_url:
            raise JobError("No input image provided")

        await client.connect()
        await save_job(ctx, RotationJob, job.id, status=JobStatus.PROCESSING, started_at=utcnow(),
                       current_stage="Downloading input image...", progress=0)

        logger.info("%s Downloading input image...", log_prefix)
        image_data = await download(job.input_image_url)

        await save_job(ctx, RotationJob, job.id, current_stage="Uploading to ComfyUI...", progress=5)
        input_filename = await client.upload_image(image_data, f"input_{job.id}.png")
        logger.info("%s Uploaded input image as: %s", log_prefix, input_filename)

        workflow = copy.deepcopy(ctx.workflows["rotate"])
        set_input(workflow, "134", image=input_filename)
        set_input(workflow, "104", seed=random_seed())
        set_input(workflow, "165", seed=random_seed())

        await save_job(ctx, RotationJob, job.id, current_stage="Generating rotations with SV3D...", progress=10)

        # generation owns the 10-90% band
        prompt_id = await client.queue_prompt(
            workflow,
            progress_writer(ctx, RotationJob, job.id, log_prefix, scale=lambda p: 10 + int(p * 0.8)),
        )
        outputs = await client.wait_for_completion(prompt_id, ROTATION_TIMEOUT)

        await save_job(ctx, RotationJob, job.id, progress=92, current_stage="Uploading images...")

        images = output_images(outputs.get(ROTATION_OUTPUT_NODE))
        if not images:
            raise JobError("No output images generated from workflow")

        urls = {}
        for direction, image in zip(ROTATION_DIRECTIONS, images):
            urls[direction] = await fetch_and_store(ctx, client, image, f"rotations/{job.id}_{direction}.png")
            logger.info("%s Uploaded %s", log_prefix, direction.upper())

        await save_job(
            ctx, RotationJob, job.id,
            status=JobStatus.COMPLETED, progress=100, current_stage="Complete", completed_at=utcnow(),
            **{f"rotation_{direction}": url for direction, url in urls.items()},
        )
        logger.info("%s Completed", log_prefix)

    except Exception as e:
        await fail_job(ctx, RotationJob, job, str(e) or "Unknown error", log_prefix)
    finally:
        await client.disconnect()


# ============ ASSET JOBS ============
async def process_asset_job(ctx: WorkerContext, job: AssetGeneration):
    log_prefix = f"[Asset:{job.id[:8]}]"
    logger.info("%s Processing (type: %s)", log_prefix, job.asset_type)
    client = ctx.new_client()

    try:
        if not ctx.workflows.get("sprite"):
            raise JobError("Sprite workflow not loaded")

        await client.connect()
        await save_job(ctx, AssetGeneration, job.id, status=JobStatus.PROCESSING,
                       current_stage="Starting...", progress=0)

        seed = random_seed()
        workflow = copy.deepcopy(ctx.workflows["sprite"])
        set_input(workflow, "45", text=job.prompt)
        set_input(workflow, "40", width=job.width, height=job.height)
        set_input(workflow, "41", noise_seed=seed)

        logger.info('%s Prompt: "%s..."', log_prefix, (job.prompt or "")[:50])

        prompt_id = await client.queue_prompt(workflow, progress_writer(ctx, AssetGeneration, job.id, log_prefix))
        outputs = await client.wait_for_completion(prompt_id, ASSET_TIMEOUT)

        await save_job(ctx, AssetGeneration, job.id, status=JobStatus.POST_PROCESSING,
                       progress=95, current_stage="Uploading image...")

        # prefer the save_image node, else whatever produced an image first
        images = output_images(outputs.get("save_image"))
        if not images:
            for output in outputs.values():
                images = output_images(output)
                if images:
                    break
        if not images:
            raise JobError("No output image generated")

        image_url = await fetch_and_store(ctx, client, images[0], f"assets/{job.id}.png")

        await save_job(ctx, AssetGeneration, job.id, status=JobStatus.COMPLETED, progress=100,
                       current_stage="Complete", result_urls={"raw": image_url}, seed=seed,
                       completed_at=utcnow())
        logger.info("%s Completed", log_prefix)

    except Exception as e:
        await fail_job(ctx, AssetGeneration, job, str(e) or "Unknown error", log_prefix)
    finally:
        await client.disconnect()


# ============ TEXTURE JOBS ============
async def process_texture_job(ctx: WorkerContext, job: TextureGeneration):
    log_prefix = f"[Texture:{job.id[:8]}]"
    logger.info("%s Processing", log_prefix)

    if not ctx.workflows.get("texture"):
        await fail_job(ctx, TextureGeneration, job, "Texture generation workflow not yet configured", log_prefix)
        return

    client = ctx.new_client()
    try:
        await client.connect()
        await save_job(ctx, TextureGeneration, job.id, status=JobStatus.PROCESSING,
                       current_stage="Starting...", progress=0)

        full_prompt = f"{job.prompt}{TEXTURE_PROMPT_SUFFIX}"
        seed = random_seed()
        workflow = copy.deepcopy(ctx.workflows["texture"])
        # 62 and 65 are the base and refiner prompts, 64 the base sampler
        set_input(workflow, "62", text=full_prompt)
        set_input(workflow, "65", text=full_prompt)
        set_input(workflow, "64", noise_seed=seed)

        logger.info('%s Prompt: "%s..."', log_prefix, (job.prompt or "")[:50])

        prompt_id = await client.queue_prompt(workflow, progress_writer(ctx, TextureGeneration, job.id, log_prefix))
        outputs = await client.wait_for_completion(prompt_id, TEXTURE_TIMEOUT)

        await save_job(ctx, TextureGeneration, job.id, progress=95, current_stage="Uploading textures...")

        urls = {}
        for node_id, output in outputs.items():
            map_type = TEXTURE_OUTPUT_NODES.get(node_id)
            images = output_images(output)
            if map_type and images:
                urls[map_type] = await fetch_and_store(ctx, client, images[0], f"textures/{job.id}_{map_type}.png")
                logger.info("%s Uploaded %s", log_prefix, map_type)

        missing = [m for m in TEXTURE_OUTPUT_NODES.values() if m not in urls]
        if missing:
            raise JobError(f"Missing texture maps: {', '.join(sorted(missing))}")

        await save_job(
            ctx, TextureGeneration, job.id,
            status=JobStatus.COMPLETED, progress=100, current_stage="Complete", seed=seed,
            completed_at=utcnow(),
            **{f"{map_type}_url": url for map_type, url in urls.items()},
        )
        logger.info("%s Completed", log_prefix)

    except Exception as e:
        await fail_job(ctx, TextureGeneration, job, str(e) or "Unknown error", log_prefix)
    finally:
        await client.disconnect()


# ============ MAIN LOOP ============
JOB_QUEUES = [
    (RotationJob, process_rotation_job),
    (AssetGeneration, process_asset_job),
    (TextureGeneration, process_texture_job),
]


def next_pending(ctx: WorkerContext, model):
    with Session(ctx.engine) as session:
        statement = (
            select(model)
            .where(model.status == JobStatus.PENDING)
            .order_by(model.created_at)
            .limit(1)
        )
        return session.exec(statement).first()


async def poll_for_jobs(ctx: WorkerContext) -> bool:
    """Process the oldest pending job, one at a time. Returns True if one ran."""
    for model, process in JOB_QUEUES:
        job = await ctx.run_db(next_pending, ctx, model)
        if job is not None:
            await process(ctx, job)
            return True
    return False


async def wait_for_backend(ctx: WorkerContext):
    client = ctx.new_client()
    try:
        while not await client.check_health():
            logger.info("[Worker] Waiting for ComfyUI...")
            await asyncio.sleep(ctx.settings.health_interval)
    finally:
        await client.disconnect()
    logger.info("[Worker] ComfyUI is ready")


async def run_forever(ctx: WorkerContext, stop: Optional[asyncio.Event] = None):
    await wait_for_backend(ctx)
    while stop is None or not stop.is_set():
        try:
            await poll_for_jobs(ctx)
        except Exception:
            logger.exception("[Worker] Error")
        await asyncio.sleep(ctx.settings.poll_interval)


def build_context(settings: Settings) -> WorkerContext:
    engine = make_engine(settings.database_url)
    init_db(engine)
    return WorkerContext(
        settings=settings,
        workflows=load_workflows(settings),
        storage=make_storage(settings),
        engine=engine,
    )


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info("[Worker] Starting Zephyr ComfyUI Worker")
    logger.info("[Worker] ComfyUI URL: %s", settings.comfyui_url)

    ctx = build_context(settings)
    loaded = [name for name, workflow in ctx.workflows.items() if workflow]
    logger.info("[Worker] Workflows loaded: %s", ", ".join(loaded) or "none")

    try:
        asyncio.run(run_forever(ctx))
    except KeyboardInterrupt:
        logger.info("[Worker] Stopped")
    finally:
        ctx.close()


if __name__ == "__main__":
    main()
