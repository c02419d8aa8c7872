"""Tests for job processing against a temporary sqlite job store."""

import asyncio
import json
import threading
import time
from datetime import datetime, timedelta

import httpx
import pytest
import respx
from sqlalchemy import event, text
from sqlmodel import Session

from zephyr_worker import worker
from zephyr_worker.comfyui import ComfyUIClient, ExecutionFailed
from zephyr_worker.config import Settings
from zephyr_worker.graph import ExecutionGraph
from zephyr_worker.models import AssetGeneration, JobStatus, RotationJob, TextureGeneration, User
from zephyr_worker.progress import ProgressInfo, ProgressTracker
from zephyr_worker.worker import (
    WorkerContext,
    poll_for_jobs,
    process_asset_job,
    process_rotation_job,
    process_texture_job,
    progress_writer,
    refund_tokens,
)


class FakeClient:
    def __init__(self, outputs=None, progress=()):
        self.outputs = outputs if outputs is not None else {}
        self.progress = list(progress)
        self.submitted = None
        self.connected = False
        self.disconnected = False
        self.uploaded = []

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.disconnected = True

    async def upload_image(self, data, filename):
        self.uploaded.append((filename, data))
        return filename

    async def queue_prompt(self, workflow, on_progress=None):
        self.submitted = workflow
        for info in self.progress:
            on_progress(info)
        return "p-1"

    async def wait_for_completion(self, prompt_id, timeout=600.0):
        if isinstance(self.outputs, Exception):
            raise self.outputs
        return self.outputs

    async def get_image(self, filename, subfolder="", type="output"):
        return f"data:{filename}".encode()


class FakeStorage:
    def __init__(self):
        self.uploads = {}

    async def upload(self, data, key, content_type="image/png"):
        self.uploads[key] = data
        return f"https://cdn.test/{key}"


def image(name):
    return {"images": [{"filename": name, "subfolder": "", "type": "output"}]}


@pytest.fixture
def workflows():
    return {
        "rotate": {
            "134": {"class_type": "LoadImage", "inputs": {"image": ""}},
            "104": {"class_type": "KSampler", "inputs": {"seed": 0}},
            "165": {"class_type": "KSampler", "inputs": {"seed": 0}},
            "129": {"class_type": "SaveImage", "inputs": {}},
        },
        "sprite": {
            "45": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
            "40": {"class_type": "EmptyLatentImage", "inputs": {"width": 0, "height": 0}},
            "41": {"class_type": "RandomNoise", "inputs": {"noise_seed": 0}},
            "save_image": {"class_type": "SaveImage", "inputs": {}},
        },
        "texture": {
            "62": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
            "65": {"class_type": "CLIPTextEncode", "inputs": {"text": ""}},
            "64": {"class_type": "KSamplerAdvanced", "inputs": {"noise_seed": 0}},
        },
    }


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def ctx(engine, workflows, fake_client, user):
    ctx = WorkerContext(
        settings=Settings(),
        workflows=workflows,
        storage=FakeStorage(),
        engine=engine,
        client_factory=lambda: fake_client,
    )
    yield ctx
    ctx.close()


def add(engine, row):
    with Session(engine) as session:
        session.add(row)
        session.commit()
        session.refresh(row)
    return row


def fetch(engine, model, job_id):
    with Session(engine) as session:
        return session.get(model, job_id)


def tokens(engine):
    return fetch(engine, User, "user-1").tokens


class TestAssetJobs:
    @pytest.fixture
    def job(self, engine):
        return add(engine, AssetGeneration(
            id="asset-0001-aaaa", visible_id="v1", user_id="user-1", asset_type="sprite",
            prompt="a tiny knight", width=256, height=384, token_cost=3,
        ))

    async def test_completes_and_uploads(self, ctx, engine, job, fake_client, workflows):
        fake_client.outputs = {"save_image": image("sprite.png")}

        await process_asset_job(ctx, job)

        row = fetch(engine, AssetGeneration, job.id)
        assert row.status == JobStatus.COMPLETED
        assert row.progress == 100
        assert row.current_stage == "Complete"
        assert row.result_urls == {"raw": f"https://cdn.test/assets/{job.id}.png"}
        assert row.completed_at is not None
        assert ctx.storage.uploads[f"assets/{job.id}.png"] == b"data:sprite.png"

        submitted = fake_client.submitted
        assert submitted["45"]["inputs"]["text"] == "a tiny knight"
        assert submitted["40"]["inputs"] == {"width": 256, "height": 384}
        assert submitted["41"]["inputs"]["noise_seed"] == row.seed
        # template untouched
        assert workflows["sprite"]["45"]["inputs"]["text"] == ""
        assert fake_client.disconnected

    async def test_falls_back_to_any_image_output(self, ctx, engine, job, fake_client):
        fake_client.outputs = {"12": {"text": ["ignored"]}, "30": image("other.png")}

        await process_asset_job(ctx, job)

        assert fetch(engine, AssetGeneration, job.id).status == JobStatus.COMPLETED
        assert ctx.storage.uploads[f"assets/{job.id}.png"] == b"data:other.png"

    async def test_no_output_fails_and_refunds(self, ctx, engine, job, fake_client):
        fake_client.outputs = {}

        await process_asset_job(ctx, job)

        row = fetch(engine, AssetGeneration, job.id)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "No output image generated"
        assert tokens(engine) == 13

    async def test_execution_failure_recorded(self, ctx, engine, job, fake_client):
        fake_client.outputs = ExecutionFailed("Workflow execution failed: CUDA out of memory")

        await process_asset_job(ctx, job)

        row = fetch(engine, AssetGeneration, job.id)
        assert row.status == JobStatus.FAILED
        assert "CUDA out of memory" in row.error_message
        assert tokens(engine) == 13


class TestRotationJobs:
    @pytest.fixture
    def job(self, engine):
        return add(engine, RotationJob(
            id="rot-0001-bbbb", user_id="user-1", input_image_url="https://img.test/in.png", token_cost=5,
        ))

    async def test_completes_all_directions(self, ctx, engine, job, fake_client):
        fake_client.outputs = {"129": {"images": [
            {"filename": f"frame_{i}.png", "subfolder": "", "type": "output"} for i in range(8)
        ]}}

        with respx.mock:
            respx.get("https://img.test/in.png").mock(return_value=httpx.Response(200, content=b"input"))
            await process_rotation_job(ctx, job)

        row = fetch(engine, RotationJob, job.id)
        assert row.status == JobStatus.COMPLETED
        assert row.started_at is not None
        assert row.rotation_n == f"https://cdn.test/rotations/{job.id}_n.png"
        assert row.rotation_nw == f"https://cdn.test/rotations/{job.id}_nw.png"
        assert fake_client.uploaded == [(f"input_{job.id}.png", b"input")]
        assert fake_client.submitted["134"]["inputs"]["image"] == f"input_{job.id}.png"

    async def test_missing_input_fails_without_connecting(self, ctx, engine, fake_client):
        job = add(engine, RotationJob(id="rot-0002-cccc", user_id="user-1", token_cost=5))

        await process_rotation_job(ctx, job)

        row = fetch(engine, RotationJob, job.id)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "No input image provided"
        assert not fake_client.connected
        assert tokens(engine) == 15

    async def test_download_failure(self, ctx, engine, job):
        with respx.mock:
            respx.get("https://img.test/in.png").mock(return_value=httpx.Response(404))
            await process_rotation_job(ctx, job)

        row = fetch(engine, RotationJob, job.id)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "Failed to download input image: 404"


class TestTextureJobs:
    @pytest.fixture
    def job(self, engine):
        return add(engine, TextureGeneration(id="tex-0001-dddd", user_id="user-1", prompt="mossy bricks",
                                             token_cost=4))

    async def test_completes_with_all_maps(self, ctx, engine, job, fake_client):
        fake_client.outputs = {node: image(f"{node}.png") for node in ("9", "14", "16", "17", "18")}

        await process_texture_job(ctx, job)

        row = fetch(engine, TextureGeneration, job.id)
        assert row.status == JobStatus.COMPLETED
        assert row.basecolor_url == f"https://cdn.test/textures/{job.id}_basecolor.png"
        assert row.metallic_url == f"https://cdn.test/textures/{job.id}_metallic.png"
        assert fake_client.submitted["62"]["inputs"]["text"].startswith("mossy bricks, seamless tileable texture")
        assert fake_client.submitted["64"]["inputs"]["noise_seed"] == row.seed

    async def test_missing_maps_fail(self, ctx, engine, job, fake_client):
        fake_client.outputs = {"9": image("9.png"), "14": image("14.png")}

        await process_texture_job(ctx, job)

        row = fetch(engine, TextureGeneration, job.id)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "Missing texture maps: height, metallic, roughness"

    async def test_unconfigured_workflow(self, ctx, engine, job, fake_client):
        ctx.workflows["texture"] = None

        await process_texture_job(ctx, job)

        row = fetch(engine, TextureGeneration, job.id)
        assert row.status == JobStatus.FAILED
        assert row.error_message == "Texture generation workflow not yet configured"
        assert tokens(engine) == 14
        assert not fake_client.connected


class TestProgressWriter:
    def test_writes_stage_with_eta(self, ctx, engine):
        job = add(engine, TextureGeneration(id="tex-0002", user_id="user-1", prompt="sand", token_cost=1))
        write = progress_writer(ctx, TextureGeneration, job.id, "[Texture:tex-0002]")

        write(ProgressInfo(40, "Generating image", 20, 50, 30)).result()

        row = fetch(engine, TextureGeneration, job.id)
        assert row.progress == 40
        assert row.current_stage == "Generating image (~0:30 remaining)"

    def test_rotation_scaling(self, ctx, engine):
        job = add(engine, RotationJob(id="rot-0003", user_id="user-1", token_cost=1))
        write = progress_writer(ctx, RotationJob, job.id, "[Rotate:rot-0003]", scale=lambda p: 10 + int(p * 0.8))

        write(ProgressInfo(50, "Generating (step 5/10)", 10, 20, 10)).result()

        assert fetch(engine, RotationJob, job.id).progress == 50

    async def test_slow_write_does_not_block_listener(self, ctx, engine, monkeypatch):
        job = add(engine, TextureGeneration(id="tex-0003", user_id="user-1", prompt="ice", token_cost=1))
        gate = threading.Event()
        real_update = worker.update_job

        def slow_update(*args, **kwargs):
            gate.wait(5)
            real_update(*args, **kwargs)

        monkeypatch.setattr(worker, "update_job", slow_update)
        write = progress_writer(ctx, TextureGeneration, job.id, "[Texture:tex-0003]")
        pending = []
        client = ComfyUIClient("http://comfy.test")
        graph = ExecutionGraph({"1": {"class_type": "KSampler", "inputs": {}}})
        client.tracker = ProgressTracker(graph, submission_id="p-1", on_progress=lambda info: pending.append(write(info)))

        try:
            started = time.monotonic()
            client.handle_message(json.dumps({"type": "execution_start", "data": {"prompt_id": "p-1"}}))
            client.handle_message(json.dumps({"type": "executed", "data": {"prompt_id": "p-1", "node": "1"}}))
            assert time.monotonic() - started < 1.0

            # the loop keeps turning while both writes wait on the store thread
            await asyncio.sleep(0)
            assert len(pending) == 2
            assert not any(future.done() for future in pending)
            assert fetch(engine, TextureGeneration, job.id).progress == 0
        finally:
            gate.set()

        pending[-1].result(timeout=5)
        assert fetch(engine, TextureGeneration, job.id).progress == 99
        await client.http.aclose()


class TestRefund:
    def test_concurrent_charge_is_kept(self, ctx, engine):
        charged = []

        def charge_first(conn, cursor, statement, parameters, context, executemany):
            # the web app spends 4 tokens between the worker's read and write
            if charged or not statement.startswith("UPDATE") or "tokens" not in statement:
                return
            charged.append(True)
            with engine.begin() as other:
                other.execute(text('UPDATE "user" SET tokens = tokens - 4 WHERE id = :id'), {"id": "user-1"})

        event.listen(engine, "before_cursor_execute", charge_first)
        try:
            refund_tokens(ctx, "user-1", 5)
        finally:
            event.remove(engine, "before_cursor_execute", charge_first)

        assert charged
        assert tokens(engine) == 11

    def test_missing_user_is_logged(self, ctx, engine, caplog):
        refund_tokens(ctx, "nobody", 5)

        assert tokens(engine) == 10
        assert "user nobody not found" in caplog.text


class TestWorkerContext:
    async def test_client_uses_configured_socket_url(self, engine, workflows):
        ctx = WorkerContext(
            settings=Settings(comfyui_url="http://gpu.test:8188", ws_url="ws://events.test:9000"),
            workflows=workflows,
            storage=FakeStorage(),
            engine=engine,
        )
        client = ctx.new_client()

        assert client.base_url == "http://gpu.test:8188"
        assert client.ws_url == "ws://events.test:9000"
        await client.http.aclose()
        ctx.close()


class TestPolling:
    async def test_nothing_pending(self, ctx):
        assert await poll_for_jobs(ctx) is False

    async def test_oldest_rotation_job_first(self, ctx, engine, fake_client):
        now = datetime(2026, 1, 1, 12, 0, 0)
        add(engine, AssetGeneration(id="asset-old", visible_id="v", user_id="user-1", asset_type="sprite",
                                    prompt="p", token_cost=1, created_at=now - timedelta(hours=1)))
        add(engine, RotationJob(id="rot-new", user_id="user-1", token_cost=1, created_at=now))
        add(engine, RotationJob(id="rot-old", user_id="user-1", token_cost=1, created_at=now - timedelta(minutes=5)))

        assert await poll_for_jobs(ctx) is True

        # rot-old has no input image so it fails; the others stay pending
        assert fetch(engine, RotationJob, "rot-old").status == JobStatus.FAILED
        assert fetch(engine, RotationJob, "rot-new").status == JobStatus.PENDING
        assert fetch(engine, AssetGeneration, "asset-old").status == JobStatus.PENDING
