"""Tests for the status api."""

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from zephyr_worker import db, main
from zephyr_worker.comfyui import ComfyUIClient
from zephyr_worker.config import Settings
from zephyr_worker.models import AssetGeneration, JobStatus


@pytest.fixture
def api(engine, tmp_path, monkeypatch):
    monkeypatch.setattr(db, "_engine", engine)
    monkeypatch.setattr(main, "settings", Settings(storage_dir=str(tmp_path / "storage")))
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def job(engine):
    with Session(engine) as session:
        job = AssetGeneration(
            id="asset-1", visible_id="v1", user_id="user-1", asset_type="sprite", prompt="a slime",
            token_cost=2, status=JobStatus.PROCESSING, progress=42, current_stage="Generating image",
        )
        session.add(job)
        session.commit()
        session.refresh(job)
    return job


class TestStatus:
    def test_job_status(self, api, job):
        response = api.get("/jobs/asset/asset-1")

        assert response.status_code == 200
        assert response.json() == {
            "job_id": "asset-1",
            "kind": "asset",
            "status": "processing",
            "progress": 42,
            "stage": "Generating image",
            "error": None,
        }

    def test_unknown_kind(self, api):
        assert api.get("/jobs/video/asset-1").status_code == 404

    def test_missing_job(self, api):
        assert api.get("/jobs/texture/nope").status_code == 404

    def test_health(self, api, monkeypatch):
        async def healthy(self):
            return True

        monkeypatch.setattr(ComfyUIClient, "check_health", healthy)

        assert api.get("/health").json() == {"status": "ok", "comfyui": True}


class TestResults:
    def test_serves_local_file(self, api, tmp_path):
        target = tmp_path / "storage" / "assets"
        target.mkdir(parents=True)
        (target / "asset-1.png").write_bytes(b"png")

        response = api.get("/result/assets/asset-1.png")

        assert response.status_code == 200
        assert response.content == b"png"

    def test_not_ready(self, api):
        assert api.get("/result/assets/missing.png").status_code == 404


class TestProgressSocket:
    def test_streams_until_terminal(self, api, job, engine):
        with Session(engine) as session:
            row = session.get(AssetGeneration, "asset-1")
            row.status = JobStatus.COMPLETED
            row.progress = 100
            session.add(row)
            session.commit()

        with api.websocket_connect("/render-progress?kind=asset&jobId=asset-1") as ws:
            message = ws.receive_json()

        assert message["status"] == "completed"
        assert message["progress"] == 100

    def test_missing_job_id(self, api):
        with api.websocket_connect("/render-progress") as ws:
            assert ws.receive_json() == {"error": "missing jobId or unknown kind"}

    def test_unknown_job(self, api):
        with api.websocket_connect("/render-progress?kind=asset&jobId=nope") as ws:
            assert ws.receive_json() == {"error": "job_not_found"}
