# backend/zephyr_worker/config.py
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from .graph import NODE_WEIGHTS, Workflow

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_PATH = os.path.join(BASE_DIR, "database.db")

WORKFLOW_NAMES = {
    # job kind -> workflow file names to try, in order
    "rotate": ("regular", "workflow"),
    "sprite": ("sprite",),
    "texture": ("texture",),
}


@dataclass
class Settings:
    comfyui_url: str = "http://127.0.0.1:8188"
    # event socket, derived from comfyui_url unless set
    ws_url: Optional[str] = None
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    blob_token: Optional[str] = None
    blob_api_url: str = "https://blob.vercel-storage.com"
    workflow_dir: str = "./workflows"
    storage_dir: str = os.path.join(BASE_DIR, "storage")
    public_base_url: str = "http://127.0.0.1:8000"
    poll_interval: float = 2.0
    health_interval: float = 5.0
    log_level: str = "INFO"
    node_weights: Dict[str, int] = field(default_factory=lambda: dict(NODE_WEIGHTS))

    @property
    def comfyui_ws_url(self) -> str:
        if self.ws_url:
            return self.ws_url
        return self.comfyui_url.replace("https://", "wss://").replace("http://", "ws://")

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.environ
        defaults = cls()
        return cls(
            comfyui_url=env.get("COMFYUI_URL", defaults.comfyui_url).rstrip("/"),
            ws_url=(env.get("COMFYUI_WS_URL") or "").rstrip("/") or None,
            database_url=env.get("DATABASE_URL") or env.get("POSTGRES_URL") or defaults.database_url,
            blob_token=env.get("BLOB_READ_WRITE_TOKEN") or None,
            blob_api_url=env.get("BLOB_API_URL", defaults.blob_api_url).rstrip("/"),
            workflow_dir=env.get("WORKFLOW_DIR", defaults.workflow_dir),
            storage_dir=env.get("STORAGE_DIR", defaults.storage_dir),
            public_base_url=env.get("PUBLIC_BASE_URL", defaults.public_base_url).rstrip("/"),
            poll_interval=float(env.get("POLL_INTERVAL", defaults.poll_interval)),
            health_interval=float(env.get("HEALTH_INTERVAL", defaults.health_interval)),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
            node_weights=parse_node_weights(env.get("NODE_WEIGHTS")),
        )


def parse_node_weights(raw: Optional[str]) -> Dict[str, int]:
    """NODE_WEIGHTS is a JSON object merged over the built-in table."""
    weights = dict(NODE_WEIGHTS)
    if not raw:
        return weights
    try:
        overrides = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring NODE_WEIGHTS, not valid JSON")
        return weights
    if not isinstance(overrides, dict):
        logger.warning("Ignoring NODE_WEIGHTS, expected a JSON object")
        return weights
    for class_type, weight in overrides.items():
        try:
            weight = int(weight)
        except (TypeError, ValueError):
            logger.warning("Ignoring weight for %s: %r", class_type, weight)
            continue
        if weight > 0:
            weights[class_type] = weight
    return weights


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_workflow(workflow_dir: str, name: str) -> Optional[Workflow]:
    paths = [
        os.path.join(workflow_dir, f"{name}.json"),
        os.path.join(workflow_dir, f"workflow_{name}.json"),
        os.path.join(workflow_dir, f"rotate_{name}.json"),
    ]
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                workflow = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to parse %s: %s", path, e)
            continue
        if not isinstance(workflow, dict):
            logger.error("Failed to parse %s: expected a JSON object", path)
            continue
        logger.info("Loaded workflow: %s from %s", name, path)
        return workflow
    return None


def load_workflows(settings: Settings) -> Dict[str, Optional[Workflow]]:
    workflows: Dict[str, Optional[Workflow]] = {}
    for kind, names in WORKFLOW_NAMES.items():
        workflows[kind] = None
        for name in names:
            workflow = load_workflow(settings.workflow_dir, name)
            if workflow is not None:
                workflows[kind] = workflow
                break
    return workflows
