# backend/zephyr_worker/models.py
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    POST_PROCESSING = "post_processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class User(SQLModel, table=True):
    __tablename__ = "user"

    id: str = Field(primary_key=True, nullable=False)
    tokens: int = Field(default=25, nullable=False)
    bonus_tokens: int = Field(default=0, nullable=False)


class RotationJob(SQLModel, table=True):
    __tablename__ = "rotation_job"

    id: str = Field(primary_key=True, nullable=False)
    user_id: str = Field(nullable=False, index=True)
    status: str = Field(default=JobStatus.PENDING, nullable=False)  # pending | processing | completed | failed
    progress: int = Field(default=0, nullable=False)                # 0 - 100
    current_stage: Optional[str] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    input_image_url: Optional[str] = Field(default=None)
    prompt: Optional[str] = Field(default=None)
    mode: str = Field(default="regular", nullable=False)            # regular | pixel_art
    pixel_resolution: Optional[int] = Field(default=None)
    color_count: Optional[int] = Field(default=None)
    rotation_n: Optional[str] = Field(default=None)
    rotation_ne: Optional[str] = Field(default=None)
    rotation_e: Optional[str] = Field(default=None)
    rotation_se: Optional[str] = Field(default=None)
    rotation_s: Optional[str] = Field(default=None)
    rotation_sw: Optional[str] = Field(default=None)
    rotation_w: Optional[str] = Field(default=None)
    rotation_nw: Optional[str] = Field(default=None)
    token_cost: int = Field(nullable=False)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)


class AssetGeneration(SQLModel, table=True):
    __tablename__ = "asset_generation"

    id: str = Field(primary_key=True, nullable=False)
    visible_id: str = Field(nullable=False)
    user_id: str = Field(nullable=False, index=True)
    asset_type: str = Field(nullable=False)                          # sprite | pixel_art | texture
    prompt: str = Field(nullable=False)
    negative_prompt: Optional[str] = Field(default=None)
    width: int = Field(default=512, nullable=False)
    height: int = Field(default=512, nullable=False)
    status: str = Field(default=JobStatus.PENDING, nullable=False)
    progress: int = Field(default=0, nullable=False)
    current_stage: Optional[str] = Field(default=None)
    result_urls: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    seed: Optional[int] = Field(default=None)
    token_cost: int = Field(nullable=False)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)


class TextureGeneration(SQLModel, table=True):
    __tablename__ = "texture_generation"

    id: str = Field(primary_key=True, nullable=False)
    user_id: str = Field(nullable=False, index=True)
    prompt: str = Field(nullable=False)
    status: str = Field(default=JobStatus.PENDING, nullable=False)
    progress: int = Field(default=0, nullable=False)
    current_stage: Optional[str] = Field(default=None)
    basecolor_url: Optional[str] = Field(default=None)
    normal_url: Optional[str] = Field(default=None)
    roughness_url: Optional[str] = Field(default=None)
    metallic_url: Optional[str] = Field(default=None)
    height_url: Optional[str] = Field(default=None)
    seed: Optional[int] = Field(default=None)
    token_cost: int = Field(nullable=False)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)


# job kind as used in URLs -> table
JOB_MODELS = {
    "rotation": RotationJob,
    "asset": AssetGeneration,
    "texture": TextureGeneration,
}
