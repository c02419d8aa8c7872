"""Shared fixtures for the worker tests."""

import pytest
from sqlmodel import Session

from zephyr_worker.db import init_db, make_engine
from zephyr_worker.models import User


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def user(engine):
    with Session(engine) as session:
        user = User(id="user-1", tokens=10)
        session.add(user)
        session.commit()
        session.refresh(user)
    return user


@pytest.fixture
def sample_workflow():
    """Three-node graph: two light nodes around one heavy sampler."""
    return {
        "A": {"class_type": "TypeX", "inputs": {}},
        "B": {"class_type": "TypeY", "inputs": {}},
        "C": {"class_type": "TypeX", "inputs": {}},
    }


@pytest.fixture
def sample_weights():
    return {"TypeX": 10, "TypeY": 30}
