from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from server.auth import TokenVerifier
from server.database import create_db_engine, init_db
from server.http_api import SkillSwapApi
from server.models import ClassRequest
from server.room_registry import RoomRegistry


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'skillswap.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier("test-secret")


@pytest.fixture
def auth(verifier):
    def headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {verifier.issue(user_id)}"}

    return headers


@pytest.fixture
def api(engine, verifier) -> SkillSwapApi:
    return SkillSwapApi(engine, verifier, registry=RoomRegistry(grace_seconds=0.05))


@pytest.fixture
def client(api):
    with TestClient(api.app) as client:
        yield client


@pytest.fixture
def make_request(engine):
    def factory(**overrides) -> str:
        values = {
            "from_user_id": "learner",
            "to_user_id": "teacher",
            "type": "exchange",
            "classes": 4,
            "proposed_slots": ["2024-01-01T10:00:00+00:00"],
            "status": "accepted",
            "selected_slot": datetime(2024, 1, 1, 10, tzinfo=timezone.utc),
        }
        values.update(overrides)
        request = ClassRequest(**values)
        request_id = request.id
        with Session(engine) as session:
            session.add(request)
            session.commit()
        return request_id

    return factory
