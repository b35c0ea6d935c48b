import uuid
from datetime import datetime, timedelta, timezone

import pytest

from agrigrow.app.db.schemas import GroupInDB, PostInDB, UserInDB

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_user():
    def _make(**overrides) -> UserInDB:
        data = {
            "id": uuid.uuid4(),
            "phone": "9876543210",
            "name": "Ramesh",
            "role": "farmer",
            "crops": ["wheat", "rice"],
            "location_state": "Punjab",
            "location_district": "Ludhiana",
            "experience_level": "intermediate",
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return UserInDB(**data)

    return _make


@pytest.fixture
def make_post():
    def _make(**overrides) -> PostInDB:
        data = {
            "id": uuid.uuid4(),
            "author_id": uuid.uuid4(),
            "content": "Yellow rust spotted on wheat leaves",
            "post_type": "question",
            "crops": ["wheat"],
            "location_state": "Punjab",
            "created_at": datetime.now(timezone.utc) - timedelta(hours=2),
        }
        data.update(overrides)
        return PostInDB(**data)

    return _make


@pytest.fixture
def make_group():
    def _make(**overrides) -> GroupInDB:
        data = {
            "id": uuid.uuid4(),
            "name": "Punjab Wheat Growers",
            "slug": "punjab-wheat-growers",
            "crops": ["wheat"],
            "region": "Punjab",
            "member_count": 10,
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return GroupInDB(**data)

    return _make
