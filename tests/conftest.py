from __future__ import annotations

import pytest

from helpers import FakeApi, room_info


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi({1001: room_info()})
