from __future__ import annotations

import pytest

from roomrelay.config import RelayConfig
from roomrelay.service import RelayService

TOKEN = "family-2025"
ROOMS = ("family", "emergency", "vacant-1")


def make_config(**overrides) -> RelayConfig:
    values = {
        "tokens": (TOKEN,),
        "rooms": ROOMS,
        "heartbeat_s": 0.0,
    }
    values.update(overrides)
    return RelayConfig(**values)


def chat_envelope(mid: str = "m1", room: str = "family", body: str = "hi", **extra) -> dict:
    env = {"id": mid, "room": room, "sender": "laptop", "createdAt": 1700000000000, "body": body}
    env.update(extra)
    return env


@pytest.fixture
def config() -> RelayConfig:
    return make_config()


@pytest.fixture
def service(config) -> RelayService:
    return RelayService(config)
