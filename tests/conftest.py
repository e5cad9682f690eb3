"""Shared fixtures for the watch party tests."""
import asyncio

import pytest

from party.config import PartyConfig


async def settle(seconds: float = 0.05):
    """Let transports, timers and the mailbox consumer catch up."""
    await asyncio.sleep(seconds)


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def fast_config():
    """Protocol timings shrunk so end-to-end scenarios run in milliseconds."""
    return PartyConfig(
        heartbeat_interval_ms=20,
        liveness_timeout_ms=80,
        health_check_interval_ms=40,
        sync_interval_ms=5000,
        debounce_ms=700,
        seek_settle_ms=5,
        seek_followup_ms=10,
        redirect_delay_ms=10,
        notification_ms=100,
        reconnect_base_ms=10,
        reconnect_max_ms=300,
    )
