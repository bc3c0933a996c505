"""Root pytest configuration for all tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from fsixbridge.config import reset_config
from fsixbridge.rpc import MessageChannel
from fsixbridge.session import Session

from tests.helpers import FakeDaemon, channel_with_daemon


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Keep user config and FSIX_* variables out of tests."""
    for name in ("FSIX_COMMAND", "FSIX_TRANSPORT", "FSIX_LOG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture
async def pair() -> AsyncIterator[tuple[MessageChannel, FakeDaemon]]:
    """A started channel and the fake daemon on its other end."""
    channel, daemon = await channel_with_daemon()
    channel.start()
    yield channel, daemon
    await channel.close()
    await daemon.close()


@pytest_asyncio.fixture
async def session_pair() -> AsyncIterator[tuple[Session, FakeDaemon]]:
    """A handshake-completed session without a process behind it."""
    channel, daemon = await channel_with_daemon()
    session = Session(channel)
    await daemon.initialized_ok()
    failure = await session.initialize(timeout=2.0)
    assert failure is None
    yield session, daemon
    await session.dispose()
    await daemon.close()

