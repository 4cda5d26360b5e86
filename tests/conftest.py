"""Shared fixtures for Encore tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from pydantic import SecretStr

from encore.config import AppConfig, SetlistFmConfig, SpotifyConfig, TicketmasterConfig
from encore.storage import Database


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all Encore runtime files to a temporary directory.

    Patches ``encore.config.get_base_dir`` so that nothing touches the real
    ``~/.encore/``.
    """
    fake_base = tmp_path / ".encore"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("encore.config.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    """Provide a fresh on-disk database for each test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture()
def config() -> AppConfig:
    """An AppConfig with every provider configured and no inter-artist delay."""
    cfg = AppConfig(
        spotify=SpotifyConfig(client_id="cid", client_secret=SecretStr("csecret")),
        ticketmaster=TicketmasterConfig(api_key=SecretStr("tm-key")),
        setlistfm=SetlistFmConfig(api_key=SecretStr("sfm-key")),
    )
    cfg.sync.inter_artist_delay_seconds = 0
    return cfg
