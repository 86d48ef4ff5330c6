from __future__ import annotations

from pathlib import Path

import pytest

from reels_factory.schemas.config import AppConfig, CreditsConfig
from reels_factory.services.config_store import load_config, redact_config, save_config
from reels_factory.services.object_store import LocalObjectStore, ObjectStoreError


@pytest.mark.anyio
async def test_object_store_publishes_under_public_url(tmp_path: Path) -> None:
    store = LocalObjectStore(tmp_path, "http://127.0.0.1:8000/artifacts/")

    url = await store.upload(b"mp4", "video/mp4", name="../escape", prefix="final")

    assert url == "http://127.0.0.1:8000/artifacts/final/escape.mp4"
    assert (tmp_path / "final" / "escape.mp4").read_bytes() == b"mp4"

    generated = await store.upload(b"mp3", "audio/mpeg")
    assert generated.endswith(".mp3")

    with pytest.raises(ObjectStoreError):
        await store.upload(b"", "video/mp4")
    with pytest.raises(ObjectStoreError):
        await store.upload_file(tmp_path / "missing.mp4", "video/mp4")

    assert store.path_for("final/escape.mp4") == (tmp_path / "final" / "escape.mp4").resolve()
    with pytest.raises(ObjectStoreError):
        store.path_for("../../etc/passwd")


def test_config_roundtrip_and_redaction(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    assert load_config(path) == AppConfig()

    config = AppConfig()
    config.llm.api_key = "sk-1234567890"
    config.credits.step_costs = {4: 40}
    save_config(config, path)

    loaded = load_config(path)
    assert loaded.llm.api_key == "sk-1234567890"
    assert loaded.credits.cost_of(4) == 40
    assert loaded.credits.cost_of(6) == 10

    redacted = redact_config(loaded)
    assert redacted.llm.api_key == "sk-1****"
    assert redacted.speech.api_key == ""


def test_step_costs_are_validated() -> None:
    assert CreditsConfig(step_costs={0: 0}).cost_of(0) == 0
    with pytest.raises(ValueError):
        CreditsConfig(step_costs={9: 1})
    with pytest.raises(ValueError):
        CreditsConfig(step_costs={2: -1})
