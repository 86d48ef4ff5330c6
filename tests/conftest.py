from __future__ import annotations

import asyncio
import os
import tempfile

# Point the app at a throwaway runtime before anything imports the settings.
os.environ.setdefault("REELS_FACTORY_RUNTIME", tempfile.mkdtemp(prefix="reels-factory-tests-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from reels_factory.db.base import Base
from reels_factory.models import CreditAccount, LedgerEntry, Project, ProjectEvent, SubJob  # noqa: F401
from reels_factory.schemas.config import AppConfig, PipelineConfig
from reels_factory.services import ledger, repository
from reels_factory.services.adapters import RefineResult, SpeechResult, VideoResult
from reels_factory.services.generative import AdapterFailure
from reels_factory.services.media import ComposeResult
from reels_factory.services.pipeline import StepMachine


class FakeAdapters:
    """Deterministic stand-in for ReelsAdapters."""

    def __init__(self) -> None:
        self.refine_error: Exception | None = None
        self.video_failures: set[int] = set()
        self.speech_failures: set[str] = set()
        self.video_delay = 0.0
        self.video_delays: dict[int, float] = {}
        self.video_prefix = ""
        self.concept_insights: list[str] = []
        self.video_calls: list[int] = []
        self.script_count = 3

    async def refine_prompt(self, prompt: str) -> RefineResult:
        if self.refine_error is not None:
            raise self.refine_error
        return RefineResult(refined_prompt=f"refined: {prompt}", improvements=["named the audience"])

    async def research(self, refined_prompt: str) -> list[dict]:
        return [
            {"id": "insight-1", "category": "trend", "content": "Unboxing clips trend up", "source": ""},
            {"id": "insight-2", "category": "painpoint", "content": "Cables tangle in bags", "source": ""},
        ]

    async def concepts(self, refined_prompt: str, insights: list[str], options: dict) -> list[dict]:
        self.concept_insights = list(insights)
        return [
            {"id": f"concept-{idx}", "title": f"Concept {idx}", "hook": "h", "flow": "f", "cta": "c", "summary": "s"}
            for idx in (1, 2)
        ]

    async def scripts(self, concept: dict, refined_prompt: str, uploaded_images: list[str]) -> list[dict]:
        return [
            {
                "video_index": idx,
                "duration": 8,
                "shots": [
                    {
                        "index": 0,
                        "duration": 8.0,
                        "description": "desk",
                        "visual_prompt": f"scene {idx}",
                        "use_uploaded_image": False,
                    }
                ],
                "narration": f"narration {idx}",
                "approved": False,
            }
            for idx in range(self.script_count)
        ]

    async def synthesize_video(self, script: dict, reference_images: list[str]) -> VideoResult:
        idx = script["video_index"]
        self.video_calls.append(idx)
        delay = self.video_delays.get(idx, self.video_delay)
        if delay:
            await asyncio.sleep(delay)
        if idx in self.video_failures:
            raise AdapterFailure(f"clip {idx} rejected")
        url = f"https://cdn.test/{self.video_prefix}clip-{idx}.mp4"
        return VideoResult(url=url, duration=8.0, operation_id=f"op-{idx}")

    async def synthesize_speech(self, narration: str, clip_duration: float) -> SpeechResult:
        if narration in self.speech_failures:
            raise AdapterFailure(f"voice failed for {narration}")
        return SpeechResult(
            audio_url=f"https://cdn.test/{narration.replace(' ', '-')}.mp3",
            audio_duration=6.0,
            subtitle_cues=[{"index": 1, "start": 0.0, "end": 6.0, "text": narration}],
        )


class FakeComposer:
    def __init__(self) -> None:
        self.calls: list[list] = []

    async def compose(self, clips, *, label: str) -> ComposeResult:
        self.calls.append(list(clips))
        return ComposeResult(
            artifact_url=f"http://127.0.0.1:8000/artifacts/final/{label}.mp4",
            duration_seconds=8.0 * len(clips),
            clip_count=len(clips),
        )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.sqlite3'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def fake_adapters() -> FakeAdapters:
    return FakeAdapters()


@pytest.fixture
def fake_composer() -> FakeComposer:
    return FakeComposer()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(pipeline=PipelineConfig(cancel_poll_interval_s=0.05))


@pytest.fixture
def machine(session_factory, app_config, fake_adapters, fake_composer) -> StepMachine:
    return StepMachine(
        session_factory=session_factory,
        config=app_config,
        adapters=fake_adapters,
        composer_factory=lambda: fake_composer,
    )


@pytest.fixture
def make_project(session_factory):
    def _make(project_id: str = "p1", user_id: str = "u1", credits: int = 1000, images: list[str] | None = None):
        with session_factory() as db:
            ledger.ensure_account(db, user_id)
            if credits > 0:
                ledger.grant(db, user_id, credits, reason="test credits")
            repository.create_project(
                db,
                project_id=project_id,
                user_id=user_id,
                title="Travel charger",
                prompt="A foldable travel charger for commuters",
                options={"target": "commuters", "tone": "playful", "purpose": "launch"},
                uploaded_images=images or [],
            )
            db.commit()
        return project_id

    return _make
