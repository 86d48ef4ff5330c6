"""Pydantic schemas for persisted app configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from reels_factory.core.constants import DEFAULT_STEP_COSTS, TOTAL_STEPS


class LLMConfig(BaseModel):
    base_url: str = "https://api.openai.com"
    chat_path: str = "/v1/chat/completions"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_s: int = 120
    temperature: float = 0.7
    refine_system_prompt: str = (
        "You are a short-form video marketing strategist. Rewrite the user's product brief "
        "into a precise, production-ready prompt. Return JSON."
    )
    insight_system_prompt: str = (
        "You condense market research notes into categorized marketing insights. Return JSON only."
    )
    concept_system_prompt: str = (
        "You are a creative director for 40-second vertical ads. Return JSON only."
    )
    script_system_prompt: str = (
        "You are a storyboard writer for 8-second vertical video clips. Return JSON only."
    )
    subtitle_system_prompt: str = (
        "You split voice-over narration into timed subtitle cues. Return JSON only."
    )


class ResearchConfig(BaseModel):
    base_url: str = "https://api.perplexity.ai"
    chat_path: str = "/chat/completions"
    api_key: str = ""
    model: str = "sonar"
    timeout_s: int = 120
    system_prompt: str = (
        "You are a market researcher for short-form social video. Answer with concrete, "
        "current findings as a bulleted list."
    )


class VideoConfig(BaseModel):
    base_url: str = "https://ark.cn-beijing.volces.com"
    submit_path: str = "/api/v3/contents/generations/tasks"
    api_key: str = ""
    model: str = "seedance-1-0-pro-250528"
    aspect_ratio: str = "9:16"
    clip_seconds: int = 8
    timeout_s: int = 600
    poll_interval_s: int = 5


class SpeechConfig(BaseModel):
    base_url: str = "https://api.openai.com"
    speech_path: str = "/v1/audio/speech"
    api_key: str = ""
    model: str = "gpt-4o-mini-tts"
    voice: str = "alloy"
    timeout_s: int = 120
    chars_per_second: float = 3.5


class StorageConfig(BaseModel):
    public_base_url: str = "http://127.0.0.1:8000/artifacts"
    download_timeout_s: int = 300


class PipelineConfig(BaseModel):
    item_timeout_s: int = 300
    step_timeout_s: int = 300
    compose_timeout_s: int = 1800
    cancel_poll_interval_s: float = 2.0
    heartbeat_interval_s: float = 15.0
    auto_approve_scripts: bool = False
    keep_compose_workspace: bool = False
    subtitle_font: str = "Noto Sans CJK KR"
    subtitle_font_size: int = 18
    log_level: str = "INFO"


class CreditsConfig(BaseModel):
    step_costs: dict[int, int] = Field(
        default_factory=lambda: {int(step): cost for step, cost in DEFAULT_STEP_COSTS.items()}
    )
    signup_grant: int = 100
    admin_user_ids: list[str] = Field(default_factory=list)

    @field_validator("step_costs")
    @classmethod
    def _check_step_costs(cls, value: dict[int, int]) -> dict[int, int]:
        merged = {int(step): cost for step, cost in DEFAULT_STEP_COSTS.items()}
        for step, cost in value.items():
            if not 0 <= step < TOTAL_STEPS:
                raise ValueError(f"unknown step id in step_costs: {step}")
            if cost < 0:
                raise ValueError(f"step cost must be >= 0 (step {step})")
            merged[step] = cost
        return merged

    def cost_of(self, step: int) -> int:
        return int(self.step_costs.get(int(step), 0))


class AppConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    research: ResearchConfig = Field(default_factory=ResearchConfig)
    video: VideoConfig = Field(default_factory=VideoConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    credits: CreditsConfig = Field(default_factory=CreditsConfig)
