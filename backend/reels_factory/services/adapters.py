"""Step adapters: structured inputs in, structured outputs out.

Each coroutine here wraps one generative service call (plus its prompt and
output validation). Failures surface as AdapterFailure, TimeoutFailure or
ScriptSchemaError; nothing in this module touches persistence or credits.
"""

from __future__ import annotations

import asyncio
import logging
import re
import textwrap
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from reels_factory.core.constants import RESEARCH_CATEGORIES
from reels_factory.schemas.config import AppConfig
from reels_factory.services.generative import (
    AdapterFailure,
    LLMClient,
    ResearchClient,
    SpeechClient,
    VideoClient,
)
from reels_factory.services.object_store import LocalObjectStore
from reels_factory.services.script_schema import (
    ScriptSchemaError,
    combined_visual_prompt,
    validate_concepts_payload,
    validate_refine_payload,
    validate_research_payload,
    validate_scripts_payload,
)
from reels_factory.services.subtitles import (
    clamp_cues,
    cues_to_dicts,
    even_cues,
    parse_cues,
    rebase_cues,
    render_vtt,
)

logger = logging.getLogger(__name__)

RESEARCH_ANGLES = (
    "trending keywords and hashtags",
    "customer pain points and frustrations",
    "marketing expressions, slang and memes that resonate",
    "unique selling points competitors emphasize",
)


@dataclass(frozen=True)
class RefineResult:
    refined_prompt: str
    improvements: list[str]


@dataclass(frozen=True)
class VideoResult:
    url: str
    duration: float
    operation_id: str


@dataclass(frozen=True)
class SpeechResult:
    audio_url: str
    audio_duration: float
    subtitle_cues: list[dict[str, Any]] = field(default_factory=list)
    subtitle_url: Optional[str] = None


def _build_refine_prompt(prompt: str, today: date) -> str:
    return textwrap.dedent(
        f"""
        Today is {today.isoformat()}.
        Rewrite the brief below into a production-ready prompt for a 40-second vertical reel
        made of five 8-second clips. Keep it concrete, visual and specific about the audience.
        If the brief depends on timely information (news, trends, events), anchor it to the
        last 7-30 days relative to today.

        Return a strict JSON object:
        refined_prompt: string
        improvements: string[]

        Brief:
        {prompt}
        """
    ).strip()


def _build_research_query(refined_prompt: str, angle: str) -> str:
    return f"For a short-form video about the following, research {angle}:\n{refined_prompt}"


def _build_insight_prompt(findings: list[str]) -> str:
    joined = "\n\n".join(findings)
    categories = " | ".join(RESEARCH_CATEGORIES)
    return textwrap.dedent(
        f"""
        Extract the most useful marketing insights from the research notes below.
        Return a strict JSON object:
        insights: [{{"category": "{categories}", "content": string, "source": string}}]

        Research notes:
        {joined}
        """
    ).strip()


def _build_concept_prompt(refined_prompt: str, insights: list[str], options: dict[str, Any]) -> str:
    insight_lines = "\n".join(f"- {item}" for item in insights) or "- (none selected)"
    return textwrap.dedent(
        f"""
        Propose 3 concepts for a 40-second reel made of 5 clips.
        Each concept: title (short), hook (first 3 seconds), flow (structure across 5 clips),
        cta (closing call to action), summary (one line).

        Return a strict JSON object:
        concepts: [{{"id": string, "title": string, "hook": string, "flow": string, "cta": string, "summary": string}}]

        Prompt: {refined_prompt}
        Target audience: {options.get("target", "")}
        Tone: {options.get("tone", "")}
        Purpose: {options.get("purpose", "")}

        Research insights:
        {insight_lines}
        """
    ).strip()


def _build_script_prompt(
    concept: dict[str, Any],
    refined_prompt: str,
    clip_seconds: int,
    image_count: int,
) -> str:
    image_note = (
        f"{image_count} reference image(s) are available; set use_uploaded_image on shots that should feature them."
        if image_count
        else "No reference images are available; set use_uploaded_image to false."
    )
    return textwrap.dedent(
        f"""
        Write 5 scripts, one per {clip_seconds}-second clip, that together tell the concept below.
        Each script has 2-4 shots and a voice-over narration that fits in {clip_seconds} seconds.
        {image_note}

        Return a strict JSON object:
        scripts: [{{"shots": [{{"duration": number, "description": string, "visual_prompt": string,
                   "use_uploaded_image": boolean}}], "narration": string}}]

        Concept title: {concept.get("title", "")}
        Hook: {concept.get("hook", "")}
        Flow: {concept.get("flow", "")}
        CTA: {concept.get("cta", "")}
        Overall prompt: {refined_prompt}
        """
    ).strip()


def _build_subtitle_prompt(narration: str, duration: float) -> str:
    return textwrap.dedent(
        f"""
        Split this narration into subtitle cues spanning {duration:.2f} seconds of audio.
        Keep each cue under 40 characters and in reading order.

        Return a strict JSON object:
        cues: [{{"start": number, "end": number, "text": string}}]

        Narration:
        {narration}
        """
    ).strip()


def split_findings(text: str) -> list[dict[str, Any]]:
    """Line-based fallback when the insight extraction returns nothing usable."""
    insights: list[dict[str, Any]] = []
    for line in text.splitlines():
        cleaned = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip()
        if len(cleaned) < 8:
            continue
        insights.append({"category": "general", "content": cleaned, "source": ""})
    return insights


class ReelsAdapters:
    def __init__(
        self,
        config: AppConfig,
        object_store: LocalObjectStore,
        *,
        llm: Optional[LLMClient] = None,
        research: Optional[ResearchClient] = None,
        video: Optional[VideoClient] = None,
        speech: Optional[SpeechClient] = None,
    ) -> None:
        self.config = config
        self.object_store = object_store
        self.llm = llm or LLMClient()
        self.research_client = research or ResearchClient()
        self.video = video or VideoClient()
        self.speech = speech or SpeechClient()

    async def refine_prompt(self, prompt: str) -> RefineResult:
        payload = await self.llm.generate_json(
            self.config.llm,
            system_prompt=self.config.llm.refine_system_prompt,
            user_prompt=_build_refine_prompt(prompt, date.today()),
        )
        refined, improvements = validate_refine_payload(payload)
        return RefineResult(refined_prompt=refined, improvements=improvements)

    async def research(self, refined_prompt: str) -> list[dict[str, Any]]:
        findings = await asyncio.gather(
            *(
                self.research_client.search(self.config.research, _build_research_query(refined_prompt, angle))
                for angle in RESEARCH_ANGLES
            )
        )
        findings = [text for text in findings if text.strip()]
        if not findings:
            raise AdapterFailure("research returned no findings")

        try:
            payload = await self.llm.generate_json(
                self.config.llm,
                system_prompt=self.config.llm.insight_system_prompt,
                user_prompt=_build_insight_prompt(findings),
                temperature=0.2,
            )
            insights = validate_research_payload(payload, RESEARCH_CATEGORIES)
        except (AdapterFailure, ScriptSchemaError) as exc:
            logger.warning("insight extraction failed, splitting findings by line: %s", exc)
            insights = [item for text in findings for item in split_findings(text)]
        if not insights:
            raise AdapterFailure("research produced no insights")

        return [{"id": f"insight-{idx}", **item} for idx, item in enumerate(insights, start=1)]

    async def concepts(
        self,
        refined_prompt: str,
        insights: list[str],
        options: dict[str, Any],
    ) -> list[dict[str, Any]]:
        payload = await self.llm.generate_json(
            self.config.llm,
            system_prompt=self.config.llm.concept_system_prompt,
            user_prompt=_build_concept_prompt(refined_prompt, insights, options),
            temperature=0.8,
        )
        return validate_concepts_payload(payload)

    async def scripts(
        self,
        concept: dict[str, Any],
        refined_prompt: str,
        uploaded_images: list[str],
    ) -> list[dict[str, Any]]:
        clip_seconds = self.config.video.clip_seconds
        payload = await self.llm.generate_json(
            self.config.llm,
            system_prompt=self.config.llm.script_system_prompt,
            user_prompt=_build_script_prompt(concept, refined_prompt, clip_seconds, len(uploaded_images)),
        )
        return validate_scripts_payload(
            payload,
            clip_seconds=clip_seconds,
            approved=self.config.pipeline.auto_approve_scripts,
        )

    async def synthesize_video(self, script: dict[str, Any], reference_images: list[str]) -> VideoResult:
        prompt = combined_visual_prompt(script)
        if not prompt:
            raise AdapterFailure(f"script {script.get('video_index')} has no visual prompts")
        wants_images = any(shot.get("use_uploaded_image") for shot in script.get("shots", []))
        task_id, _ = await self.video.submit_generation(
            self.config.video,
            prompt=prompt,
            duration_s=int(script.get("duration") or self.config.video.clip_seconds),
            reference_images=reference_images if wants_images else [],
        )
        result = await self.video.poll_until_done(self.config.video, task_id)
        return VideoResult(
            url=self.video.extract_video_url(result),
            duration=self.video.extract_duration(result) or float(script.get("duration") or 0),
            operation_id=task_id,
        )

    async def synthesize_speech(self, narration: str, clip_duration: float) -> SpeechResult:
        cfg = self.config.speech
        audio = await self.speech.synthesize(cfg, narration)
        if audio.url:
            audio_url = audio.url
        else:
            audio_url = await self.object_store.upload(audio.data or b"", audio.content_type, prefix="speech")
        audio_duration = audio.duration or round(len(narration) / cfg.chars_per_second, 2)

        span = min(audio_duration, clip_duration) if clip_duration > 0 else audio_duration
        try:
            payload = await self.llm.generate_json(
                self.config.llm,
                system_prompt=self.config.llm.subtitle_system_prompt,
                user_prompt=_build_subtitle_prompt(narration, span),
                temperature=0.2,
            )
            cues = clamp_cues(rebase_cues(parse_cues(payload.get("cues") or [])), span)
        except AdapterFailure as exc:
            logger.warning("subtitle timing failed, spreading cues evenly: %s", exc)
            cues = []
        if not cues:
            cues = even_cues(narration, span)

        subtitle_url = None
        if cues:
            subtitle_url = await self.object_store.upload(
                render_vtt(cues).encode("utf-8"), "text/vtt", prefix="subtitles"
            )
        return SpeechResult(
            audio_url=audio_url,
            audio_duration=audio_duration,
            subtitle_cues=cues_to_dicts(cues),
            subtitle_url=subtitle_url,
        )
