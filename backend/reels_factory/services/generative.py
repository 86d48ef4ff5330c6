"""Async HTTP clients for the LLM, research, video and speech services."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from reels_factory.schemas.config import LLMConfig, ResearchConfig, SpeechConfig, VideoConfig

logger = logging.getLogger(__name__)


class AdapterFailure(RuntimeError):
    pass


class TimeoutFailure(AdapterFailure):
    pass


def _deep_find(data: Any, keys: set[str]) -> list[Any]:
    found: list[Any] = []
    if isinstance(data, dict):
        for k, v in data.items():
            if k in keys:
                found.append(v)
            found.extend(_deep_find(v, keys))
    elif isinstance(data, list):
        for item in data:
            found.extend(_deep_find(item, keys))
    return found


def _first_string(values: list[Any]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_number(values: list[Any]) -> Optional[float]:
    for value in values:
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value > 0:
            return float(value)
    return None


def parse_llm_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            message = first.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str):
                    return content.strip()
            content = first.get("content")
            if isinstance(content, str):
                return content.strip()

    output_text = payload.get("output_text")
    if isinstance(output_text, str):
        return output_text.strip()

    candidates = _deep_find(payload, {"text", "content"})
    content = _first_string(candidates)
    return content or ""


def extract_first_json_object(text: str) -> dict[str, Any]:
    text = text.strip()
    if not text:
        raise ValueError("empty llm output")

    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text).strip()
        text = re.sub(r"```$", "", text).strip()

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not match:
        raise ValueError("no json object found in llm output")

    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("llm output json must be object")
    return parsed


def _bearer(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}


class LLMClient:
    async def generate_text(
        self,
        cfg: LLMConfig,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
    ) -> tuple[str, dict[str, Any]]:
        if not cfg.api_key:
            raise AdapterFailure("LLM api_key is required")
        url = f"{cfg.base_url.rstrip('/')}{cfg.chat_path}"
        payload = {
            "model": cfg.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": cfg.temperature if temperature is None else temperature,
        }

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_s) as client:
                resp = await client.post(url, headers=_bearer(cfg.api_key), json=payload)
        except httpx.TimeoutException as exc:
            raise TimeoutFailure(f"LLM request timed out after {cfg.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise AdapterFailure(f"LLM request error: {exc}") from exc
        if resp.status_code >= 400:
            raise AdapterFailure(f"LLM request failed: {resp.status_code} {resp.text[:500]}")

        payload_json = resp.json()
        return parse_llm_text(payload_json), payload_json

    async def generate_json(
        self,
        cfg: LLMConfig,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        text, _ = await self.generate_text(
            cfg,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
        )
        try:
            return extract_first_json_object(text)
        except ValueError as exc:
            raise AdapterFailure(f"LLM returned unparseable JSON: {exc}") from exc


class ResearchClient:
    async def search(self, cfg: ResearchConfig, query: str) -> str:
        if not cfg.api_key:
            raise AdapterFailure("research api_key is required")
        url = f"{cfg.base_url.rstrip('/')}{cfg.chat_path}"
        payload = {
            "model": cfg.model,
            "messages": [
                {"role": "system", "content": cfg.system_prompt},
                {"role": "user", "content": query},
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_s) as client:
                resp = await client.post(url, headers=_bearer(cfg.api_key), json=payload)
        except httpx.TimeoutException as exc:
            raise TimeoutFailure(f"research request timed out after {cfg.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise AdapterFailure(f"research request error: {exc}") from exc
        if resp.status_code >= 400:
            raise AdapterFailure(f"research request failed: {resp.status_code} {resp.text[:500]}")
        return parse_llm_text(resp.json())


class VideoClient:
    @staticmethod
    def _submit_payload_candidates(
        cfg: VideoConfig,
        *,
        prompt: str,
        duration_s: int,
        reference_images: list[str],
    ) -> list[dict[str, Any]]:
        duration = max(1, int(duration_s))
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image_url in reference_images:
            content.append({"type": "image_url", "image_url": {"url": image_url}})

        # Content schema first; the flat prompt shape is the final fallback.
        return [
            {
                "model": cfg.model,
                "content": content,
                "duration": duration,
                "ratio": cfg.aspect_ratio,
            },
            {
                "model": cfg.model,
                "content": content,
                "duration": duration,
            },
            {
                "model": cfg.model,
                "prompt": prompt,
                "duration": duration,
                "aspect_ratio": cfg.aspect_ratio,
            },
        ]

    async def submit_generation(
        self,
        cfg: VideoConfig,
        *,
        prompt: str,
        duration_s: int,
        reference_images: Optional[list[str]] = None,
    ) -> tuple[str, dict[str, Any]]:
        if not cfg.api_key:
            raise AdapterFailure("video api_key is required")
        url = f"{cfg.base_url.rstrip('/')}{cfg.submit_path}"
        attempt_errors: list[str] = []
        payload_candidates = self._submit_payload_candidates(
            cfg,
            prompt=prompt,
            duration_s=duration_s,
            reference_images=reference_images or [],
        )

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_s) as client:
                for idx, payload in enumerate(payload_candidates, start=1):
                    resp = await client.post(url, headers=_bearer(cfg.api_key), json=payload)
                    if resp.status_code >= 400:
                        attempt_errors.append(f"attempt={idx}:http={resp.status_code}:msg={resp.text[:220]}")
                        # Parameter-shape mismatch can be retried with next payload template.
                        if resp.status_code in (400, 422):
                            continue
                        raise AdapterFailure(f"video submit failed: {resp.status_code} {resp.text[:500]}")

                    data = resp.json()
                    task_id = _first_string(_deep_find(data, {"task_id", "id", "operation"}))
                    if task_id:
                        return task_id, data

                    attempt_errors.append(f"attempt={idx}:http={resp.status_code}:missing_task_id")
        except httpx.TimeoutException as exc:
            raise TimeoutFailure(f"video submit timed out after {cfg.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise AdapterFailure(f"video submit error: {exc}") from exc

        details = " | ".join(attempt_errors)[:1200]
        raise AdapterFailure(f"video submit failed after payload fallbacks. {details}")

    async def poll_until_done(
        self,
        cfg: VideoConfig,
        task_id: str,
        timeout_s: Optional[int] = None,
    ) -> dict[str, Any]:
        url = f"{cfg.base_url.rstrip('/')}{cfg.submit_path}/{task_id}"

        effective_timeout = timeout_s or cfg.timeout_s
        deadline = time.monotonic() + effective_timeout
        interval = max(1, int(cfg.poll_interval_s))

        async with httpx.AsyncClient(timeout=max(30, interval + 10)) as client:
            while True:
                try:
                    resp = await client.get(url, headers=_bearer(cfg.api_key))
                except httpx.HTTPError as exc:
                    raise AdapterFailure(f"video polling error: {exc}") from exc
                if resp.status_code >= 400:
                    raise AdapterFailure(f"video polling failed: {resp.status_code} {resp.text[:500]}")

                payload = resp.json()
                status = (_first_string(_deep_find(payload, {"status", "state"})) or "").lower()

                if status in {"succeeded", "success", "completed", "done"}:
                    return payload
                if status in {"failed", "error", "canceled", "cancelled"}:
                    reason = _first_string(_deep_find(payload, {"message", "reason"})) or "no reason given"
                    raise AdapterFailure(f"video generation failed: status={status} ({reason})")

                if time.monotonic() > deadline:
                    raise TimeoutFailure(f"video generation timed out after {effective_timeout}s")

                await asyncio.sleep(interval)

    def extract_video_url(self, payload: dict[str, Any]) -> str:
        url_candidates = _deep_find(payload, {"video_url", "url", "output_url", "file_url", "download_url", "uri"})
        url_value = _first_string(url_candidates)
        if not url_value:
            raise AdapterFailure("video result missing downloadable URL")
        return url_value

    def extract_duration(self, payload: dict[str, Any]) -> Optional[float]:
        return _first_number(_deep_find(payload, {"duration", "duration_s", "video_duration"}))


@dataclass(frozen=True)
class SpeechAudio:
    data: Optional[bytes]
    url: Optional[str]
    content_type: str
    duration: Optional[float]


class SpeechClient:
    async def synthesize(self, cfg: SpeechConfig, text: str) -> SpeechAudio:
        """Render narration to audio; the service answers with raw audio or JSON."""
        if not cfg.api_key:
            raise AdapterFailure("speech api_key is required")
        url = f"{cfg.base_url.rstrip('/')}{cfg.speech_path}"
        payload = {"model": cfg.model, "voice": cfg.voice, "input": text, "response_format": "mp3"}

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout_s) as client:
                resp = await client.post(url, headers=_bearer(cfg.api_key), json=payload)
        except httpx.TimeoutException as exc:
            raise TimeoutFailure(f"speech request timed out after {cfg.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise AdapterFailure(f"speech request error: {exc}") from exc
        if resp.status_code >= 400:
            raise AdapterFailure(f"speech request failed: {resp.status_code} {resp.text[:500]}")

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type == "application/json":
            data = resp.json()
            audio_url = _first_string(_deep_find(data, {"audio_url", "url"}))
            if not audio_url:
                raise AdapterFailure("speech result missing audio URL")
            return SpeechAudio(
                data=None,
                url=audio_url,
                content_type="audio/mpeg",
                duration=_first_number(_deep_find(data, {"duration", "audio_duration"})),
            )

        if not resp.content:
            raise AdapterFailure("speech result is empty")
        return SpeechAudio(
            data=resp.content,
            url=None,
            content_type=content_type or "audio/mpeg",
            duration=None,
        )
