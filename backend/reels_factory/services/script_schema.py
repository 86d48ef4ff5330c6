"""Validation for generated concept and script JSON."""

from __future__ import annotations

from typing import Any

CONCEPT_FIELDS = ("title", "hook", "flow", "cta", "summary")
SHOT_FIELDS = ("description", "visual_prompt")


class ScriptSchemaError(ValueError):
    pass


def _require_list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    if not isinstance(value, list) or not value:
        raise ScriptSchemaError(f"{key} must be a non-empty array")
    return value


def _require_text(item: dict[str, Any], key: str, where: str) -> str:
    value = item.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ScriptSchemaError(f"{where}.{key} must be non-empty string")
    return value.strip()


def validate_refine_payload(payload: dict[str, Any]) -> tuple[str, list[str]]:
    refined = _require_text(payload, "refined_prompt", "refine")
    improvements = payload.get("improvements") or []
    if not isinstance(improvements, list):
        raise ScriptSchemaError("improvements must be an array")
    return refined, [str(item).strip() for item in improvements if str(item).strip()]


def validate_concepts_payload(payload: dict[str, Any], limit: int = 3) -> list[dict[str, Any]]:
    concepts: list[dict[str, Any]] = []
    for idx, item in enumerate(_require_list(payload, "concepts")[:limit], start=1):
        if not isinstance(item, dict):
            raise ScriptSchemaError(f"concepts[{idx - 1}] must be an object")
        concept = {key: _require_text(item, key, f"concepts[{idx - 1}]") for key in CONCEPT_FIELDS}
        concept["id"] = str(item.get("id") or f"concept-{idx}")
        concepts.append(concept)
    return concepts


def validate_scripts_payload(
    payload: dict[str, Any],
    *,
    clip_seconds: int = 8,
    approved: bool = False,
    limit: int = 5,
) -> list[dict[str, Any]]:
    scripts: list[dict[str, Any]] = []
    for video_index, item in enumerate(_require_list(payload, "scripts")[:limit]):
        where = f"scripts[{video_index}]"
        if not isinstance(item, dict):
            raise ScriptSchemaError(f"{where} must be an object")

        raw_shots = _require_list(item, "shots")
        default_shot_seconds = round(clip_seconds / len(raw_shots), 2)
        shots: list[dict[str, Any]] = []
        for shot_index, shot in enumerate(raw_shots):
            if not isinstance(shot, dict):
                raise ScriptSchemaError(f"{where}.shots[{shot_index}] must be an object")
            fields = {key: _require_text(shot, key, f"{where}.shots[{shot_index}]") for key in SHOT_FIELDS}
            duration = shot.get("duration")
            shots.append(
                {
                    "index": shot_index,
                    "duration": float(duration) if isinstance(duration, (int, float)) else default_shot_seconds,
                    **fields,
                    "use_uploaded_image": bool(shot.get("use_uploaded_image", False)),
                }
            )

        scripts.append(
            {
                "video_index": video_index,
                "duration": clip_seconds,
                "shots": shots,
                "narration": _require_text(item, "narration", where),
                "approved": approved,
            }
        )
    return scripts


def validate_research_payload(payload: dict[str, Any], categories: tuple[str, ...]) -> list[dict[str, Any]]:
    insights: list[dict[str, Any]] = []
    for item in _require_list(payload, "insights"):
        if not isinstance(item, dict):
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        category = str(item.get("category") or "general").strip().lower()
        insights.append(
            {
                "category": category if category in categories else "general",
                "content": content,
                "source": str(item.get("source") or "").strip(),
            }
        )
    if not insights:
        raise ScriptSchemaError("insights contained no usable entries")
    return insights


def combined_visual_prompt(script: dict[str, Any]) -> str:
    prompts = [str(shot.get("visual_prompt", "")).strip() for shot in script.get("shots", [])]
    return ". Then ".join(prompt.rstrip(".") for prompt in prompts if prompt)
