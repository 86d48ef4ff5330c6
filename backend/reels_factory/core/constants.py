"""Project-wide constants and state definitions."""

from __future__ import annotations

from enum import Enum, IntEnum


class Step(IntEnum):
    REFINE = 0
    RESEARCH = 1
    CONCEPT = 2
    SCRIPT = 3
    VIDEO = 4
    SPEECH = 5
    COMPOSE = 6


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class StepState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerDirection(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    GRANT = "grant"


STEP_NAMES = {
    Step.REFINE: "prompt refinement",
    Step.RESEARCH: "research",
    Step.CONCEPT: "concept planning",
    Step.SCRIPT: "script writing",
    Step.VIDEO: "video synthesis",
    Step.SPEECH: "speech and subtitles",
    Step.COMPOSE: "final composition",
}

TOTAL_STEPS = len(Step)

# current_step value once the terminal step has completed.
PIPELINE_DONE = TOTAL_STEPS

FANOUT_STEPS = {Step.VIDEO, Step.SPEECH}

BACKGROUND_STEPS = {Step.VIDEO, Step.SPEECH, Step.COMPOSE}

# Item key used for the single charge of a non fan-out step.
FLAT_ITEM_KEY = "step"

DEFAULT_STEP_COSTS = {
    Step.REFINE: 1,
    Step.RESEARCH: 2,
    Step.CONCEPT: 1,
    Step.SCRIPT: 3,
    Step.VIDEO: 50,
    Step.SPEECH: 2,
    Step.COMPOSE: 10,
}

RESEARCH_CATEGORIES = ("keyword", "painpoint", "trend", "usp", "expression", "general")
