"""
Generation Job State

Defines the job record, its typed working variables, the step log entry
and the ledger entry. The orchestrator is the only writer of a job's
status and working variables while the job is non-terminal.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from core.errors import JobImmutableError, PipelineError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class JobMode(str, Enum):
    """What a job produces."""
    STILL = "still"
    VIDEO = "video"


class JobStatus(str, Enum):
    """Pipeline states, in order."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SCANNING = "scanning"
    PROMPTING = "prompting"
    GENERATING = "generating"
    POSTSCAN = "postscan"
    DONE = "done"
    SUGGESTED = "suggested"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.SUGGESTED, JobStatus.ERROR})

# Forward-only transitions. ERROR is reachable from every non-terminal state.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.SCANNING, JobStatus.PROMPTING}),
    JobStatus.SCANNING: frozenset({JobStatus.PROMPTING}),
    JobStatus.PROMPTING: frozenset({JobStatus.GENERATING, JobStatus.SUGGESTED}),
    JobStatus.GENERATING: frozenset({JobStatus.POSTSCAN, JobStatus.DONE}),
    JobStatus.POSTSCAN: frozenset({JobStatus.DONE}),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether current -> target is a legal forward move."""
    if current.is_terminal:
        return False
    if target == JobStatus.ERROR:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


# ============================================================================
# Working variables
# ============================================================================

class _Section:
    """Mixin for working-variable sub-sections."""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]):
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def update(self, **values) -> None:
        """Additive merge: dict fields are merged, everything else overwritten."""
        known = {f.name for f in fields(self)}
        for key, value in values.items():
            if key not in known:
                raise PipelineError(
                    f"Unknown field '{key}' for {type(self).__name__}",
                    error_code="INVALID_WORKING_VARIABLES",
                )
            current = getattr(self, key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged = dict(current)
                merged.update(value)
                setattr(self, key, merged)
            else:
                setattr(self, key, value)


@dataclass
class Inputs(_Section):
    """What the caller asked for."""
    brief: str = ""
    lane: str = "main"
    aspect_ratio: Optional[str] = None
    duration: Optional[int] = None
    suggest_only: bool = False
    use_prompt_as_is: bool = False
    feedback: Optional[str] = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class Assets(_Section):
    """Reference media URLs."""
    product_image_url: Optional[str] = None
    logo_image_url: Optional[str] = None
    inspiration_image_urls: list[str] = field(default_factory=list)
    start_image_url: Optional[str] = None
    end_image_url: Optional[str] = None
    reference_video_url: Optional[str] = None
    reference_audio_url: Optional[str] = None
    parent_output_url: Optional[str] = None

    def image_urls(self) -> list[str]:
        urls = [self.product_image_url, self.logo_image_url, *self.inspiration_image_urls]
        return [u for u in urls if u]


@dataclass
class Scans(_Section):
    """Captions produced by the completion service."""
    captions: dict[str, str] = field(default_factory=dict)
    output_caption: Optional[str] = None


@dataclass
class Prompts(_Section):
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    suggestion: Optional[str] = None
    parent_prompt: Optional[str] = None


@dataclass
class Outputs(_Section):
    """Provider handle and results."""
    provider_job_id: Optional[str] = None
    provider_model: Optional[str] = None
    provider_status: Optional[str] = None
    provider_output_url: Optional[str] = None
    permanent_url: Optional[str] = None
    timed_out: bool = False


@dataclass
class Meta(_Section):
    engine: dict[str, Any] = field(default_factory=dict)
    charged: bool = False
    refund: Optional[str] = None
    recover_attempts: int = 0
    submitted_at: Optional[str] = None
    recovered_at: Optional[str] = None


@dataclass
class UserMessages(_Section):
    """Human-readable progress lines shown to the caller."""
    lines: list[dict[str, Any]] = field(default_factory=list)
    final_line: Optional[str] = None


@dataclass
class WorkingVariables:
    """
    Typed, additively merged document carried through the pipeline.

    Stages write only to their own sections via merge(); validate()
    runs at stage boundaries to make sure a stage has what it needs.
    """

    inputs: Inputs = field(default_factory=Inputs)
    assets: Assets = field(default_factory=Assets)
    scans: Scans = field(default_factory=Scans)
    prompts: Prompts = field(default_factory=Prompts)
    outputs: Outputs = field(default_factory=Outputs)
    meta: Meta = field(default_factory=Meta)
    user_messages: UserMessages = field(default_factory=UserMessages)

    SECTIONS = ("inputs", "assets", "scans", "prompts", "outputs", "meta", "user_messages")

    def merge(self, section: str, **values) -> "WorkingVariables":
        if section not in self.SECTIONS:
            raise PipelineError(f"Unknown section '{section}'", error_code="INVALID_WORKING_VARIABLES")
        getattr(self, section).update(**values)
        return self

    def push_line(self, text: str) -> Optional[dict]:
        """Append a user-facing line; empty text is ignored."""
        text = (text or "").strip()
        if not text:
            return None
        line = {"index": len(self.user_messages.lines), "text": text}
        self.user_messages.lines.append(line)
        return line

    def validate(self, section: str, *required: str) -> None:
        """Raise PipelineError when a required field of a section is empty."""
        values = getattr(self, section)
        missing = [name for name in required if not getattr(values, name)]
        if missing:
            raise PipelineError(
                f"Missing {section}.{', '.join(missing)}",
                error_code="INVALID_WORKING_VARIABLES",
                details={"section": section, "missing": missing},
            )

    def to_dict(self) -> dict:
        return {name: getattr(self, name).to_dict() for name in self.SECTIONS}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "WorkingVariables":
        data = data or {}
        return cls(
            inputs=Inputs.from_dict(data.get("inputs")),
            assets=Assets.from_dict(data.get("assets")),
            scans=Scans.from_dict(data.get("scans")),
            prompts=Prompts.from_dict(data.get("prompts")),
            outputs=Outputs.from_dict(data.get("outputs")),
            meta=Meta.from_dict(data.get("meta")),
            user_messages=UserMessages.from_dict(data.get("user_messages")),
        )


# ============================================================================
# Records
# ============================================================================

@dataclass
class Job:
    """One end-to-end request to produce a still image or a video."""

    owner_id: str
    mode: JobMode
    id: str = field(default_factory=lambda: str(uuid4()))
    parent_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    working_variables: WorkingVariables = field(default_factory=WorkingVariables)
    prompt_text: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def wv(self) -> WorkingVariables:
        return self.working_variables

    def advance(self, target: JobStatus) -> None:
        """Move to the next status, enforcing forward-only transitions."""
        if self.status.is_terminal:
            raise JobImmutableError(f"Job {self.id} is already {self.status.value}")
        if not can_transition(self.status, target):
            raise PipelineError(
                f"Illegal transition {self.status.value} -> {target.value}",
                error_code="ILLEGAL_TRANSITION",
            )
        self.status = target
        self.updated_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "owner_id": self.owner_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "working_variables": self.working_variables.to_dict(),
            "prompt_text": self.prompt_text,
            "output_url": self.output_url,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=data["id"],
            parent_id=data.get("parent_id"),
            owner_id=data["owner_id"],
            mode=JobMode(data["mode"]),
            status=JobStatus(data["status"]),
            working_variables=WorkingVariables.from_dict(data.get("working_variables")),
            prompt_text=data.get("prompt_text"),
            output_url=data.get("output_url"),
            error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class Step:
    """Append-only audit record of one externally meaningful sub-step."""

    job_id: str
    sequence_no: int
    type: str
    input: Any = None
    output: Any = None
    timing: dict[str, Any] = field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def payload(self) -> dict:
        return {
            "input": self.input,
            "output": self.output,
            "timing": self.timing,
            "error": self.error,
        }

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "sequence_no": self.sequence_no,
            "type": self.type,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class LedgerEntry:
    """Balance delta keyed by a unique (reference_type, reference_id) pair."""

    owner_id: str
    delta: int
    reason: str
    source: str
    reference_type: str
    reference_id: str
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def reference(self) -> tuple[str, str]:
        return (self.reference_type, self.reference_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data
