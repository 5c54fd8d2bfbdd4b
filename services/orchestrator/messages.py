"""
User-facing progress text.

All wording the caller sees lives here. Lines stay friendly and never name
internal stages, tools or vendors. Control flow never depends on this module.
"""

import random
from typing import Optional, Sequence, Union

from .state import JobStatus

# Internal status -> what subscribers see in "status" events
USER_STATUS = {
    JobStatus.QUEUED: "working",
    JobStatus.PROCESSING: "working",
    JobStatus.SCANNING: "working",
    JobStatus.PROMPTING: "working",
    JobStatus.GENERATING: "working",
    JobStatus.POSTSCAN: "working",
    JobStatus.SUGGESTED: "ready",
    JobStatus.DONE: "done",
    JobStatus.ERROR: "error",
}

MESSAGE_POOLS: dict[str, tuple[str, ...]] = {
    "still_create_start": (
        "One sec, getting everything ready",
        "Alright, setting things up for you",
        "Love it. Let me prep your inputs",
    ),
    "still_tweak_start": (
        "Got it, let's refine that",
        "Okay, making it even better",
        "Let's polish this up",
    ),
    "video_animate_start": (
        "Nice, let's bring it to life",
        "Okay, animating this for you",
        "Let's make it move",
    ),
    "video_tweak_start": (
        "Got it, updating the motion",
        "Alright, tweaking the animation",
        "Let's refine the movement",
    ),
    "scanning": ("Got it", "Noted", "Perfect, got it"),
    "prompting": ("Working on it", "Putting it together", "Almost there"),
    "generating": (
        "Still on it",
        "Adding the finishing touches",
        "Good things take a moment",
        "Nearly there, hang tight",
    ),
    "saved_image": ("Saved", "All set", "Done"),
    "saved_video": ("Saved", "Your clip is ready", "Done"),
    "done": ("All set", "Here you go", "Done"),
    "suggested": ("Here's an idea for you", "How about this?"),
    "error": (
        "That one didn't work out",
        "Something went wrong, please try again",
    ),
    "timeout": (
        "This is taking longer than usual, check back in a bit",
        "Still rendering in the background, we'll pick it up shortly",
    ),
}

USER_MESSAGE_RULES = "\n".join([
    "USER MESSAGE RULES (VERY IMPORTANT):",
    "- userMessage must be short, friendly, human.",
    "- Do NOT mention internal steps or tools (no model names, vendors, databases or pipelines).",
    "- Do NOT mention errors like network or browser problems.",
    "- Do NOT use robotic labels or status words.",
    "- Max 140 characters.",
])


def stage_to_message_pool(stage: Union[str, JobStatus]) -> tuple[str, ...]:
    """Candidate lines for a stage. Unknown stages get an empty pool."""
    key = stage.value if isinstance(stage, JobStatus) else str(stage)
    return MESSAGE_POOLS.get(key, ())


def pick(pool: Sequence[str], fallback: str = "", rng: Optional[random.Random] = None) -> str:
    candidates = [p for p in pool if p]
    if not candidates:
        return fallback
    return (rng or random).choice(candidates)


def line_for(stage: Union[str, JobStatus], fallback: str = "", rng: Optional[random.Random] = None) -> str:
    return pick(stage_to_message_pool(stage), fallback, rng)


def to_user_status(status: Union[str, JobStatus]) -> str:
    try:
        return USER_STATUS[JobStatus(status)]
    except ValueError:
        return "working"
