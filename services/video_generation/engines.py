"""
Engine Selector

Maps a request's mode, lane and reference inputs to a provider model and
a credit cost. Pure: no I/O, no clock, no randomness.

Still lanes:
- main  (economy) -> economy image engine, 1 unit
- niche (premium) -> premium image engine, 2 units

Video paths:
- plain            -> image-to-video, 5 units up to 5s, 10 units above
- reference video  -> motion transfer, duration rounded up to 5s blocks, capped at 30
- reference audio  -> audio-driven, duration rounded up to 5s blocks, capped at 60
"""

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from core.config import BillingConfig, ModelConfig, get_config
from core.errors import ValidationError


class Lane(str, Enum):
    MAIN = "main"
    NICHE = "niche"


class EngineKind(str, Enum):
    STILL_ECONOMY = "still_economy"
    STILL_PREMIUM = "still_premium"
    VIDEO_PLAIN = "video_plain"
    VIDEO_MOTION_TRANSFER = "video_motion_transfer"
    VIDEO_AUDIO_DRIVEN = "video_audio_driven"


@dataclass(frozen=True)
class EngineSelection:
    """Which model runs a request and what it costs."""
    kind: EngineKind
    lane: str
    model: str
    cost: int
    duration: Optional[int] = None  # seconds sent to the provider

    @property
    def is_video(self) -> bool:
        return self.kind not in (EngineKind.STILL_ECONOMY, EngineKind.STILL_PREMIUM)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EngineSelection":
        return cls(
            kind=EngineKind(data["kind"]),
            lane=data["lane"],
            model=data["model"],
            cost=int(data["cost"]),
            duration=data.get("duration"),
        )


def round_up_to_block(seconds: float, block: int, cap: int) -> int:
    """Round up to the next multiple of block, at least one block, at most cap."""
    if seconds is None or seconds <= 0:
        blocks = 1
    else:
        blocks = math.ceil(seconds / block)
    return min(max(blocks, 1) * block, cap)


class EngineSelector:
    """
    Usage:
        selector = EngineSelector()
        selection = selector.select("still", lane="niche")
        selection.cost   # 2
    """

    def __init__(self, models: Optional[ModelConfig] = None, billing: Optional[BillingConfig] = None):
        config = get_config() if models is None or billing is None else None
        self.models = models or config.models
        self.billing = billing or config.billing

    def select(
        self,
        mode: str,
        lane: Optional[str] = None,
        duration: Optional[float] = None,
        reference_video_url: Optional[str] = None,
        reference_audio_url: Optional[str] = None,
    ) -> EngineSelection:
        if mode == "still":
            return self._select_still(lane)
        if mode == "video":
            return self._select_video(lane, duration, reference_video_url, reference_audio_url)
        raise ValidationError(f"Unknown mode '{mode}'", error_code="INVALID_MODE")

    def _select_still(self, lane: Optional[str]) -> EngineSelection:
        lane = (lane or Lane.MAIN.value).lower()
        if lane == Lane.MAIN.value:
            return EngineSelection(
                kind=EngineKind.STILL_ECONOMY,
                lane=lane,
                model=self.models.still_economy,
                cost=self.billing.still_economy_cost,
            )
        if lane == Lane.NICHE.value:
            return EngineSelection(
                kind=EngineKind.STILL_PREMIUM,
                lane=lane,
                model=self.models.still_premium,
                cost=self.billing.still_premium_cost,
            )
        raise ValidationError(f"Unknown still lane '{lane}'", error_code="INVALID_LANE")

    def _select_video(
        self,
        lane: Optional[str],
        duration: Optional[float],
        reference_video_url: Optional[str],
        reference_audio_url: Optional[str],
    ) -> EngineSelection:
        block = self.billing.reference_block_seconds

        # Audio drives the whole clip, so it wins over a reference video
        if reference_audio_url:
            seconds = round_up_to_block(duration, block, self.billing.audio_reference_cap_seconds)
            return EngineSelection(
                kind=EngineKind.VIDEO_AUDIO_DRIVEN,
                lane="audio_reference",
                model=self.models.video_audio_driven,
                cost=seconds,
                duration=seconds,
            )

        if reference_video_url:
            seconds = round_up_to_block(duration, block, self.billing.video_reference_cap_seconds)
            return EngineSelection(
                kind=EngineKind.VIDEO_MOTION_TRANSFER,
                lane="video_reference",
                model=self.models.video_motion_transfer,
                cost=seconds,
                duration=seconds,
            )

        requested = duration or self.models.video_default_duration
        if requested <= self.billing.video_short_max_seconds:
            seconds, cost = self.billing.video_short_max_seconds, self.billing.video_short_cost
        else:
            seconds, cost = 10, self.billing.video_long_cost
        return EngineSelection(
            kind=EngineKind.VIDEO_PLAIN,
            lane=lane or "plain",
            model=self.models.video_plain,
            cost=cost,
            duration=seconds,
        )

    def cheaper_alternative(self, selection: EngineSelection) -> Optional[dict]:
        """Suggest the economy lane when a premium still was requested."""
        if selection.kind == EngineKind.STILL_PREMIUM:
            economy = self._select_still(Lane.MAIN.value)
            return {"lane": economy.lane, "cost": economy.cost}
        return None
