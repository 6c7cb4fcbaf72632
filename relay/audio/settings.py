from typing import Optional

from pydantic import BaseModel

# (min, max) accepted by the synthesis API; None means unbounded
RANGES = {
    "stability": (0.0, 1.0),
    "similarity_boost": (0.0, 1.0),
    "style": (0.0, None),
    "speed": (0.5, 2.0),
}


def clamp(name: str, value: float) -> float:
    low, high = RANGES[name]
    if low is not None:
        value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


class VoiceOverrides(BaseModel):
    """Per-request values given with /t2v. Unset fields keep the defaults."""

    stability: Optional[float] = None
    style: Optional[float] = None
    speed: Optional[float] = None


class VoiceSettings(BaseModel):
    stability: float = 0.30
    similarity_boost: float = 1.0
    style: float = 0.7
    speed: float = 1.0
    use_speaker_boost: bool = True

    def with_overrides(self, overrides: Optional[VoiceOverrides]) -> "VoiceSettings":
        """Apply overrides, clamping each one into its valid range.

        Out-of-range values are clamped silently rather than rejected.
        """
        if overrides is None:
            return self.model_copy()
        updates = {
            name: clamp(name, value)
            for name, value in overrides.model_dump(exclude_none=True).items()
        }
        return self.model_copy(update=updates)

    def for_speech_to_speech(self) -> dict:
        """Settings payload for speech-to-speech, which takes no speed."""
        return self.model_dump(exclude={"speed"})
