"""
Emotion Catalog

Static lookup from emotion kind to valence and to a perceptual colour
(LCH hue/chroma). The catalog is immutable and passed explicitly to the
services that need it; DEFAULT_CATALOG is the production table.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


class EmotionKind(str, Enum):
    JOY = "JOY"
    SERENITY = "SERENITY"
    SURPRISE = "SURPRISE"
    NOSTALGIA = "NOSTALGIA"
    FEAR = "FEAR"
    SADNESS = "SADNESS"
    ANGER = "ANGER"
    HOPE = "HOPE"
    GRATITUDE = "GRATITUDE"
    ANXIETY = "ANXIETY"


class Visibility(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


@dataclass(frozen=True)
class EmotionColor:
    """LCH hue (degrees) and chroma for one emotion kind."""
    hue: float
    chroma: float


NEUTRAL_COLOR = "lch(50% 0 0)"


@dataclass(frozen=True)
class EmotionCatalog:
    valence: Mapping[str, float]
    colors: Mapping[str, EmotionColor]
    kinds: tuple = field(init=False)

    def __post_init__(self):
        if set(self.valence) != set(self.colors):
            raise ValueError("Catalog valence and colour tables must cover the same kinds")
        # Freeze the tables so callers cannot mutate shared state.
        object.__setattr__(self, "valence", MappingProxyType(dict(self.valence)))
        object.__setattr__(self, "colors", MappingProxyType(dict(self.colors)))
        object.__setattr__(self, "kinds", tuple(self.valence))

    def __contains__(self, kind) -> bool:
        return kind_key(kind) in self.valence

    def valence_for(self, kind) -> float:
        try:
            return self.valence[kind_key(kind)]
        except KeyError:
            raise ValueError(f"Unknown emotion kind: {kind}") from None

    def color_for(self, dominant_emotion, intensity: float, coherence: float) -> str:
        """
        Colour for a cell: lightness tracks intensity (30-90%),
        chroma is scaled by coherence.
        """
        key = kind_key(dominant_emotion)
        if key not in self.colors:
            raise ValueError(f"Unknown emotion kind: {dominant_emotion}")
        color = self.colors[key]
        lightness = 30 + (intensity / 100) * 60
        adjusted_chroma = color.chroma * coherence
        return f"lch({_fmt(lightness)}% {_fmt(adjusted_chroma)} {_fmt(color.hue)})"

    def blended_color(self, distribution: Mapping[str, float], mean_intensity: float,
                      coherence: float) -> str:
        """Colour from a distribution, using its largest share as the base hue."""
        if not distribution:
            return NEUTRAL_COLOR
        dominant: Optional[str] = None
        best = None
        for kind, share in distribution.items():
            if best is None or share > best:
                dominant, best = kind, share
        return self.color_for(dominant, mean_intensity, coherence)


def kind_key(kind) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


def _fmt(value: float) -> str:
    return f"{round(value, 2):g}"


DEFAULT_CATALOG = EmotionCatalog(
    valence={
        EmotionKind.JOY.value: 0.8,
        EmotionKind.SERENITY.value: 0.6,
        EmotionKind.SURPRISE.value: 0.2,
        EmotionKind.NOSTALGIA.value: 0.1,
        EmotionKind.FEAR.value: -0.7,
        EmotionKind.SADNESS.value: -0.6,
        EmotionKind.ANGER.value: -0.8,
        EmotionKind.HOPE.value: 0.7,
        EmotionKind.GRATITUDE.value: 0.9,
        EmotionKind.ANXIETY.value: -0.5,
    },
    colors={
        EmotionKind.JOY.value: EmotionColor(hue=60, chroma=80),  # Bright yellow
        EmotionKind.SERENITY.value: EmotionColor(hue=200, chroma=50),  # Light blue
        EmotionKind.SURPRISE.value: EmotionColor(hue=300, chroma=70),  # Magenta
        EmotionKind.NOSTALGIA.value: EmotionColor(hue=280, chroma=40),  # Soft purple
        EmotionKind.FEAR.value: EmotionColor(hue=0, chroma=60),  # Dark red
        EmotionKind.SADNESS.value: EmotionColor(hue=240, chroma=60),  # Blue
        EmotionKind.ANGER.value: EmotionColor(hue=20, chroma=80),  # Red-orange
        EmotionKind.HOPE.value: EmotionColor(hue=120, chroma=70),  # Green
        EmotionKind.GRATITUDE.value: EmotionColor(hue=40, chroma=60),  # Orange
        EmotionKind.ANXIETY.value: EmotionColor(hue=270, chroma=50),  # Purple
    },
)
