"""Feature vectors produced by the estimators and the per-session record.

Every vector is immutable and always fully populated: estimators return a
documented default instead of a missing value.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping

EXPRESSION_MAX = 5.0


class Stage(str, Enum):
    BEFORE = "before"
    AFTER = "after"


def _clamp(value: float, low: float, high: float) -> float:
    return float(min(high, max(low, value)))


@dataclass(frozen=True)
class ExpressionVector:
    """Eight facial action intensities, each in [0, 5]."""

    inner_brow_raise: float = 0.0
    brow_lower: float = 0.0
    cheek_raise: float = 0.0
    lip_corner_pull: float = 0.0
    lip_corner_depress: float = 0.0
    chin_raise: float = 0.0
    lip_stretch: float = 0.0
    lip_press: float = 0.0

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(
                self, f.name, _clamp(getattr(self, f.name), 0.0, EXPRESSION_MAX)
            )

    @classmethod
    def zero(cls) -> "ExpressionVector":
        return cls()

    @classmethod
    def channels(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def mean(cls, vectors: Iterable["ExpressionVector"]) -> "ExpressionVector":
        """Per-channel arithmetic mean; the zero vector for no input."""
        vs = list(vectors)
        if not vs:
            return cls.zero()
        return cls(
            **{
                name: sum(getattr(v, name) for v in vs) / len(vs)
                for name in cls.channels()
            }
        )

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class PulseVector:
    """Heart rate [bpm], variability (RMSSD-like) and respiration [br/min].

    `substituted` names the fields that hold fallback values rather than
    measurements. It takes no part in equality or serialization.
    """

    heart_rate: float
    hrv: float
    respiration_rate: float
    substituted: frozenset[str] = field(
        default=frozenset(), compare=False, repr=False
    )

    @property
    def measured(self) -> bool:
        return not self.substituted

    def to_dict(self) -> dict[str, float]:
        return {
            "heart_rate": self.heart_rate,
            "hrv": self.hrv,
            "respiration_rate": self.respiration_rate,
        }


@dataclass(frozen=True)
class ComplexionVector:
    """Skin patch indicators, all percentages in [0, 100]."""

    homogeneity: float
    redness: float
    roughness: float
    vitality: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class GazeVector:
    blink_rate: float  # blinks per minute
    pupil_unrest: float
    stability: float  # %
    fatigue_index: float  # %, 0 alert .. 100 exhausted

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class Biometrics:
    """The four vectors produced by one analysis run."""

    expression: ExpressionVector
    pulse: PulseVector
    complexion: ComplexionVector
    gaze: GazeVector

    def to_dict(self) -> dict[str, dict[str, float]]:
        return {
            "expression": self.expression.to_dict(),
            "pulse": self.pulse.to_dict(),
            "complexion": self.complexion.to_dict(),
            "gaze": self.gaze.to_dict(),
        }


@dataclass(frozen=True)
class FeatureRecord:
    """Aggregated, immutable output of one completed capture session."""

    timestamp: datetime
    stage: Stage
    expression: ExpressionVector
    pulse: PulseVector
    complexion: ComplexionVector
    gaze: GazeVector
    self_report: str
    participant_id: str

    @classmethod
    def create(
        cls,
        biometrics: Biometrics,
        stage: Stage,
        self_report: str,
        participant_id: str,
        timestamp: datetime | None = None,
    ) -> "FeatureRecord":
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            stage=Stage(stage),
            expression=biometrics.expression,
            pulse=biometrics.pulse,
            complexion=biometrics.complexion,
            gaze=biometrics.gaze,
            self_report=self_report,
            participant_id=participant_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "stage": self.stage.value,
            "participant_id": self.participant_id,
            "expression": self.expression.to_dict(),
            "pulse": self.pulse.to_dict(),
            "complexion": self.complexion.to_dict(),
            "gaze": self.gaze.to_dict(),
            "self_report": self.self_report,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureRecord":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            stage=Stage(data["stage"]),
            expression=ExpressionVector(**data["expression"]),
            pulse=PulseVector(**data["pulse"]),
            complexion=ComplexionVector(**data["complexion"]),
            gaze=GazeVector(**data["gaze"]),
            self_report=data.get("self_report", ""),
            participant_id=data["participant_id"],
        )
