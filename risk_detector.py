"""Risk keyword detection for free-text reflections.

A heuristic, not a classifier: literal lower-case substring containment over
two fixed keyword lists. No tokenization, stemming or negation handling, so
"no quiero morirme" still matches. False positives and negatives are expected.

The detector is swappable through set_detector(); call sites only depend on
the RiskDetector protocol and the RiskLevel enum.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

CRITICAL_KEYWORDS = (
    "suicidio",
    "matarme",
    "suicidarme",
    "muerte",
    "quiero morirme",
    "ahorcarme",
    "cortarme",
    "envenenarme",
    "tirarme",
    "no quiero vivir",
)

HIGH_KEYWORDS = (
    "depresión severa",
    "nadie me quiere",
    "soy una carga",
    "no hay salida",
)

HIGH_MESSAGE = (
    "Notamos que estás atravesando un momento difícil. "
    "¿Te gustaría hablar con la dupla psicosocial?"
)


def critical_message(emergency_phone: str = "131", prevention_phone: str = "1729") -> str:
    return (
        "Percibimos que podrías estar en riesgo. Si necesitas ayuda inmediata: "
        f"Emergencias: {emergency_phone}, Fono Prevención Suicidio: {prevention_phone}"
    )


class RiskLevel(str, Enum):
    NONE = "none"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RiskAssessment:
    level: RiskLevel
    matched: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def blocks_submission(self) -> bool:
        return self.level is RiskLevel.CRITICAL

    def to_dict(self) -> dict:
        return {"level": self.level.value, "matched": self.matched, "message": self.message}


class RiskDetector(Protocol):
    def assess(self, text: str | None) -> RiskAssessment: ...


class KeywordRiskDetector:
    """Critical list is checked first; the first tier with any match wins."""

    def __init__(self, critical: tuple[str, ...] = CRITICAL_KEYWORDS,
                 high: tuple[str, ...] = HIGH_KEYWORDS,
                 emergency_phone: str = "131", prevention_phone: str = "1729") -> None:
        self.critical = critical
        self.high = high
        self.emergency_phone = emergency_phone
        self.prevention_phone = prevention_phone

    def assess(self, text: str | None) -> RiskAssessment:
        if not text:
            return RiskAssessment(RiskLevel.NONE)
        lowered = text.lower()

        matched = [kw for kw in self.critical if kw in lowered]
        if matched:
            return RiskAssessment(
                RiskLevel.CRITICAL, matched,
                critical_message(self.emergency_phone, self.prevention_phone),
            )

        matched = [kw for kw in self.high if kw in lowered]
        if matched:
            return RiskAssessment(RiskLevel.HIGH, matched, HIGH_MESSAGE)

        return RiskAssessment(RiskLevel.NONE)


_detector: RiskDetector | None = None


def init_detector(app) -> None:
    """Build the default keyword detector from app config. Call once from create_app()."""
    global _detector
    _detector = KeywordRiskDetector(
        emergency_phone=app.config.get("EMERGENCY_PHONE", "131"),
        prevention_phone=app.config.get("SUICIDE_PREVENTION_PHONE", "1729"),
    )


def get_detector() -> RiskDetector:
    """Return the active detector. Lazily initializes if needed."""
    global _detector
    if _detector is None:
        _detector = KeywordRiskDetector()
    return _detector


def set_detector(detector: RiskDetector | None) -> None:
    """Swap the active detector (None restores the keyword default on next use)."""
    global _detector
    _detector = detector
