# fleet_trip_engine/engine/ignition.py
"""
Ignition confidence scoring.

Device firmware reports ignition (ACC) in a status bitfield whose layout is
not consistent across models. Some devices set bit 0 of the low 16 bits,
others also mirror it into bit 0 of the high 16 bits, and some never wire
ACC at all. Rather than trusting one bit, evidence is accumulated:

    base ACC bit (status & 0xFFFF, bit 0)      +0.6
    extended ACC bit (status >> 16, bit 0)     +0.2
    resolved speed above the motion threshold  +0.2

The score is capped at 1.0 and ignition is ON when it reaches 0.5. The base
bit alone is therefore decisive, while extended-bit or speed evidence alone
is not. Such weak evidence is a conflict: it is logged at DEBUG here, and
TelemetryNormalizer.normalize_series() summarizes a series' conflicts in a
single WARNING.

Devices that send no status word but a status text ("ACC ON") are decided
from the text. This never happens when a status word exists, so adding
bitfield evidence can only raise the score.
"""

import logging
import math
import re
from typing import Any, Final

from fleet_trip_engine.models import DetectionMethod, IgnitionReading

__all__: list[str] = [
    'BASE_ACC_WEIGHT',
    'EXTENDED_ACC_WEIGHT',
    'IGNITION_ON_THRESHOLD',
    'SPEED_EVIDENCE_WEIGHT',
    'STRING_PARSE_CONFIDENCE',
    'parse_acc_text',
    'parse_status_word',
    'score_ignition',
]

logger: logging.Logger = logging.getLogger(__name__)

BASE_ACC_WEIGHT: Final[float] = 0.6
EXTENDED_ACC_WEIGHT: Final[float] = 0.2
SPEED_EVIDENCE_WEIGHT: Final[float] = 0.2
STRING_PARSE_CONFIDENCE: Final[float] = 0.9
IGNITION_ON_THRESHOLD: Final[float] = 0.5
DEFAULT_SPEED_EVIDENCE_KMH: Final[float] = 3.0

UINT32_MASK: Final[int] = 0xFFFF_FFFF
LOW_HALF_MASK: Final[int] = 0xFFFF

# OFF is checked first so 'ACC OFF' never matches as ON.
_ACC_OFF_PATTERN: re.Pattern[str] = re.compile(r'ACC\s*[:=_]?\s*(OFF|关)', re.IGNORECASE)
_ACC_ON_PATTERN: re.Pattern[str] = re.compile(r'ACC\s*[:=_]?\s*(ON|开)', re.IGNORECASE)


def parse_status_word(status: Any) -> int | None:
    """
    Interpret a raw status value as an unsigned 32-bit word.

    Accepts ints, integral floats, and decimal or 0x-prefixed strings.
    Values wider than 32 bits keep their low 32 bits.

    Returns:
        The status word, or None if the value is missing, negative, or
        not numeric.
    """
    if status is None or isinstance(status, bool):
        return None

    if isinstance(status, str):
        text: str = status.strip()
        if not text:
            return None
        try:
            status = int(text, 0)
        except ValueError:
            try:
                status = float(text)
            except ValueError:
                return None

    if isinstance(status, float):
        if not math.isfinite(status) or not status.is_integer():
            return None
        status = int(status)

    if not isinstance(status, int) or status < 0:
        return None

    return status & UINT32_MASK


def parse_acc_text(status_text: str | None) -> bool | None:
    """
    Read an explicit ACC state from a status string.

    Returns:
        True for ACC ON, False for ACC OFF, None when the text says neither.
    """
    if not status_text:
        return None
    if _ACC_OFF_PATTERN.search(status_text):
        return False
    if _ACC_ON_PATTERN.search(status_text):
        return True
    return None


def score_ignition(
    status: Any,
    speed_kmh: float,
    status_text: str | None = None,
    on_threshold: float = IGNITION_ON_THRESHOLD,
    speed_threshold_kmh: float = DEFAULT_SPEED_EVIDENCE_KMH,
    device_id: str | None = None,
) -> IgnitionReading:
    """
    Score ignition evidence for one sample.

    Args:
        status: Raw status value (int, float, string or None).
        speed_kmh: Already resolved speed in km/h.
        status_text: Raw status string, consulted only without a status word.
        on_threshold: Confidence at or above which ignition is ON.
        speed_threshold_kmh: Speed above which speed counts as evidence.
        device_id: Used only to make conflict warnings traceable.

    Returns:
        Tagged IgnitionReading.
    """
    speed_corroborated: bool = speed_kmh > speed_threshold_kmh
    speed_evidence: float = SPEED_EVIDENCE_WEIGHT if speed_corroborated else 0.0

    status_word: int | None = parse_status_word(status)

    if status_word is None:
        acc_text_state: bool | None = parse_acc_text(status_text)
        if acc_text_state is not None:
            text_confidence: float = STRING_PARSE_CONFIDENCE if acc_text_state else 0.0
            confidence: float = min(1.0, text_confidence + speed_evidence)
            return IgnitionReading(
                ignition_on=confidence >= on_threshold,
                confidence=round(confidence, 2),
                detection_method=DetectionMethod.STRING_PARSE,
                speed_corroborated=speed_corroborated,
            )

    base_acc: bool = False
    extended_acc: bool = False
    if status_word is not None:
        base_acc = bool((status_word & LOW_HALF_MASK) & 0x1)
        extended_acc = bool((status_word >> 16) & 0x1)

    confidence = 0.0
    if base_acc:
        confidence += BASE_ACC_WEIGHT
    if extended_acc:
        confidence += EXTENDED_ACC_WEIGHT
    confidence = round(min(1.0, confidence + speed_evidence), 2)

    if base_acc and (extended_acc or speed_corroborated):
        method: DetectionMethod = DetectionMethod.MULTI_SIGNAL
    elif base_acc:
        method = DetectionMethod.STATUS_BIT
    elif extended_acc:
        method = DetectionMethod.EXTENDED_BIT
    elif speed_corroborated:
        method = DetectionMethod.SPEED_ONLY
    else:
        method = DetectionMethod.NONE

    ignition_on: bool = confidence >= on_threshold

    # Per sample at DEBUG; normalize_series() warns once per series.
    if not ignition_on and method is not DetectionMethod.NONE:
        logger.debug(
            'Ignition conflict for device %s: %s evidence without ACC bit '
            '(status=%r, speed=%.1f km/h, confidence=%.2f); treating as OFF',
            device_id or '?',
            method.value,
            status_word,
            speed_kmh,
            confidence,
        )

    return IgnitionReading(
        ignition_on=ignition_on,
        confidence=confidence,
        detection_method=method,
        base_acc=base_acc,
        extended_acc=extended_acc,
        speed_corroborated=speed_corroborated,
    )
