# fleet_trip_engine/engine/battery.py
"""Battery state-of-charge resolution from reported percent or voltage."""

import math
from typing import Any, Final

from fleet_trip_engine.config import BatteryChemistry, BatteryProfile

__all__: list[str] = [
    'LEAD_ACID_CURVE_EXPONENT',
    'battery_percent_from_voltage',
    'resolve_battery_level',
]

# Lead-acid state of charge drops slowly at first, then quickly.
LEAD_ACID_CURVE_EXPONENT: Final[float] = 1.5


def _positive_float(value: Any) -> float | None:
    """Coerce to a finite positive float, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number: float = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def battery_percent_from_voltage(voltage: float, profile: BatteryProfile) -> int:
    """
    Map a voltage onto 0-100 percent using the profile's chemistry curve.

    Voltages outside the profile window clamp to 0 or 100.
    """
    fraction: float = (voltage - profile.min_voltage) / (
        profile.max_voltage - profile.min_voltage
    )
    fraction = min(1.0, max(0.0, fraction))

    if profile.chemistry in (BatteryChemistry.LEAD_ACID, BatteryChemistry.AGM):
        fraction = fraction**LEAD_ACID_CURVE_EXPONENT

    return round(fraction * 100)


def resolve_battery_level(
    reported_percent: Any,
    voltage: Any,
    external_voltage: Any,
    profile: BatteryProfile,
) -> int | None:
    """
    Resolve battery level with a fixed priority.

    1. A reported percentage above zero, clamped to [0, 100].
    2. The device battery voltage mapped through the profile.
    3. The external supply voltage mapped through the profile.
    4. None.

    Args:
        reported_percent: Device-reported percentage (any raw type).
        voltage: Device battery voltage (any raw type).
        external_voltage: Vehicle supply voltage (any raw type).
        profile: Battery profile for this device.

    Returns:
        Integer percentage, or None when nothing usable was reported.
    """
    percent: float | None = _positive_float(reported_percent)
    if percent is not None:
        return round(min(100.0, percent))

    for candidate in (voltage, external_voltage):
        volts: float | None = _positive_float(candidate)
        if volts is not None:
            return battery_percent_from_voltage(volts, profile)

    return None
