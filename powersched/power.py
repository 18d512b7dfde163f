"""
Power source probe.

The scheduler only runs commands while the machine is on external power.
Anything that cannot be determined counts as battery power, so nothing runs
when the power state is unknown.
"""

import logging

import psutil

logger = logging.getLogger(__name__)


class PowerQueryError(Exception):
    """Raised when the power source cannot be determined."""
    pass


class PowerGate:
    """Reports whether the host is currently running on battery power."""

    def is_on_battery(self) -> bool:
        """
        Query the power source.

        A machine without a battery is on external power.

        Raises:
            PowerQueryError: If the power source cannot be determined
        """
        sensors_battery = getattr(psutil, "sensors_battery", None)
        if sensors_battery is None:
            raise PowerQueryError("Battery sensors are not supported on this platform")

        try:
            battery = sensors_battery()
        except (OSError, RuntimeError, NotImplementedError) as e:
            raise PowerQueryError(f"Could not read battery status: {e}") from e

        if battery is None:
            return False
        if battery.power_plugged is None:
            raise PowerQueryError("Battery present but charger state is unknown")
        return not battery.power_plugged

    def on_battery_or_unknown(self) -> bool:
        """Like is_on_battery(), but reports True instead of raising."""
        try:
            return self.is_on_battery()
        except PowerQueryError as e:
            logger.warning(f"Could not get power source, assuming battery power: {e}")
            return True


class StaticPowerGate(PowerGate):
    """Power gate with a fixed answer, for machines that are always plugged in."""

    def __init__(self, on_battery: bool = False):
        self.on_battery = on_battery

    def is_on_battery(self) -> bool:
        return self.on_battery
