"""Location verification for in-person completions."""

from __future__ import annotations

from typing import Protocol

from checkin.models import Location

MAX_ACCURACY_METERS = 100.0


class LocationVerifier(Protocol):
    def validate_accuracy(self, location: Location) -> bool:
        ...


class AccuracyVerifier:
    """Accepts a fix only if its reported accuracy is within a radius."""

    def __init__(self, max_accuracy_meters: float = MAX_ACCURACY_METERS) -> None:
        self._max_accuracy = max_accuracy_meters

    def validate_accuracy(self, location: Location) -> bool:
        if location.accuracy is None or location.accuracy < 0:
            return False
        return location.accuracy <= self._max_accuracy
