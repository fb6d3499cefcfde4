"""
Static slot list served when the scheduling backend cannot be reached
"""

from typing import Any, Dict, List, Optional, Sequence

from consultorio.models import Slot

DEFAULT_MORNING = ("09:00", "09:30", "10:00", "10:30", "11:00", "11:30")
DEFAULT_AFTERNOON = (
    "14:00", "14:30", "15:00", "15:30", "16:00", "16:30", "17:00", "17:30",
)

FALLBACK_MESSAGE = "Datos recuperados del sistema de respaldo"


class FallbackProvider:
    """Deterministic, network-free availability"""

    def __init__(
        self,
        morning: Optional[Sequence[str]] = None,
        afternoon: Optional[Sequence[str]] = None,
    ):
        self.morning = tuple(morning if morning is not None else DEFAULT_MORNING)
        self.afternoon = tuple(afternoon if afternoon is not None else DEFAULT_AFTERNOON)

    def get_slots(self, date: str) -> List[Slot]:
        """Same shape as a live AvailabilityGateway response"""
        return [Slot(time=t, display_time=t, status="available") for t in self.morning + self.afternoon]

    def get_response(self, date: str) -> Dict[str, Any]:
        """Wire-shaped body of GET /appointments/available/{date}"""
        return {
            "success": True,
            "data": {
                "displayDate": date,
                "available": {
                    "morning": [Slot(t, t).to_dict() for t in self.morning],
                    "afternoon": [Slot(t, t).to_dict() for t in self.afternoon],
                },
            },
            "message": FALLBACK_MESSAGE,
        }
