"""
Data models for the Consultorio booking engine

Contains enums, constants, dataclasses, and Pydantic models for appointment
and overflow ("sobreturno") booking.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class ConversationState(Enum):
    """FSM states for a booking conversation"""
    IDLE = "idle"
    COLLECTING_NAME = "collecting_name"
    COLLECTING_PLAN = "collecting_plan"
    PRESENTING_OPTIONS = "presenting_options"
    AWAITING_SELECTION = "awaiting_selection"
    BOOKING = "booking"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class BookingFlow(Enum):
    """Which resource the conversation is booking"""
    APPOINTMENT = "appointment"
    SOBRETURNO = "sobreturno"


TERMINAL_STATES = (
    ConversationState.CONFIRMED,
    ConversationState.CANCELLED,
)


# ============================================================================
# Constants
# ============================================================================

# Social work plans, keyed by menu option
SOCIAL_WORKS = {
    "1": "INSSSEP",
    "2": "Swiss Medical",
    "3": "OSDE",
    "4": "Galeno",
    "5": "CONSULTA PARTICULAR",
    "6": "Otras Obras Sociales",
}

DEFAULT_SOCIAL_WORK = "CONSULTA PARTICULAR"

# Overflow number -> wall-clock time. 1-5 morning block, 6-10 afternoon block.
SOBRETURNO_TIMES = {
    1: "11:00", 2: "11:15", 3: "11:30", 4: "11:45", 5: "12:00",
    6: "19:00", 7: "19:15", 8: "19:30", 9: "19:45", 10: "20:00",
}

MORNING_BLOCK = range(1, 6)

SOBRETURNO_STATUSES = ("available", "pending", "confirmed", "cancelled")

# Validation patterns
NAME_PATTERN = re.compile(r"^[A-Za-zÁÉÍÓÚÜÑáéíóúüñ\s]+$")
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Chat keywords
CANCEL_KEYWORD = "cancelar"
SOBRETURNO_KEYWORDS = ["sobreturnos", "sobreturno"]
APPOINTMENT_KEYWORDS = [
    "hi", "hello", "hola", "ola", "ole", "ho", "buenas", "hola doctor", "doctor",
    "buenos días", "buenos dias", "buenas tardes", "buenas noches",
    "turnos", "turno", "horarios", "horario", "disponibles",
]
GOODBYE_KEYWORDS = ["bye", "adiós", "adios", "chao", "chau"]
ADMIN_COMMANDS = ["!admin", "!help", "!status", "!bot", "!pausa"]


# ============================================================================
# Data Classes
# ============================================================================

@dataclass(frozen=True)
class Slot:
    """A bookable regular appointment time"""
    time: str
    display_time: str
    status: str = "available"

    @property
    def is_available(self) -> bool:
        return self.status == "available"

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "displayTime": self.display_time, "status": self.status}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Slot":
        time = data.get("time") or data.get("displayTime")
        return cls(
            time=time,
            display_time=data.get("displayTime") or time,
            status=data.get("status", "available"),
        )


@dataclass(frozen=True)
class OverflowSlot:
    """One of the ten numbered overflow slots for a given day"""
    number: int
    time: str
    status: str = "available"

    @property
    def is_morning(self) -> bool:
        return self.number in MORNING_BLOCK

    def to_dict(self) -> Dict[str, Any]:
        return {"sobreturnoNumber": self.number, "time": self.time, "status": self.status}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OverflowSlot":
        return cls(
            number=int(data["sobreturnoNumber"]),
            time=data["time"],
            status=data.get("status", "available"),
        )


@dataclass
class AppointmentRequest:
    """Payload for POST /appointments"""
    client_name: Optional[str] = None
    social_work: Optional[str] = None
    phone: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    email: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "clientName": self.client_name,
            "socialWork": self.social_work,
            "phone": self.phone,
            "date": self.date,
            "time": self.time,
            "email": self.email or (f"{self.phone}@phone.com" if self.phone else None),
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass
class SobreturnoRequest:
    """Payload for POST /sobreturnos"""
    client_name: str
    social_work: str
    phone: str
    date: str
    time: str
    sobreturno_number: int
    email: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "clientName": self.client_name,
            "socialWork": self.social_work,
            "phone": self.phone,
            "date": self.date,
            "time": self.time,
            "sobreturnoNumber": self.sobreturno_number,
            "email": self.email or f"{self.phone}@sobreturno.temp",
            "isSobreturno": True,
            "status": "confirmed",
        }


@dataclass
class ConversationSession:
    """Per-phone conversation state"""
    phone: str
    flow: BookingFlow = BookingFlow.APPOINTMENT
    state: ConversationState = ConversationState.IDLE
    conversation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    client_name: Optional[str] = None
    social_work: Optional[str] = None
    appointment_date: Optional[str] = None
    available_slots: List[Slot] = field(default_factory=list)
    selected_slot: Optional[Slot] = None
    available_sobreturnos: List[OverflowSlot] = field(default_factory=list)
    selected_sobreturno: Optional[OverflowSlot] = None
    invalid_name: bool = False
    offline: bool = False
    retry_counts: Dict[str, int] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def options(self) -> List[Any]:
        """The exact list shown to the user for this flow"""
        if self.flow == BookingFlow.SOBRETURNO:
            return self.available_sobreturnos
        return self.available_slots

    def to_dict(self) -> Dict[str, Any]:
        """Serialize session for storage"""
        return {
            "phone": self.phone,
            "flow": self.flow.value,
            "state": self.state.value,
            "conversation_id": self.conversation_id,
            "client_name": self.client_name,
            "social_work": self.social_work,
            "appointment_date": self.appointment_date,
            "available_slots": [slot.to_dict() for slot in self.available_slots],
            "selected_slot": self.selected_slot.to_dict() if self.selected_slot else None,
            "available_sobreturnos": [slot.to_dict() for slot in self.available_sobreturnos],
            "selected_sobreturno": (
                self.selected_sobreturno.to_dict() if self.selected_sobreturno else None
            ),
            "invalid_name": self.invalid_name,
            "offline": self.offline,
            "retry_counts": self.retry_counts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSession":
        """Deserialize session from storage"""
        selected_slot = data.get("selected_slot")
        selected_sobreturno = data.get("selected_sobreturno")
        return cls(
            phone=data["phone"],
            flow=BookingFlow(data.get("flow", BookingFlow.APPOINTMENT.value)),
            state=ConversationState(data.get("state", ConversationState.IDLE.value)),
            conversation_id=data.get("conversation_id") or uuid.uuid4().hex,
            client_name=data.get("client_name"),
            social_work=data.get("social_work"),
            appointment_date=data.get("appointment_date"),
            available_slots=[Slot.from_dict(s) for s in data.get("available_slots", [])],
            selected_slot=Slot.from_dict(selected_slot) if selected_slot else None,
            available_sobreturnos=[
                OverflowSlot.from_dict(s) for s in data.get("available_sobreturnos", [])
            ],
            selected_sobreturno=(
                OverflowSlot.from_dict(selected_sobreturno) if selected_sobreturno else None
            ),
            invalid_name=data.get("invalid_name", False),
            offline=data.get("offline", False),
            retry_counts=data.get("retry_counts", {}),
            created_at=data.get("created_at") or datetime.now().isoformat(),
            updated_at=data.get("updated_at") or datetime.now().isoformat(),
        )


# ============================================================================
# Pydantic Models for API
# ============================================================================

class InboundMessage(BaseModel):
    """Message delivered by the chat transport"""
    from_: str = Field(..., alias="from", min_length=1, description="Originating phone number")
    body: str = Field(..., description="Message text")

    model_config = {"populate_by_name": True}


class OutboundReply(BaseModel):
    """Messages the engine wants delivered back"""
    messages: List[str] = Field(default_factory=list, description="Outbound chat messages, in order")
    next_flow: Optional[str] = Field(None, description="Optional hand-off to another flow")


class SessionStatusResponse(BaseModel):
    """Response model for session status query"""
    phone: str = Field(..., description="Session key (phone number)")
    state: str = Field(..., description="Current FSM state")
    flow: str = Field(..., description="Booking flow")
    data: Dict[str, Any] = Field(..., description="Collected session data")


class SobreturnoAvailabilityResponse(BaseModel):
    """Overflow availability for a date"""
    date: str
    available: List[Dict[str, Any]]
    total: int


class ClearCacheRequest(BaseModel):
    """Request model for cache invalidation"""
    date: Optional[str] = Field(None, description="Only clear entries for this date")


class HealthResponse(BaseModel):
    """Response model for health check"""
    status: str = Field(..., description="Service status: healthy/degraded/unhealthy")
    redis_connected: bool = Field(..., description="Redis connectivity status")
    backend_online: bool = Field(..., description="Scheduling backend connectivity status")
    config_valid: bool = Field(..., description="Configuration validation status")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")


class MetricsResponse(BaseModel):
    """Response model for metrics endpoint"""
    messages_received: int = Field(..., description="Inbound messages processed")
    sessions_started: int = Field(..., description="Conversations started")
    bookings_confirmed: int = Field(..., description="Successful bookings")
    bookings_failed: int = Field(..., description="Booking attempts that failed")
    sessions_cancelled: int = Field(..., description="Cancelled conversations")
    active_sessions_count: int = Field(..., description="Currently active sessions")


class AdminClearSessionsResponse(BaseModel):
    """Response model for clearing sessions"""
    sessions_deleted: int = Field(..., description="Number of sessions deleted")
    message: str = Field(..., description="Operation result message")
