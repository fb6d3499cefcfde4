"""
FSM Manager for the Consultorio booking engine

Contains the conversation state machine for appointment and overflow
bookings. Every method takes a session and returns a Transition: the next
session plus the effects (replies, backend calls, session clearing) the
engine should perform. Nothing here does I/O.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from consultorio import messages
from consultorio.config import BookingConfig
from consultorio.models import (
    AppointmentRequest, BookingFlow, ConversationSession, ConversationState,
    OverflowSlot, Slot, SobreturnoRequest, TERMINAL_STATES,
)
from consultorio.validation import (
    appointment_date_for, is_cancel, normalize_name, parse_selection,
    parse_social_work, sobreturno_date_for, validate_name,
)

logger = logging.getLogger(__name__)

GOODBYE_FLOW = "goodbye"


# ============================================================================
# Effects
# ============================================================================

@dataclass
class Reply:
    text: str


@dataclass
class FetchSlots:
    date: str


@dataclass
class FetchSobreturnos:
    date: str


@dataclass
class BookAppointment:
    request: AppointmentRequest


@dataclass
class BookSobreturno:
    request: SobreturnoRequest


@dataclass
class ClearSession:
    pass


Effect = Union[Reply, FetchSlots, FetchSobreturnos, BookAppointment, BookSobreturno, ClearSession]


@dataclass
class Transition:
    """Outcome of one FSM step"""
    session: ConversationSession
    effects: List[Effect] = field(default_factory=list)
    next_flow: Optional[str] = None
    event: Optional[str] = None

    @property
    def replies(self) -> List[str]:
        return [effect.text for effect in self.effects if isinstance(effect, Reply)]

    @property
    def clears_session(self) -> bool:
        return any(isinstance(effect, ClearSession) for effect in self.effects)


class ConversationFSM:
    """
    Finite state machine for a booking conversation.

    Idle -> CollectingName -> CollectingPlan -> PresentingOptions ->
    AwaitingSelection -> Booking -> Confirmed | Cancelled
    """

    def __init__(self, config: BookingConfig):
        self.config = config

    def start(self, phone: str, flow: BookingFlow, now: datetime) -> Transition:
        """Open a new conversation and ask for the patient's name"""
        session = ConversationSession(
            phone=phone,
            flow=flow,
            state=ConversationState.COLLECTING_NAME,
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        )
        if flow == BookingFlow.SOBRETURNO:
            effects = [Reply(messages.SOBRETURNO_WELCOME)]
        else:
            effects = [Reply(messages.WELCOME), Reply(messages.NAME_PROMPT)]

        self._log_transition(session, ConversationState.IDLE)
        return Transition(session, effects, event="session_started")

    def transition(self, session: ConversationSession, text: str, now: datetime) -> Transition:
        """
        Apply one inbound message to the session.

        Args:
            session: Current session (not modified)
            text: Message body
            now: Current local datetime

        Returns:
            Transition with the updated session copy
        """
        current = self._copy(session, now)
        previous = session.state

        if session.state not in TERMINAL_STATES and session.state != ConversationState.IDLE and is_cancel(text):
            result = self._cancel(current)
        elif session.state == ConversationState.COLLECTING_NAME:
            result = self._handle_name(current, text)
        elif session.state == ConversationState.COLLECTING_PLAN:
            result = self._handle_plan(current, text, now)
        elif session.state == ConversationState.AWAITING_SELECTION:
            result = self._handle_selection(current, text)
        elif session.state in (ConversationState.PRESENTING_OPTIONS, ConversationState.BOOKING):
            result = Transition(current, [Reply(messages.STILL_PROCESSING)])
        else:
            # Idle or terminal sessions should have been cleared already
            current.state = ConversationState.CANCELLED
            result = Transition(current, [Reply(messages.SESSION_EXPIRED), ClearSession()])

        self._log_transition(result.session, previous)
        return result

    def present_options(
        self,
        session: ConversationSession,
        options: Sequence[Union[Slot, OverflowSlot]],
        offline: bool = False,
    ) -> Transition:
        """
        Render the option list and store exactly what was shown.

        Args:
            session: Session in PRESENTING_OPTIONS
            options: Slots (appointment flow) or overflow slots
            offline: Slots came from the fallback list
        """
        current = self._copy(session)
        previous = session.state
        date_str = current.appointment_date

        if current.flow == BookingFlow.SOBRETURNO:
            shown = sorted(options, key=lambda slot: slot.number)
            if not shown:
                current.state = ConversationState.CANCELLED
                return self._finish(
                    current, previous, [Reply(messages.NO_SOBRETURNOS), ClearSession()]
                )
            current.available_sobreturnos = list(shown)
            text = messages.render_sobreturnos(date_str, shown)
        else:
            morning, afternoon = messages.split_by_shift(options)
            shown = morning + afternoon
            if not shown:
                current.state = ConversationState.CANCELLED
                return self._finish(
                    current,
                    previous,
                    [Reply(messages.NO_SLOTS), Reply(messages.SOBRETURNO_HINT), ClearSession()],
                )
            current.available_slots = shown
            text = messages.render_slots(date_str, shown, offline=offline)

        current.offline = offline
        current.state = ConversationState.AWAITING_SELECTION
        return self._finish(current, previous, [Reply(text)])

    def options_failed(self, session: ConversationSession, message: str) -> Transition:
        """Options could not be loaded; end the conversation"""
        current = self._copy(session)
        current.state = ConversationState.CANCELLED
        return self._finish(current, session.state, [Reply(message), ClearSession()])

    def complete_booking(self, session: ConversationSession, result: Dict[str, Any]) -> Transition:
        """
        Close the conversation with the outcome of a create call.

        Args:
            session: Session in BOOKING
            result: {"data": ...} or {"error": True, "message", "reason"}
        """
        current = self._copy(session)
        previous = session.state

        if result.get("error"):
            current.state = ConversationState.CANCELLED
            reason = result.get("reason")
            if reason in ("conflict", "not_available"):
                text = (
                    messages.SOBRETURNO_TAKEN if current.flow == BookingFlow.SOBRETURNO
                    else messages.SLOT_TAKEN
                )
            elif reason in ("connection", "timeout"):
                text = messages.TRY_LATER
            else:
                text = messages.booking_failed(result.get("message"))
            logger.info(f"Booking failed for {current.phone}: {reason} - {result.get('message')}")
            return self._finish(
                current, previous, [Reply(text), ClearSession()],
                next_flow=GOODBYE_FLOW, event="booking_failed",
            )

        current.state = ConversationState.CONFIRMED
        if current.flow == BookingFlow.SOBRETURNO:
            text = messages.sobreturno_confirmation(
                current.appointment_date,
                current.selected_sobreturno,
                current.client_name,
                current.phone,
                current.social_work,
            )
        else:
            text = messages.appointment_confirmation(self._confirmed_fields(current, result))

        return self._finish(
            current, previous, [Reply(text), ClearSession()],
            next_flow=GOODBYE_FLOW, event="booking_confirmed",
        )

    # ========================================================================
    # State Handler Methods
    # ========================================================================

    def _handle_name(self, session: ConversationSession, text: str) -> Transition:
        is_valid, error_msg = validate_name(text)
        if not is_valid:
            session.invalid_name = True
            session.retry_counts["name"] = session.retry_counts.get("name", 0) + 1
            return Transition(session, [Reply(error_msg), Reply(messages.NAME_PROMPT)])

        session.client_name = normalize_name(text)
        session.invalid_name = False
        session.retry_counts["name"] = 0
        session.state = ConversationState.COLLECTING_PLAN
        return Transition(session, [Reply(messages.PLAN_MENU)])

    def _handle_plan(self, session: ConversationSession, text: str, now: datetime) -> Transition:
        if session.invalid_name:
            session.state = ConversationState.COLLECTING_NAME
            session.client_name = None
            return Transition(session, [Reply(messages.INVALID_PREVIOUS_NAME)])

        social_work = parse_social_work(text)
        if social_work is None:
            session.retry_counts["plan"] = session.retry_counts.get("plan", 0) + 1
            return Transition(session, [Reply(messages.INVALID_PLAN)])

        session.social_work = social_work
        session.retry_counts["plan"] = 0
        session.state = ConversationState.PRESENTING_OPTIONS

        if session.flow == BookingFlow.SOBRETURNO:
            day = sobreturno_date_for(now)
            session.appointment_date = day.strftime("%Y-%m-%d")
            return Transition(
                session,
                [Reply(messages.SEARCHING_SOBRETURNOS), FetchSobreturnos(session.appointment_date)],
            )

        day = appointment_date_for(now, self.config.business_day_cutoff)
        session.appointment_date = day.strftime("%Y-%m-%d")
        return Transition(
            session,
            [Reply(messages.SEARCHING_SLOTS), FetchSlots(session.appointment_date)],
        )

    def _handle_selection(self, session: ConversationSession, text: str) -> Transition:
        options = session.options
        position = parse_selection(text, len(options))
        if position is None:
            session.retry_counts["selection"] = session.retry_counts.get("selection", 0) + 1
            return Transition(session, [Reply(messages.invalid_selection(len(options)))])

        selected = options[position - 1]
        session.state = ConversationState.BOOKING
        if session.flow == BookingFlow.SOBRETURNO:
            session.selected_sobreturno = selected
        else:
            session.selected_slot = selected

        missing = self._missing_fields(session)
        if missing:
            logger.warning(f"Session {session.phone} reached booking without {missing}")
            session.state = ConversationState.CANCELLED
            text = (
                messages.MISSING_DATA_SOBRETURNO if session.flow == BookingFlow.SOBRETURNO
                else messages.MISSING_DATA_APPOINTMENT
            )
            return Transition(session, [Reply(text), ClearSession()])

        if session.flow == BookingFlow.SOBRETURNO:
            request = SobreturnoRequest(
                client_name=session.client_name,
                social_work=session.social_work,
                phone=session.phone,
                date=session.appointment_date,
                time=selected.time,
                sobreturno_number=selected.number,
            )
            choice = f"Sobreturno N° {selected.number} ({selected.time} hs)"
            effect = BookSobreturno(request)
        else:
            request = AppointmentRequest(
                client_name=session.client_name,
                social_work=session.social_work,
                phone=session.phone,
                date=session.appointment_date,
                time=selected.display_time,
            )
            choice = selected.display_time
            effect = BookAppointment(request)

        summary = messages.booking_summary(session.client_name, session.social_work, choice)
        return Transition(session, [Reply(summary), effect])

    def _cancel(self, session: ConversationSession) -> Transition:
        session.state = ConversationState.CANCELLED
        text = (
            messages.CANCELLED_SOBRETURNO if session.flow == BookingFlow.SOBRETURNO
            else messages.CANCELLED_APPOINTMENT
        )
        return Transition(
            session, [Reply(text), ClearSession()],
            next_flow=GOODBYE_FLOW, event="session_cancelled",
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _missing_fields(session: ConversationSession) -> List[str]:
        selected = (
            session.selected_sobreturno if session.flow == BookingFlow.SOBRETURNO
            else session.selected_slot
        )
        required = {
            "client_name": session.client_name,
            "social_work": session.social_work,
            "appointment_date": session.appointment_date,
            "phone": session.phone,
            "selection": selected,
        }
        return [name for name, value in required.items() if not value]

    @staticmethod
    def _confirmed_fields(session: ConversationSession, result: Dict[str, Any]) -> Dict[str, Any]:
        """Fields echoed by the backend, falling back to what the session holds"""
        body = result.get("data") or {}
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        return {
            "date": data.get("date") or session.appointment_date,
            "time": data.get("time") or session.selected_slot.display_time,
            "clientName": data.get("clientName") or session.client_name,
            "phone": data.get("phone") or session.phone,
            "socialWork": data.get("socialWork") or session.social_work,
        }

    @staticmethod
    def _copy(session: ConversationSession, now: Optional[datetime] = None) -> ConversationSession:
        return replace(
            session,
            retry_counts=dict(session.retry_counts),
            updated_at=(now or datetime.now()).isoformat(),
        )

    def _finish(
        self,
        session: ConversationSession,
        previous: ConversationState,
        effects: List[Effect],
        next_flow: Optional[str] = None,
        event: Optional[str] = None,
    ) -> Transition:
        self._log_transition(session, previous)
        return Transition(session, effects, next_flow=next_flow, event=event)

    def _log_transition(self, session: ConversationSession, previous: ConversationState):
        if self.config.log_state_transitions and session.state != previous:
            logger.info(
                f"[{session.phone}] {session.flow.value}: {previous.value} -> {session.state.value}"
            )
