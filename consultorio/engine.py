"""
Conversation engine

Routes inbound chat messages to the FSM and performs the effects it asks
for: sending replies, calling the availability gateway or overflow
allocator, and saving or clearing the session. Results of backend calls that
return after their conversation was cancelled or replaced are dropped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from consultorio import messages
from consultorio.availability import AvailabilityGateway
from consultorio.bot_control import BotControl
from consultorio.config import BookingConfig
from consultorio.fsm_manager import (
    BookAppointment, BookSobreturno, ClearSession, ConversationFSM,
    FetchSlots, FetchSobreturnos, GOODBYE_FLOW, Reply, Transition,
)
from consultorio.models import (
    ADMIN_COMMANDS, APPOINTMENT_KEYWORDS, BookingFlow, ConversationSession,
    ConversationState, GOODBYE_KEYWORDS, SOBRETURNO_KEYWORDS, TERMINAL_STATES,
)
from consultorio.session_store import SessionStore
from consultorio.sobreturnos import BackendUnavailableError, OverflowAllocator

logger = logging.getLogger(__name__)


@dataclass
class EngineReply:
    """What to send back for one inbound message"""
    messages: List[str] = field(default_factory=list)
    next_flow: Optional[str] = None
    events: List[str] = field(default_factory=list)


class ConversationEngine:
    """
    Processes one inbound message at a time per phone number.

    Args:
        fsm: Pure conversation state machine
        store: Session store
        gateway: Regular appointment availability
        allocator: Overflow slot allocator
        bot_control: Global and per-conversation on/off switches
        config: Booking configuration
        now: Callable returning the current local datetime
    """

    def __init__(
        self,
        fsm: ConversationFSM,
        store: SessionStore,
        gateway: AvailabilityGateway,
        allocator: OverflowAllocator,
        bot_control: BotControl,
        config: BookingConfig,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.fsm = fsm
        self.store = store
        self.gateway = gateway
        self.allocator = allocator
        self.bot_control = bot_control
        self.config = config
        self._now = now

    async def handle_message(self, phone: str, body: str) -> EngineReply:
        """
        Handle one inbound message.

        Args:
            phone: Originating phone number
            body: Message text

        Returns:
            EngineReply with zero or more outbound messages
        """
        text = (body or "").strip()
        try:
            return await self._route(phone, text)
        except Exception as e:
            logger.exception(f"Unhandled error processing message from {phone}: {e}")
            try:
                await self.store.clear(phone)
            except Exception as clear_error:
                logger.error(f"Failed to clear session for {phone}: {clear_error}")
            return EngineReply(messages=[messages.GENERIC_ERROR], events=["session_failed"])

    async def _route(self, phone: str, text: str) -> EngineReply:
        lowered = text.lower()

        if lowered.split(" ", 1)[0] in ADMIN_COMMANDS:
            return self._handle_admin(phone, text)

        if not self.bot_control.is_active():
            logger.debug(f"Bot inactive, ignoring message from {phone}")
            return EngineReply()

        if not self.bot_control.is_conversation_active(phone):
            logger.debug(f"Conversation {phone} paused, ignoring message")
            return EngineReply()

        session = await self.store.get(phone)
        if session is not None:
            if session.state in TERMINAL_STATES or session.state == ConversationState.IDLE:
                # Left behind by an interrupted turn
                await self.store.clear(phone)
            else:
                transition = self.fsm.transition(session, text, self._now())
                return await self._apply(transition)

        if lowered in SOBRETURNO_KEYWORDS:
            return await self._apply(self.fsm.start(phone, BookingFlow.SOBRETURNO, self._now()))

        if lowered in APPOINTMENT_KEYWORDS:
            return await self._apply(self.fsm.start(phone, BookingFlow.APPOINTMENT, self._now()))

        if lowered in GOODBYE_KEYWORDS:
            return EngineReply(messages=[messages.GOODBYE])

        return EngineReply()

    # ========================================================================
    # Effects
    # ========================================================================

    async def _apply(self, transition: Transition) -> EngineReply:
        reply = EngineReply()
        session = transition.session
        cleared = False
        self._collect(reply, transition)
        effects = list(transition.effects)

        while effects:
            effect = effects.pop(0)

            if isinstance(effect, Reply):
                reply.messages.append(effect.text)
            elif isinstance(effect, ClearSession):
                await self.store.clear(session.phone)
                cleared = True
            else:
                await self.store.save(session)
                follow = await self._perform(session, effect)
                if follow is None:
                    return reply
                session = follow.session
                self._collect(reply, follow)
                effects = list(follow.effects) + effects

        if not cleared:
            if session.state in TERMINAL_STATES:
                await self.store.clear(session.phone)
            else:
                await self.store.save(session)

        if reply.next_flow == GOODBYE_FLOW:
            reply.messages.append(messages.GOODBYE)
        return reply

    @staticmethod
    def _collect(reply: EngineReply, transition: Transition):
        if transition.next_flow:
            reply.next_flow = transition.next_flow
        if transition.event:
            reply.events.append(transition.event)

    async def _perform(self, session: ConversationSession, effect: Any) -> Optional[Transition]:
        """Run one backend effect; None when the result went stale"""
        if isinstance(effect, FetchSlots):
            slots, source = await self.gateway.get_bookable_slots(effect.date, self._now())
            offline = source == "fallback"
            if not await self._still_current(session):
                return None
            return self.fsm.present_options(session, slots, offline=offline)

        if isinstance(effect, FetchSobreturnos):
            try:
                slots = await self.allocator.get_available_sobreturnos(effect.date)
            except BackendUnavailableError:
                if not await self._still_current(session):
                    return None
                return self.fsm.options_failed(session, messages.SOBRETURNOS_UNAVAILABLE)
            if not await self._still_current(session):
                return None
            return self.fsm.present_options(session, slots)

        if isinstance(effect, BookAppointment):
            result = await self._book_appointment(session, effect)
        elif isinstance(effect, BookSobreturno):
            result = await self.allocator.create_sobreturno(effect.request)
        else:
            raise TypeError(f"Unknown effect: {effect!r}")

        if not await self._still_current(session):
            logger.warning(
                f"Dropping booking result for {session.phone}: conversation ended while waiting "
                f"({'error' if result.get('error') else 'created'})"
            )
            return None
        return self.fsm.complete_booking(session, result)

    async def _book_appointment(self, session: ConversationSession, effect: BookAppointment) -> Dict[str, Any]:
        reserved = await self.gateway.get_reserved_slots(effect.request.date)
        if effect.request.time in reserved:
            logger.info(f"Slot {effect.request.time} on {effect.request.date} was reserved meanwhile")
            return {"error": True, "message": "El horario ya no está disponible", "reason": "conflict"}
        return await self.gateway.create_appointment(effect.request)

    async def _still_current(self, session: ConversationSession) -> bool:
        stored = await self.store.get(session.phone)
        current = (
            stored is not None
            and stored.conversation_id == session.conversation_id
            and stored.state == session.state
        )
        if not current:
            logger.info(f"Discarding stale result for {session.phone} (conversation {session.conversation_id})")
        return current

    # ========================================================================
    # Admin commands
    # ========================================================================

    def _handle_admin(self, phone: str, text: str) -> EngineReply:
        if not self.config.admin_number or phone != self.config.admin_number:
            return EngineReply()

        parts = text.split()
        command = parts[0].lower()

        if command in ("!help", "!admin"):
            return EngineReply(messages=[messages.ADMIN_HELP])

        if command == "!status":
            return EngineReply(messages=[messages.admin_status(
                active=self.bot_control.is_active(),
                backend_online=self.gateway.online,
                sobreturnos_online=self.allocator.online,
                paused=len(self.bot_control.paused_conversations()),
            )])

        if command == "!bot":
            active = self.bot_control.toggle_active()
            return EngineReply(messages=["🟢 Bot activado" if active else "🔴 Bot desactivado"])

        if command == "!pausa":
            if len(parts) < 2:
                return EngineReply(messages=["Uso: !pausa <teléfono>"])
            active = self.bot_control.toggle_conversation(parts[1])
            return EngineReply(messages=[
                "🟢 Conversación reactivada" if active else "🔴 Conversación desactivada por 48 horas"
            ])

        return EngineReply()
