"""
End-to-end conversation tests through the ConversationEngine.

Sessions live in the dict-backed Redis mock and the scheduling backend is the
in-process FakeBackend, so every test exercises routing, the FSM, the
gateway/allocator and the session store together.
"""

import asyncio
from unittest.mock import patch

import pytest

from .. import messages
from ..models import BookingFlow, ConversationSession, ConversationState, Slot
from ..session_store import SESSION_PREFIX
from .conftest import ADMIN_NUMBER, TODAY

PHONE = "5493624111111"


async def converse(engine, *texts, phone=PHONE):
    """Send several messages, returning every reply"""
    return [await engine.handle_message(phone, text) for text in texts]


def session_keys(mock_redis_client):
    return [key for key in mock_redis_client.stored_data if key.startswith(SESSION_PREFIX)]


class TestAppointmentFlow:
    """Regular appointment conversations"""

    @pytest.mark.asyncio
    async def test_full_booking(self, engine, fake_backend, mock_redis_client):
        greeting, name, plan, selection = await converse(engine, "Hola", "juan pérez", "2", "1")

        assert greeting.messages == [messages.WELCOME, messages.NAME_PROMPT]
        assert greeting.events == ["session_started"]
        assert name.messages == [messages.PLAN_MENU]

        assert plan.messages[0] == messages.SEARCHING_SLOTS
        options = plan.messages[1]
        assert "1. ⏰ 09:00" in options
        assert "4. ⏰ 16:30" in options
        assert "10:00" not in options

        assert "Procesando tu reserva" in selection.messages[0]
        assert "CONFIRMACIÓN DE CITA MÉDICA" in selection.messages[1]
        assert selection.messages[-1] == messages.GOODBYE
        assert selection.next_flow == "goodbye"
        assert selection.events == ["booking_confirmed"]

        sent = fake_backend.appointments[0]
        assert sent["clientName"] == "Juan Pérez"
        assert sent["socialWork"] == "Swiss Medical"
        assert sent["date"] == TODAY
        assert sent["time"] == "09:00"
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_session_persisted_between_messages(self, engine, mock_redis_client):
        await converse(engine, "turnos", "Juan Pérez")

        session = await engine.store.get(PHONE)
        assert session.state == ConversationState.COLLECTING_PLAN
        assert session.client_name == "Juan Pérez"
        assert session_keys(mock_redis_client) == [f"{SESSION_PREFIX}{PHONE}"]

    @pytest.mark.asyncio
    async def test_invalid_name_keeps_state(self, engine):
        _, reply = await converse(engine, "hola", "Juan")

        assert reply.messages[-1] == messages.NAME_PROMPT
        session = await engine.store.get(PHONE)
        assert session.state == ConversationState.COLLECTING_NAME
        assert session.invalid_name

    @pytest.mark.asyncio
    async def test_cancel_before_booking(self, engine, fake_backend, mock_redis_client):
        replies = await converse(engine, "hola", "Juan Pérez", "3", "cancelar")

        cancel = replies[-1]
        assert cancel.messages == [messages.CANCELLED_APPOINTMENT, messages.GOODBYE]
        assert cancel.events == ["session_cancelled"]
        assert fake_backend.count("POST", "/appointments") == 0
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_backend_down_shows_reference_slots(self, engine, fake_backend):
        fake_backend.healthy = False

        replies = await converse(engine, "hola", "Juan Pérez", "5")

        options = replies[-1].messages[-1]
        assert messages.FALLBACK_NOTICE in options
        assert "1. ⏰ 09:00" in options
        session = await engine.store.get(PHONE)
        assert session.offline
        assert len(session.available_slots) == 14

    @pytest.mark.asyncio
    async def test_offline_notice_follows_returned_source(self, engine, fake_backend):
        await converse(engine, "hola", "Juan Pérez")
        reference = [Slot("09:00", "09:00"), Slot("09:30", "09:30")]

        with patch.object(engine.gateway, "get_bookable_slots", return_value=(reference, "fallback")):
            reply = await engine.handle_message(PHONE, "2")

        assert messages.FALLBACK_NOTICE in reply.messages[-1]
        assert (await engine.store.get(PHONE)).offline

    @pytest.mark.asyncio
    async def test_slot_reserved_meanwhile(self, engine, fake_backend):
        await converse(engine, "hola", "Juan Pérez", "2")
        fake_backend.reserved.append("09:00")

        reply = await engine.handle_message(PHONE, "1")

        assert reply.messages[1] == messages.SLOT_TAKEN
        assert reply.events == ["booking_failed"]
        assert fake_backend.count("POST", "/appointments") == 0

    @pytest.mark.asyncio
    async def test_no_slots_suggests_sobreturno(self, engine, fake_backend, mock_redis_client):
        fake_backend.available = {"morning": [], "afternoon": []}

        replies = await converse(engine, "hola", "Juan Pérez", "2")

        assert replies[-1].messages[1:] == [messages.NO_SLOTS, messages.SOBRETURNO_HINT]
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_stale_slot_list_is_dropped(self, engine, fake_backend, mock_redis_client):
        await converse(engine, "hola", "Juan Pérez")

        async def slow_fetch(date, now):
            # The user abandons the conversation while the backend answers
            await engine.store.clear(PHONE)
            return [Slot("09:00", "09:00")], "live"

        with patch.object(engine.gateway, "get_bookable_slots", side_effect=slow_fetch):
            reply = await engine.handle_message(PHONE, "2")

        assert reply.messages == [messages.SEARCHING_SLOTS]
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_stale_booking_result_is_dropped(self, engine, fake_backend, mock_redis_client):
        await converse(engine, "hola", "Juan Pérez", "2")
        original = engine.gateway.create_appointment

        async def racing_create(request):
            result = await original(request)
            # A new conversation replaced this one while the POST was in flight
            await engine.store.save(ConversationSession(
                phone=PHONE, state=ConversationState.COLLECTING_NAME
            ))
            return result

        with patch.object(engine.gateway, "create_appointment", side_effect=racing_create):
            reply = await engine.handle_message(PHONE, "1")

        assert len(reply.messages) == 1
        assert "Procesando tu reserva" in reply.messages[0]
        session = await engine.store.get(PHONE)
        assert session.state == ConversationState.COLLECTING_NAME

    @pytest.mark.asyncio
    async def test_message_while_booking(self, engine):
        await engine.store.save(ConversationSession(
            phone=PHONE, state=ConversationState.BOOKING, client_name="Juan Pérez"
        ))

        reply = await engine.handle_message(PHONE, "hola?")

        assert reply.messages == [messages.STILL_PROCESSING]


class TestSobreturnoFlow:
    """Overflow conversations"""

    @pytest.mark.asyncio
    async def test_full_booking(self, engine, fake_backend, mock_redis_client):
        start, _, plan, selection = await converse(engine, "Sobreturno", "Ana Gómez", "1", "7")

        assert start.messages == [messages.SOBRETURNO_WELCOME]
        assert plan.messages[0] == messages.SEARCHING_SOBRETURNOS
        assert "7. 🕒 19:15 hs (Sobreturno N° 7)" in plan.messages[1]

        assert "CONFIRMACIÓN DE SOBRETURNO" in selection.messages[1]
        assert selection.messages[-1] == messages.GOODBYE

        sent = fake_backend.sobreturnos[0]
        assert sent["sobreturnoNumber"] == 7
        assert sent["time"] == "19:15"
        assert sent["socialWork"] == "INSSSEP"
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_two_patients_same_number(self, engine, fake_backend):
        other = "5493624222222"
        await converse(engine, "sobreturno", "Ana Gómez", "1")
        await converse(engine, "sobreturno", "Luis Díaz", "3", phone=other)

        first, second = await asyncio.gather(
            engine.handle_message(PHONE, "6"),
            engine.handle_message(other, "6"),
        )

        outcomes = sorted(reply.events[0] for reply in (first, second))
        assert outcomes == ["booking_confirmed", "booking_failed"]
        loser = first if first.events == ["booking_failed"] else second
        assert loser.messages[1] == messages.SOBRETURNO_TAKEN
        assert len([r for r in fake_backend.sobreturnos if r["sobreturnoNumber"] == 6]) == 1

    @pytest.mark.asyncio
    async def test_taken_while_choosing(self, engine, fake_backend):
        await converse(engine, "sobreturnos", "Ana Gómez", "1")
        fake_backend.sobreturnos.append({
            "date": TODAY, "time": "11:00", "sobreturnoNumber": 1,
            "isSobreturno": True, "status": "confirmed",
        })

        reply = await engine.handle_message(PHONE, "1")

        assert reply.messages[1] == messages.SOBRETURNO_TAKEN
        assert fake_backend.count("POST", "/sobreturnos") == 0

    @pytest.mark.asyncio
    async def test_backend_unreachable(self, engine, fake_backend, mock_redis_client):
        fake_backend.healthy = False

        replies = await converse(engine, "sobreturno", "Ana Gómez", "1")

        assert replies[-1].messages[-1] == messages.SOBRETURNOS_UNAVAILABLE
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_cancel_while_choosing(self, engine, fake_backend):
        replies = await converse(engine, "sobreturno", "Ana Gómez", "1", "CANCELAR")

        assert replies[-1].messages[0] == messages.CANCELLED_SOBRETURNO
        assert fake_backend.count("POST", "/sobreturnos") == 0


class TestRouting:
    @pytest.mark.asyncio
    async def test_unknown_text_without_session_is_ignored(self, engine, mock_redis_client):
        reply = await engine.handle_message(PHONE, "quiero info")

        assert reply.messages == []
        assert session_keys(mock_redis_client) == []

    @pytest.mark.asyncio
    async def test_goodbye_keyword(self, engine):
        reply = await engine.handle_message(PHONE, "Chau")
        assert reply.messages == [messages.GOODBYE]

    @pytest.mark.asyncio
    async def test_leftover_terminal_session_is_replaced(self, engine):
        await engine.store.save(ConversationSession(
            phone=PHONE, flow=BookingFlow.SOBRETURNO, state=ConversationState.CONFIRMED
        ))

        reply = await engine.handle_message(PHONE, "hola")

        assert reply.messages == [messages.WELCOME, messages.NAME_PROMPT]
        session = await engine.store.get(PHONE)
        assert session.flow == BookingFlow.APPOINTMENT

    @pytest.mark.asyncio
    async def test_unexpected_error_resets_conversation(self, engine, mock_redis_client):
        await converse(engine, "hola")

        with patch.object(engine.fsm, "transition", side_effect=RuntimeError("boom")):
            reply = await engine.handle_message(PHONE, "Juan Pérez")

        assert reply.messages == [messages.GENERIC_ERROR]
        assert reply.events == ["session_failed"]
        assert session_keys(mock_redis_client) == []


class TestAdminCommands:
    @pytest.mark.asyncio
    async def test_toggle_bot(self, engine):
        off = await engine.handle_message(ADMIN_NUMBER, "!bot")
        assert off.messages == ["🔴 Bot desactivado"]

        ignored = await engine.handle_message(PHONE, "hola")
        assert ignored.messages == []

        on = await engine.handle_message(ADMIN_NUMBER, "!bot")
        assert on.messages == ["🟢 Bot activado"]
        assert (await engine.handle_message(PHONE, "hola")).messages[0] == messages.WELCOME

    @pytest.mark.asyncio
    async def test_commands_from_other_numbers_ignored(self, engine):
        reply = await engine.handle_message(PHONE, "!bot")

        assert reply.messages == []
        assert engine.bot_control.is_active()

    @pytest.mark.asyncio
    async def test_pause_one_conversation(self, engine):
        paused = await engine.handle_message(ADMIN_NUMBER, f"!pausa {PHONE}")
        assert paused.messages == ["🔴 Conversación desactivada por 48 horas"]

        assert (await engine.handle_message(PHONE, "hola")).messages == []
        other = await engine.handle_message("5493624222222", "hola")
        assert other.messages[0] == messages.WELCOME

        resumed = await engine.handle_message(ADMIN_NUMBER, f"!pausa {PHONE}")
        assert resumed.messages == ["🟢 Conversación reactivada"]

    @pytest.mark.asyncio
    async def test_pause_requires_phone(self, engine):
        reply = await engine.handle_message(ADMIN_NUMBER, "!pausa")
        assert reply.messages == ["Uso: !pausa <teléfono>"]

    @pytest.mark.asyncio
    async def test_status_and_help(self, engine):
        await engine.handle_message(ADMIN_NUMBER, f"!pausa {PHONE}")

        status = await engine.handle_message(ADMIN_NUMBER, "!status")
        assert "Estado del bot: Activo" in status.messages[0]
        assert "Conversaciones pausadas: 1" in status.messages[0]

        help_reply = await engine.handle_message(ADMIN_NUMBER, "!help")
        assert help_reply.messages == [messages.ADMIN_HELP]
