"""
Chat message templates (Spanish)

Every user-visible string the booking conversation sends lives here, along
with the renderers for slot lists and confirmations.
"""

from datetime import date, datetime
from typing import List, Sequence, Tuple, Union

from consultorio.models import OverflowSlot, SOCIAL_WORKS, Slot

DAY_NAMES = ("lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo")
MONTH_NAMES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def format_spanish_date(value: Union[str, date, datetime]) -> str:
    """'2024-06-10' -> 'lunes 10 de junio de 2024'"""
    if isinstance(value, str):
        value = datetime.strptime(value[:10], "%Y-%m-%d").date()
    elif isinstance(value, datetime):
        value = value.date()
    return f"{DAY_NAMES[value.weekday()]} {value.day} de {MONTH_NAMES[value.month - 1]} de {value.year}"


# ============================================================================
# Entry / data collection
# ============================================================================

WELCOME = "🤖🩺 *¡Bienvenido al Asistente Virtual del Dr.Kulinka!* 🩺"

NAME_PROMPT = "Por favor, indícame tu *NOMBRE* y *APELLIDO* (ej: Juan Pérez):"

SOBRETURNO_WELCOME = (
    "🏥 *SOLICITUD DE SOBRETURNOS*\n\n"
    "Has solicitado un *sobreturno*. Para continuar, necesito algunos datos.\n\n"
    + NAME_PROMPT
)

PLAN_MENU = (
    "*Perfecto!* Ahora selecciona tu *OBRA SOCIAL* de la siguiente lista:\n\n"
    + "\n".join(f"{key}️⃣ {name}" for key, name in SOCIAL_WORKS.items())
    + "\n\n_Responde con el número correspondiente (1, 2, 3, 4, 5 o 6)_"
)

INVALID_PLAN = "❌ Opción inválida. Por favor, selecciona un número del 1 al 6."
INVALID_PREVIOUS_NAME = "❌ El nombre anterior no es válido. Por favor, ingresa tu nombre completo:"

SEARCHING_SLOTS = "⏳ *Consultando horarios disponibles...*"
SEARCHING_SOBRETURNOS = "🔍 *Perfecto!* Ahora voy a buscar los sobreturnos disponibles..."

STILL_PROCESSING = "⏳ Estamos procesando tu solicitud, por favor espera un momento..."


# ============================================================================
# Option lists
# ============================================================================

NO_SLOTS = "❌ Lo siento, no hay horarios disponibles para el día solicitado."
SOBRETURNO_HINT = "🏥 Si necesitas atención urgente, escribe *\"sobreturnos\"* para solicitar un sobreturno."
NO_SOBRETURNOS = "❌ Lo siento, no hay sobreturnos disponibles para la fecha."
SOBRETURNOS_UNAVAILABLE = "❌ Ocurrió un error al consultar los sobreturnos. Por favor, intenta nuevamente más tarde."
FALLBACK_NOTICE = "⚠️ _No pudimos conectar con el sistema de turnos; estos horarios son de referencia y se confirmarán al reservar._"


def split_by_shift(slots: Sequence[Slot]) -> Tuple[List[Slot], List[Slot]]:
    """Morning (before 12:00) and afternoon slots, each in their original order"""
    morning = [slot for slot in slots if int(slot.time.split(":")[0]) < 12]
    afternoon = [slot for slot in slots if int(slot.time.split(":")[0]) >= 12]
    return morning, afternoon


def render_slots(date_str: str, slots: Sequence[Slot], offline: bool = False) -> str:
    """
    Numbered slot list. Positions run 1..len(slots) in the given order, so
    callers must pass the list already ordered morning-first.
    """
    morning, afternoon = split_by_shift(slots)
    lines = ["📅 *Horarios disponibles*", f"📆 Para el día: *{format_spanish_date(date_str)}*", ""]
    position = 1
    for title, group in (("*🌅 Horarios de mañana:*", morning), ("*🌇 Horarios de tarde:*", afternoon)):
        if not group:
            continue
        lines.append(title)
        for slot in group:
            lines.append(f"{position}. ⏰ {slot.display_time}")
            position += 1
        lines.append("")

    if offline:
        lines.append(FALLBACK_NOTICE)
    lines.append("📝 *Para reservar, responde con el número del horario que deseas*")
    lines.append(SOBRETURNO_HINT)
    lines.append("❌ Para cancelar, escribe *\"cancelar\"*")
    return "\n".join(lines)


def render_sobreturnos(date_str: str, slots: Sequence[OverflowSlot]) -> str:
    lines = ["📅 *SOBRETURNOS DISPONIBLES*", f"📆 *Fecha:* {format_spanish_date(date_str)}", ""]
    morning = [s for s in slots if s.is_morning]
    afternoon = [s for s in slots if not s.is_morning]
    position = 1
    for title, group in (("🌅 *Turno Mañana:*", morning), ("🌇 *Turno Tarde:*", afternoon)):
        if not group:
            continue
        lines.append(title)
        for slot in group:
            lines.append(f"{position}. 🕒 {slot.time} hs (Sobreturno N° {slot.number})")
            position += 1
        lines.append("")

    lines.append("📝 *Para seleccionar un sobreturno, responde con el número correspondiente*")
    lines.append("❌ Para cancelar, escribe *cancelar*")
    return "\n".join(lines)


def invalid_selection(count: int) -> str:
    return f"❌ Por favor, responde con un número válido (1-{count}) o escribe *cancelar* para cancelar."


# ============================================================================
# Booking
# ============================================================================

MISSING_DATA_APPOINTMENT = "❌ Hubo un problema con los datos de la cita. Por favor, intenta nuevamente desde el inicio escribiendo \"turnos\"."
MISSING_DATA_SOBRETURNO = "❌ Faltan datos para procesar el sobreturno. Por favor, inicia nuevamente escribiendo \"sobreturno\"."

SLOT_TAKEN = "❌ Lo siento, este horario ya no está disponible. Por favor, escribe *\"turnos\"* para elegir otro."
SOBRETURNO_TAKEN = "❌ Lo siento, este sobreturno ya no está disponible. Por favor, escribe *\"sobreturno\"* para elegir otro número."
TRY_LATER = "❌ No pudimos comunicarnos con el sistema de turnos. Por favor, intenta nuevamente más tarde."


def booking_summary(client_name: str, social_work: str, choice: str) -> str:
    return (
        "⏳ *Procesando tu reserva...*\n\n"
        f"📝 *Resumen:*\n👤 {client_name}\n🏥 {social_work}\n🕒 {choice}"
    )


def booking_failed(message: str) -> str:
    return f"❌ {message or 'Hubo un problema al crear la cita'}. Por favor, intenta nuevamente."


def appointment_confirmation(data: dict) -> str:
    return (
        "✨ *CONFIRMACIÓN DE CITA MÉDICA* ✨\n\n"
        "✅ La cita ha sido agendada exitosamente\n\n"
        f"📅 *Fecha:* {format_spanish_date(data['date'])}\n"
        f"🕒 *Hora:* {data['time']}\n"
        f"👤 *Paciente:* {data['clientName']}\n"
        f"📞 *Teléfono:* {data['phone']}\n"
        f"🏥 *Obra Social:* {data['socialWork']}\n\n"
        "ℹ️ *Información importante:*\n"
        "- Por favor, llegue 10 minutos antes de su cita\n"
        "- Traiga su documento de identidad\n"
        "- Traiga su carnet de obra social\n\n"
        "📌 *Para cambios o cancelaciones:*\n"
        "Por favor contáctenos con anticipación\n\n"
        "*¡Gracias por confiar en nosotros!* 🙏"
    )


def sobreturno_confirmation(date_str: str, slot: OverflowSlot, client_name: str, phone: str, social_work: str) -> str:
    return (
        "✨ *CONFIRMACIÓN DE SOBRETURNO* ✨\n\n"
        "✅ *¡Tu sobreturno ha sido agendado exitosamente!*\n\n"
        f"📅 *Fecha:* {format_spanish_date(date_str)}\n"
        f"🔢 *Sobreturno:* {slot.number}\n"
        f"🕒 *Horario:* {slot.time} hs\n"
        f"👤 *Paciente:* {client_name}\n"
        f"📞 *Teléfono:* {phone}\n"
        f"🏥 *Obra Social:* {social_work}\n\n"
        "⚠️ *IMPORTANTE:*\n"
        "• Llegue 10 minutos antes\n"
        "• Traiga documento de identidad\n"
        "• Traiga carnet de obra social\n"
        "• *El sobreturno depende de la disponibilidad del médico*"
    )


# ============================================================================
# Terminal / misc
# ============================================================================

CANCELLED_APPOINTMENT = "❌ *Reserva cancelada.* Si necesitas más ayuda, no dudes en contactarnos nuevamente.\n🤗 ¡Que tengas un excelente día!"
CANCELLED_SOBRETURNO = "❌ *Solicitud de sobreturno cancelada.*\n\nSi necesitas ayuda, no dudes en contactarnos nuevamente.\n🤗 ¡Que tengas un excelente día!"
SESSION_EXPIRED = "⚠️ Tu sesión anterior expiró. Escribe *\"turnos\"* o *\"sobreturno\"* para comenzar de nuevo."
GOODBYE = "👋 *¡Hasta luego! Si necesitas más ayuda, no dudes en contactarnos nuevamente.*"
GENERIC_ERROR = "❌ Ocurrió un error inesperado. Por favor, intenta nuevamente más tarde."

ADMIN_HELP = (
    "Comandos disponibles:\n"
    "!status - Muestra el estado actual del bot\n"
    "!bot - Activa o desactiva el bot\n"
    "!pausa <teléfono> - Pausa o reanuda el bot para una conversación (48 hs)"
)


def admin_status(active: bool, backend_online: bool, sobreturnos_online: bool, paused: int) -> str:
    return (
        f"Estado del bot: {'Activo' if active else 'Inactivo'}\n"
        f"Sistema de turnos: {'En línea' if backend_online else 'Sin conexión'}\n"
        f"Sistema de sobreturnos: {'En línea' if sobreturnos_online else 'Sin conexión'}\n"
        f"Conversaciones pausadas: {paused}"
    )
