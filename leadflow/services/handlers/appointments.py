from datetime import date, timedelta
from typing import Any, Optional

from leadflow.logging_config import get_logger
from leadflow.schemas.flow import StepKind
from leadflow.services.collaborators.appointment_client import AppointmentClient
from leadflow.services.collaborators.tasks_client import TaskClient
from leadflow.services.collaborators.verification_client import VerificationClient
from leadflow.services.handlers.base import StepContext, StepHandler, StepResult
from leadflow.services.stage_service import StageService
from leadflow.services.timers import Clock, utc_now

logger = get_logger("handlers.appointments")

MISSING_SELECTION_MESSAGE = (
    "No tengo toda la información necesaria para agendar tu cita. Por favor, selecciona fecha y hora primero."
)
SLOT_UNAVAILABLE_MESSAGE = "El horario seleccionado ya no está disponible. Por favor, elige otro horario."
BOOKING_FAILED_MESSAGE = (
    "Lo siento, hubo un problema al agendar tu cita. "
    "Por favor, intenta de nuevo más tarde o contáctanos directamente por teléfono."
)
AVAILABILITY_FAILED_MESSAGE = (
    "Lo siento, hubo un problema al verificar la disponibilidad. Por favor, intenta de nuevo más tarde."
)


def _first(data: dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


class CheckAvailabilityHandler(StepHandler):
    kind = StepKind.CHECK_AVAILABILITY

    def __init__(self, appointments: AppointmentClient, clock: Clock = utc_now):
        self.appointments = appointments
        self.clock = clock

    async def execute(self, ctx: StepContext) -> StepResult:
        data = ctx.collected_data
        date_to_check = data.get("selectedDate") or self.clock().date().isoformat()

        try:
            slots = await self.appointments.check_availability(
                ctx.tenant_id,
                date_to_check,
                appointment_type_id=ctx.config.get("appointment_type_id") or data.get("appointment_type_id"),
                location_id=ctx.config.get("location_id") or data.get("location_id"),
                agent_id=ctx.config.get("agent_id") or data.get("agent_id"),
            )
        except Exception as exc:
            logger.error(
                "Availability check failed",
                extra={"context": {"lead_id": ctx.lead_id, "date": date_to_check, "error": str(exc)}},
            )
            return StepResult(handle="unavailable", message=AVAILABILITY_FAILED_MESSAGE, context=data)

        context = dict(data)
        context["availableSlots"] = slots
        context["hasAvailability"] = bool(slots)
        context["checkedDate"] = date_to_check

        if slots:
            slots_text = ", ".join(str(slot.get("start_time")) for slot in slots[:3])
            more = ", entre otros" if len(slots) > 3 else ""
            message = (
                f"Tenemos disponibilidad para el {date_to_check}. "
                f"Los horarios disponibles son: {slots_text}{more}. ¿Te gustaría agendar una cita?"
            )
            return StepResult(handle="available", message=message, context=context)

        message = (
            f"Lo siento, no tenemos horarios disponibles para el {date_to_check}. "
            "¿Te gustaría que un agente te contacte para encontrar un horario que funcione para ti?"
        )
        return StepResult(handle="unavailable", message=message, context=context)


class BookAppointmentHandler(StepHandler):
    kind = StepKind.BOOK_APPOINTMENT

    def __init__(
        self,
        appointments: AppointmentClient,
        stage_service: Optional[StageService] = None,
        tasks: Optional[TaskClient] = None,
        verification: Optional[VerificationClient] = None,
    ):
        self.appointments = appointments
        self.stage_service = stage_service
        self.tasks = tasks
        self.verification = verification

    async def execute(self, ctx: StepContext) -> StepResult:
        data = ctx.collected_data
        selected_date = data.get("selectedDate")
        selected_time = data.get("selectedTimeSlot")
        available_slots = data.get("availableSlots")

        if not selected_date or not selected_time or not available_slots:
            return StepResult(handle="failure", message=MISSING_SELECTION_MESSAGE, context=data)

        slot = next(
            (s for s in available_slots if isinstance(s, dict) and s.get("start_time") == selected_time),
            None,
        )
        if slot is None:
            return StepResult(handle="failure", message=SLOT_UNAVAILABLE_MESSAGE, context=data)

        customer_email = _first(data, "customerEmail", "userEmail", "email")
        agent_id = data.get("agent_id")
        appointment_data = {
            "customer_name": _first(data, "customerName", "userName", "nombre") or "Cliente chatbot",
            "customer_email": customer_email,
            "customer_phone": _first(data, "customerPhone", "userPhone", "phone"),
            "date": selected_date,
            "start_time": slot.get("start_time"),
            "end_time": slot.get("end_time"),
            "appointment_type_id": data.get("appointment_type_id"),
            "notes": data.get("appointmentNotes") or "Cita programada a través del chatbot",
            "location_id": data.get("location_id"),
            "agent_id": agent_id,
            "lead_id": ctx.lead_id,
        }

        try:
            appointment = await self.appointments.create_appointment(ctx.tenant_id, appointment_data)
        except Exception as exc:
            logger.error(
                "Appointment booking failed",
                extra={"context": {"lead_id": ctx.lead_id, "date": selected_date, "error": str(exc)}},
            )
            return StepResult(handle="failure", message=BOOKING_FAILED_MESSAGE, context=data)

        appointment_id = appointment.get("id")
        logger.info(
            "Appointment booked",
            extra={"context": {"lead_id": ctx.lead_id, "appointment_id": appointment_id, "date": selected_date}},
        )

        applied_stage = await self._update_stage(ctx)
        await self._create_follow_up(ctx, selected_date, agent_id)
        qr_url, qr_token, email_sent = await self._send_verification(ctx, appointment_id, customer_email)

        context = dict(data)
        context["appointmentCreated"] = True
        context["appointmentId"] = appointment_id
        context["appointmentDetails"] = appointment
        context["qrCodeUrl"] = qr_url
        context["qrCodeToken"] = qr_token

        message = f"¡Perfecto! Tu cita ha sido agendada para el {selected_date} a las {slot.get('start_time')}."
        if email_sent:
            message += f" Te hemos enviado los detalles por correo electrónico a {customer_email}."
        if qr_url:
            message += " También te hemos generado un código QR que puedes presentar al llegar a tu cita."
        message += " ¿Necesitas algo más?"

        return StepResult(handle="success", message=message, context=context, stage=applied_stage)

    async def _update_stage(self, ctx: StepContext) -> Optional[str]:
        if not ctx.config.get("update_lead_stage") or self.stage_service is None:
            return None
        new_stage = ctx.config.get("new_lead_stage") or "confirmed"
        try:
            result = await self.stage_service.update_lead_stage(ctx.tenant_id, ctx.lead_id, new_stage)
            if result.ok:
                return result.value.new_stage
            logger.error(
                "Stage update after booking failed",
                extra={"context": {"lead_id": ctx.lead_id, "stage": new_stage, "error": result.error}},
            )
        except Exception as exc:
            logger.error(
                "Stage update after booking failed",
                extra={"context": {"lead_id": ctx.lead_id, "stage": new_stage, "error": str(exc)}},
            )
        return None

    async def _create_follow_up(self, ctx: StepContext, selected_date: str, agent_id: Optional[str]) -> None:
        if not ctx.config.get("create_follow_up_task") or self.tasks is None or not agent_id:
            return
        try:
            due = date.fromisoformat(str(selected_date)[:10]) + timedelta(days=1)
            await self.tasks.create_follow_up_task(
                ctx.tenant_id,
                ctx.lead_id,
                agent_id,
                due,
                f"Seguimiento después de cita el {selected_date}",
            )
        except Exception as exc:
            logger.error(
                "Follow-up task creation failed",
                extra={"context": {"lead_id": ctx.lead_id, "error": str(exc)}},
            )

    async def _send_verification(
        self, ctx: StepContext, appointment_id: Optional[str], email: Optional[str]
    ) -> tuple[str, str, bool]:
        if self.verification is None or not appointment_id:
            return "", "", False
        try:
            code = await self.verification.generate_for_appointment(ctx.tenant_id, str(appointment_id))
        except Exception as exc:
            logger.error(
                "QR generation failed",
                extra={"context": {"lead_id": ctx.lead_id, "appointment_id": appointment_id, "error": str(exc)}},
            )
            return "", "", False

        email_sent = False
        if ctx.config.get("send_confirmation") and email:
            try:
                await self.verification.send_by_email(ctx.tenant_id, str(appointment_id), email)
                email_sent = True
            except Exception as exc:
                logger.error(
                    "QR email failed",
                    extra={"context": {"lead_id": ctx.lead_id, "appointment_id": appointment_id, "error": str(exc)}},
                )
        return code.url, code.token, email_sent
