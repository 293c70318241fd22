"""Tests for the dialogue engine and the booking flow."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from counselbot.core.dialogue import DialogueEngine, InboundMessage
from counselbot.core.dialogue.session import FlowType, InMemorySessionRepository
from counselbot.core.scheduling import ReservationPayload
from counselbot.models.database import Appointment, AppointmentStatus, Client, PaymentStatus

from tests.conftest import at

BOOKING_ANSWERS = [
    ("consent", "Yes"),
    ("full_name", "Jane Wanjiru"),
    ("date_of_birth", "1995-04-12"),
    ("contact_phone", "+254712345678"),
    ("contact_email", "jane@example.com"),
    ("session_duration", "60 mins"),
    ("session_datetime", "2030-01-07 14:00"),
    ("session_type", "Phone"),
    ("therapy_reason", "I have been feeling anxious lately"),
    ("session_goals", "Learn ways to manage stress"),
    ("previous_therapy", "No"),
    ("provider", "1"),
    ("emergency_contact", "John Doe +254700000000"),
    ("payment_method", "Bank"),
    ("confirm", "yes"),
]


@pytest.fixture
def repository():
    return InMemorySessionRepository(idle_ttl=1800)


@pytest.fixture
def dialogue(repository, notifier, policy, resolver):
    return DialogueEngine(
        repository=repository,
        notifier=notifier,
        policy=policy,
        resolver=resolver,
    )


async def say(dialogue: DialogueEngine, text: str, user_id: str = "42") -> list[str]:
    replies = await dialogue.process(InboundMessage(user_id=user_id, text=text, username="jane"))
    return [reply.text for reply in replies]


async def answer_until(dialogue: DialogueEngine, step: str) -> None:
    """Start booking and answer every step before ``step``."""
    await say(dialogue, "/book")
    for name, text in BOOKING_ANSWERS:
        if name == step:
            return
        await say(dialogue, text)


class TestBookingFlow:
    """End-to-end booking through the engine."""

    @pytest.mark.asyncio
    async def test_start_asks_for_consent(self, dialogue, repository, provider):
        replies = await say(dialogue, "/book")

        session = await repository.get("42")
        assert session.flow_type == FlowType.BOOKING
        assert session.step == "consent"
        assert "Shall we begin?" in replies[0]

    @pytest.mark.asyncio
    async def test_keyboard_label_starts_booking(self, dialogue, repository, provider):
        await say(dialogue, "📅 Book Appointment")
        assert (await repository.get("42")).flow_type == FlowType.BOOKING

    @pytest.mark.asyncio
    async def test_invalid_date_of_birth_is_reprompted(self, dialogue, repository, provider):
        await answer_until(dialogue, "date_of_birth")

        replies = await say(dialogue, "abc")

        session = await repository.get("42")
        assert session.step == "date_of_birth"
        assert "date_of_birth" not in session.collected_fields
        assert "YYYY-MM-DD" in replies[0]
        assert "What's your date of birth?" in replies[0]

        await say(dialogue, "1995-04-12")

        session = await repository.get("42")
        assert session.step == "contact_phone"
        assert session.collected_fields["date_of_birth"] == "1995-04-12"

    @pytest.mark.asyncio
    async def test_out_of_hours_time_is_reprompted(self, dialogue, repository, provider):
        await answer_until(dialogue, "session_datetime")

        replies = await say(dialogue, "2030-01-07 07:00")

        assert (await repository.get("42")).step == "session_datetime"
        assert "8:00 AM" in replies[0]

    @pytest.mark.asyncio
    async def test_complete_booking(self, dialogue, repository, provider, database):
        replies = []
        await say(dialogue, "/book")
        for _, text in BOOKING_ANSWERS:
            replies = await say(dialogue, text)

        assert await repository.get("42") is None
        assert len(replies) == 2
        assert "is reserved" in replies[0]
        assert "Bank Transfer Payment" in replies[1]

        async with database() as db:
            appointment = (await db.execute(select(Appointment))).scalar_one()
            client = await db.get(Client, appointment.client_id)

        assert appointment.code in replies[0]
        assert appointment.status == AppointmentStatus.PENDING_PAYMENT
        assert appointment.payment_status == PaymentStatus.PENDING
        assert appointment.channel_user_id == "42"
        assert appointment.duration_minutes == 60
        assert client.full_name == "Jane Wanjiru"
        assert client.emergency_contact_phone == "+254700000000"
        assert client.previous_therapy is False

    @pytest.mark.asyncio
    async def test_conflict_asks_for_new_time_and_keeps_answers(
        self, dialogue, repository, resolver, provider, database
    ):
        await resolver.reserve(provider.id, at(13, 30), at(14, 30))
        await answer_until(dialogue, "confirm")

        replies = await say(dialogue, "yes")

        session = await repository.get("42")
        assert session.step == "session_datetime"
        assert "already booked from 13:30 to 14:30" in replies[0]
        assert session.collected_fields["full_name"] == "Jane Wanjiru"

        # Straight back to confirmation with the new time
        replies = await say(dialogue, "2030-01-07 15:00")
        assert (await repository.get("42")).step == "confirm"
        assert "2030-01-07 15:00" in replies[0]

        await say(dialogue, "yes")
        assert await repository.get("42") is None

        async with database() as db:
            appointments = (await db.execute(select(Appointment))).scalars().all()
        assert len(appointments) == 2

    @pytest.mark.asyncio
    async def test_declining_consent_ends_flow(self, dialogue, repository, provider):
        await say(dialogue, "/book")

        replies = await say(dialogue, "No")

        assert await repository.get("42") is None
        assert "cancelled the booking" in replies[0]

    @pytest.mark.asyncio
    async def test_no_providers(self, dialogue, repository, database):
        replies = await say(dialogue, "/book")

        assert await repository.get("42") is None
        assert "no counselors are available" in replies[0]


class TestCancellation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("step", ["full_name", "contact_email", "session_type", "provider", "confirm"])
    async def test_cancel_token_at_any_step(self, dialogue, repository, provider, database, step):
        await answer_until(dialogue, step)

        replies = await say(dialogue, "cancel")

        assert await repository.get("42") is None
        assert "cancelled the booking" in replies[0]
        async with database() as db:
            assert (await db.execute(select(Appointment))).first() is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["/cancel", "STOP", "quit"])
    async def test_other_cancel_tokens(self, dialogue, repository, provider, token):
        await answer_until(dialogue, "contact_phone")

        await say(dialogue, token)

        assert await repository.get("42") is None

    @pytest.mark.asyncio
    async def test_cancel_without_flow(self, dialogue):
        replies = await say(dialogue, "cancel")
        assert "nothing in progress" in replies[0]


class TestRouting:
    @pytest.mark.asyncio
    async def test_new_trigger_replaces_flow(self, dialogue, repository, provider):
        await answer_until(dialogue, "contact_phone")

        await say(dialogue, "support")

        session = await repository.get("42")
        assert session.flow_type == FlowType.SUPPORT
        assert session.step == "category"
        assert session.collected_fields == {}

    @pytest.mark.asyncio
    async def test_refused_trigger_keeps_flow(self, dialogue, repository, provider):
        await answer_until(dialogue, "contact_email")

        replies = await say(dialogue, "/review")

        assert "Usage: /review" in replies[0]
        session = await repository.get("42")
        assert session.flow_type == FlowType.BOOKING
        assert session.step == "contact_email"
        assert session.collected_fields["contact_phone"] == "+254712345678"

        await say(dialogue, "jane@example.com")
        assert (await repository.get("42")).step == "session_duration"

    @pytest.mark.asyncio
    async def test_users_are_independent(self, dialogue, repository, provider):
        await say(dialogue, "/book", user_id="1")
        await say(dialogue, "support", user_id="2")
        await say(dialogue, "yes", user_id="1")

        assert (await repository.get("1")).step == "full_name"
        assert (await repository.get("2")).flow_type == FlowType.SUPPORT

    @pytest.mark.asyncio
    async def test_help_fallback(self, dialogue):
        replies = await say(dialogue, "hello")

        assert "/book" in replies[0]
        assert "/myappointments" in replies[0]
        assert "Monday to Friday" in replies[0]

    @pytest.mark.asyncio
    async def test_chosen_action_takes_precedence(self, dialogue, repository, provider):
        await dialogue.process(InboundMessage(user_id="42", text="", chosen_action_id="/book"))
        assert (await repository.get("42")).flow_type == FlowType.BOOKING


class TestCommands:
    """Commands handled outside any flow."""

    @pytest.fixture
    def book(self, resolver, provider):
        async def make(user_id="42", status=AppointmentStatus.CONFIRMED):
            return await resolver.reserve(
                provider.id, at(10), at(11),
                ReservationPayload(status=status, channel_user_id=user_id),
            )
        return make

    @pytest.mark.asyncio
    async def test_status(self, dialogue, book):
        appointment = await book()

        replies = await say(dialogue, f"status {appointment.code.lower()}")

        assert f"Appointment {appointment.code}" in replies[0]
        assert "Dr. Amina Otieno" in replies[0]
        assert "Status: confirmed" in replies[0]
        assert "Payment: pending" in replies[0]

    @pytest.mark.asyncio
    async def test_status_of_someone_elses_appointment(self, dialogue, book):
        appointment = await book(user_id="99")

        replies = await say(dialogue, f"status {appointment.code}")

        assert "couldn't find" in replies[0]

    @pytest.mark.asyncio
    async def test_cancel_appointment(self, dialogue, book, database):
        appointment = await book()

        replies = await say(dialogue, f"cancel {appointment.code}")

        assert "has been cancelled" in replies[0]
        assert "refund" not in replies[0]
        async with database() as db:
            stored = await db.get(Appointment, appointment.id)
        assert stored.status == AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_paid_appointment_mentions_refund(self, dialogue, book, database):
        appointment = await book()
        async with database() as db:
            stored = await db.get(Appointment, appointment.id)
            stored.payment_status = PaymentStatus.PAID
            await db.commit()

        replies = await say(dialogue, f"cancel {appointment.code}")

        assert "refund" in replies[0]

    @pytest.mark.asyncio
    async def test_cancel_twice(self, dialogue, book):
        appointment = await book()
        await say(dialogue, f"cancel {appointment.code}")

        replies = await say(dialogue, f"cancel {appointment.code}")

        assert "already cancelled" in replies[0]

    @pytest.mark.asyncio
    async def test_my_appointments(self, dialogue, book):
        appointment = await book()

        replies = await say(dialogue, "/myappointments")

        assert appointment.code in replies[0]
        assert "2030-01-07 10:00" in replies[0]

    @pytest.mark.asyncio
    async def test_my_appointments_empty(self, dialogue, database):
        replies = await say(dialogue, "/myappointments")
        assert "no upcoming appointments" in replies[0]


class TestDelivery:
    """receive() sends replies and tidies old prompts."""

    @pytest.mark.asyncio
    async def test_previous_prompt_deleted_on_advance(self, dialogue, repository, notifier, provider):
        notifier.send = AsyncMock(side_effect=[101, 102])

        await dialogue.receive(InboundMessage(user_id="42", text="/book"))
        assert (await repository.get("42")).last_message_id == 101

        await dialogue.receive(InboundMessage(user_id="42", text="yes"))

        notifier.delete_message.assert_awaited_once_with("42", 101)
        assert (await repository.get("42")).last_message_id == 102

    @pytest.mark.asyncio
    async def test_prompt_kept_on_invalid_answer(self, dialogue, repository, notifier, provider):
        notifier.send = AsyncMock(side_effect=[101, 102])

        await dialogue.receive(InboundMessage(user_id="42", text="/book"))
        await dialogue.receive(InboundMessage(user_id="42", text="maybe"))

        notifier.delete_message.assert_not_awaited()
        assert (await repository.get("42")).step == "consent"

    @pytest.mark.asyncio
    async def test_failed_send_keeps_session(self, dialogue, repository, notifier, provider):
        notifier.send = AsyncMock(return_value=None)

        await dialogue.receive(InboundMessage(user_id="42", text="/book"))

        session = await repository.get("42")
        assert session.step == "consent"
        assert session.last_message_id is None
