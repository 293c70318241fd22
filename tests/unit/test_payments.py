"""Tests for payment orchestration and the outbound HTTP clients."""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from sqlalchemy import select

from counselbot.core.scheduling import ReservationPayload
from counselbot.core.scheduling.errors import NotFoundError, ValidationError
from counselbot.infra.messaging import OutgoingMessage, TelegramClient
from counselbot.infra.payments import PaymentClient, PaymentInitiation
from counselbot.models.database import (
    Appointment,
    AppointmentStatus,
    BookOrder,
    PaymentStatus,
    PaymentTransaction,
)
from counselbot.services.payments import (
    confirm_payment,
    format_amount,
    normalize_phone,
    request_session_payment,
    session_price,
)

from tests.conftest import at


def mock_response(status_code: int, body) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    response.raise_for_status = MagicMock()
    return response


class TestHelpers:
    def test_format_amount(self):
        assert format_amount(300000) == "KES 3,000.00"
        assert format_amount(2550) == "KES 25.50"

    @pytest.mark.parametrize("raw,expected", [
        ("+254712345678", "+254712345678"),
        ("0712 345 678", "+254712345678"),
        ("712345678", "+254712345678"),
        ("254-712-345-678", "+254712345678"),
    ])
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_session_price(self):
        assert session_price(60) == 3000
        assert session_price(90) == 4000

    def test_session_price_unknown_duration(self):
        with pytest.raises(ValidationError):
            session_price(30)


class TestRequestSessionPayment:
    @pytest.mark.asyncio
    async def test_mpesa_pending(self):
        client = MagicMock()
        client.initiate = AsyncMock(return_value=PaymentInitiation(status="pending", checkout_id="ws_1"))

        text = await request_session_payment("ABC123", 60, "M-Pesa", "0712345678", client=client)

        client.initiate.assert_awaited_once_with("ABC123", 3000, "mpesa", phone="+254712345678")
        assert text.startswith("M-Pesa Payment Required")
        assert "+254712345678" in text

    @pytest.mark.asyncio
    async def test_mpesa_failure_falls_back_to_bank(self):
        client = MagicMock()
        client.initiate = AsyncMock(
            return_value=PaymentInitiation(status="failed", message="Unable to reach the payment provider")
        )

        text = await request_session_payment("ABC123", 60, "M-Pesa", "+254712345678", client=client)

        assert "Unable to reach the payment provider" in text
        assert "Bank Transfer Payment" in text
        assert "Reference: ABC123" in text

    @pytest.mark.asyncio
    async def test_bank_transfer_needs_no_gateway(self):
        client = MagicMock()
        client.initiate = AsyncMock()

        text = await request_session_payment("ABC123", 90, "Bank Transfer", "+254712345678", client=client)

        client.initiate.assert_not_awaited()
        assert "Amount: KES 40.00" in text


class TestConfirmPayment:
    @pytest_asyncio.fixture
    async def booked(self, resolver, provider):
        return await resolver.reserve(
            provider.id, at(9), at(10),
            ReservationPayload(status=AppointmentStatus.PENDING_PAYMENT, channel_user_id="42"),
        )

    async def reload(self, database, appointment_id) -> Appointment:
        async with database() as db:
            return await db.get(Appointment, appointment_id)

    @pytest.mark.asyncio
    async def test_paid_confirms_appointment(self, database, booked):
        outcome = await confirm_payment(booked.code.lower(), paid=True, transaction_id="tx-1",
                                        amount_cents=3000, notify=False)

        assert outcome.reference_type == "appointment"
        assert outcome.status == AppointmentStatus.CONFIRMED
        stored = await self.reload(database, booked.id)
        assert stored.status == AppointmentStatus.CONFIRMED
        assert stored.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_failed_keeps_status(self, database, booked):
        outcome = await confirm_payment(booked.code, paid=False, notify=False)

        assert outcome.payment_status == PaymentStatus.FAILED
        stored = await self.reload(database, booked.id)
        assert stored.status == AppointmentStatus.PENDING_PAYMENT
        assert stored.payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_replayed_callback_is_ignored(self, database, booked):
        await confirm_payment(booked.code, paid=True, transaction_id="tx-1", notify=False)

        outcome = await confirm_payment(booked.code, paid=False, transaction_id="tx-1", notify=False)

        assert outcome.duplicate is True
        stored = await self.reload(database, booked.id)
        assert stored.payment_status == PaymentStatus.PAID
        async with database() as db:
            transactions = (await db.execute(select(PaymentTransaction))).scalars().all()
        assert len(transactions) == 1

    @pytest.mark.asyncio
    async def test_unknown_reference(self, database):
        with pytest.raises(NotFoundError):
            await confirm_payment("NOPE42", paid=True, notify=False)

    @pytest.mark.asyncio
    async def test_order_reference(self, database):
        async with database() as db:
            order = BookOrder(
                channel_user_id="42",
                client_name="Jane Wanjiru",
                client_email="jane@example.com",
                client_phone="+254712345678",
                client_address="12 Moi Avenue",
                client_city="Nairobi",
                client_country="Kenya",
                payment_method="M-Pesa",
                payment_reference="QXY123456789",
                payment_amount_cents=120000,
                shipping_cost_cents=500,
                total_amount_cents=120500,
            )
            db.add(order)
            await db.commit()

        outcome = await confirm_payment(f"ORDER-{order.id}", paid=True, notify=False)

        assert outcome.reference_type == "order"
        async with database() as db:
            stored = await db.get(BookOrder, order.id)
        assert stored.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_client_notified(self, database, booked):
        telegram = MagicMock()
        telegram.send = AsyncMock(return_value=1)

        with patch("counselbot.services.payments.get_telegram_client", return_value=telegram):
            await confirm_payment(booked.code, paid=True, amount_cents=3000)

        message = telegram.send.await_args.args[0]
        assert message.user_id == "42"
        assert "Payment confirmed" in message.text
        assert "KES 30.00" in message.text

    @pytest.mark.asyncio
    async def test_paid_after_cancellation_mentions_refund(self, database, resolver, booked):
        await resolver.cancel(booked.id)
        telegram = MagicMock()
        telegram.send = AsyncMock(return_value=1)

        with patch("counselbot.services.payments.get_telegram_client", return_value=telegram):
            outcome = await confirm_payment(booked.code, paid=True, amount_cents=3000)

        assert outcome.status == AppointmentStatus.CANCELLED
        message = telegram.send.await_args.args[0]
        assert "has been cancelled" in message.text
        assert "refund" in message.text
        assert "Your appointment is confirmed" not in message.text


class TestPaymentClient:
    @pytest.fixture
    def client(self):
        return PaymentClient(base_url="http://gateway:9000")

    @pytest.mark.asyncio
    async def test_initiate_pending(self, client):
        http = AsyncMock()
        http.post = AsyncMock(return_value=mock_response(202, {"checkout_id": "ws_1", "message": "sent"}))
        client._client = http

        result = await client.initiate("ABC123", 3000, "mpesa", phone="+254712345678")

        assert result.is_pending
        assert result.checkout_id == "ws_1"
        http.post.assert_awaited_once_with(
            "/api/payments",
            json={"reference": "ABC123", "amount_cents": 3000, "method": "mpesa", "phone": "+254712345678"},
        )

    @pytest.mark.asyncio
    async def test_initiate_rejected(self, client):
        http = AsyncMock()
        http.post = AsyncMock(return_value=mock_response(400, {"error": "Invalid phone"}))
        client._client = http

        result = await client.initiate("ABC123", 3000, "mpesa", phone="123")

        assert not result.is_pending
        assert result.message == "Invalid phone"

    @pytest.mark.asyncio
    async def test_initiate_network_error(self, client):
        http = AsyncMock()
        http.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        client._client = http

        result = await client.initiate("ABC123", 3000, "mpesa")

        assert result.status == "failed"
        assert result.message == "Unable to reach the payment provider"

    @pytest.mark.asyncio
    async def test_close(self, client):
        http = AsyncMock()
        client._client = http

        await client.close()

        http.aclose.assert_awaited_once()
        assert client._client is None


class TestTelegramClient:
    @pytest.fixture
    def client(self):
        return TelegramClient(token="test-token", base_url="http://telegram")

    def test_payload_with_keyboard(self):
        message = OutgoingMessage(user_id="42", text="Pick one", keyboard=[["Yes", "No"]])

        payload = message.to_payload()

        assert payload["chat_id"] == "42"
        assert payload["reply_markup"]["keyboard"] == [[{"text": "Yes"}, {"text": "No"}]]

    def test_payload_without_keyboard(self):
        payload = OutgoingMessage(user_id="42", text="Done").to_payload()

        assert payload["reply_markup"] == {"remove_keyboard": True}

    @pytest.mark.asyncio
    async def test_send_returns_message_id(self, client):
        http = AsyncMock()
        http.post = AsyncMock(return_value=mock_response(200, {"ok": True, "result": {"message_id": 77}}))
        client._client = http

        message_id = await client.send(OutgoingMessage(user_id="42", text="Hello"))

        assert message_id == 77
        assert http.post.await_args.args[0] == "/sendMessage"

    @pytest.mark.asyncio
    async def test_send_failure(self, client):
        http = AsyncMock()
        http.post = AsyncMock(side_effect=httpx.ReadTimeout("timeout"))
        client._client = http

        assert await client.send(OutgoingMessage(user_id="42", text="Hello")) is None

    @pytest.mark.asyncio
    async def test_delete_message(self, client):
        http = AsyncMock()
        http.post = AsyncMock(return_value=mock_response(400, {"ok": False}))
        client._client = http

        assert await client.delete_message("42", 77) is False
        http.post.assert_awaited_once_with("/deleteMessage", json={"chat_id": "42", "message_id": 77})
