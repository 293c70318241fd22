"""
Payment orchestration.

Starting a payment goes through PaymentClient; the gateway's answer
arrives later as a callback handled by ``confirm_payment``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select

from counselbot.config import get_settings
from counselbot.core.scheduling.errors import NotFoundError, ValidationError
from counselbot.infra.database import get_db_context
from counselbot.infra.messaging import OutgoingMessage, get_telegram_client
from counselbot.infra.payments import PaymentClient, get_payment_client
from counselbot.models.database import (
    Appointment,
    AppointmentStatus,
    BookOrder,
    PaymentStatus,
    PaymentTransaction,
)

logger = logging.getLogger(__name__)

ORDER_REFERENCE_PREFIX = "ORDER-"


def format_amount(cents: int) -> str:
    return f"KES {cents / 100:,.2f}"


def session_price(duration_minutes: int) -> int:
    """Price in cents for a session of the given length."""
    prices = get_settings().session_prices
    try:
        return prices[duration_minutes]
    except KeyError:
        raise ValidationError(f"No price configured for a {duration_minutes} minute session")


def normalize_phone(value: str, country_code: str = "254") -> str:
    """Digits-only phone with a leading '+' and country code."""
    digits = "".join(ch for ch in value if ch.isdigit())
    if digits.startswith(country_code):
        return f"+{digits}"
    return f"+{country_code}{digits.lstrip('0')}"


def bank_instructions(reference: str, amount_cents: int) -> str:
    settings = get_settings()
    lines = [
        "Bank Transfer Payment",
        "",
        f"Reference: {reference}",
        f"Amount: {format_amount(amount_cents)}",
        f"Bank: {settings.bank_name}",
        f"Account name: {settings.bank_account_name}",
    ]
    if settings.bank_account_number:
        lines.append(f"Account number: {settings.bank_account_number}")
    lines += [
        "",
        f"Use {reference} as the payment reference. "
        "We'll notify you once the payment is confirmed.",
    ]
    return "\n".join(lines)


async def request_session_payment(
    code: str,
    duration_minutes: int,
    method: str,
    phone: str,
    client: Optional[PaymentClient] = None,
) -> str:
    """Start payment for a booked session and return the text to send."""
    amount = session_price(duration_minutes)

    if method != "M-Pesa":
        return bank_instructions(code, amount)

    client = client or get_payment_client()
    payer = normalize_phone(phone)
    result = await client.initiate(code, amount, "mpesa", phone=payer)

    if result.is_pending:
        logger.info(f"M-Pesa payment started for {code} ({format_amount(amount)})")
        return (
            "M-Pesa Payment Required\n\n"
            f"Appointment code: {code}\n"
            f"Amount: {format_amount(amount)}\n\n"
            f"You will receive an M-Pesa prompt on {payer}. "
            "Enter your M-Pesa PIN to complete payment.\n"
            "We'll notify you as soon as the payment is confirmed."
        )

    logger.warning(f"M-Pesa payment could not start for {code}: {result.message}")
    return (
        f"We couldn't start the M-Pesa payment ({result.message}).\n\n"
        + bank_instructions(code, amount)
    )


@dataclass
class PaymentOutcome:
    """Result of applying a gateway callback."""

    reference: str
    reference_type: str
    payment_status: PaymentStatus
    status: Optional[AppointmentStatus] = None
    duplicate: bool = False


async def confirm_payment(
    reference: str,
    paid: bool,
    transaction_id: Optional[str] = None,
    amount_cents: Optional[int] = None,
    payment_method: Optional[str] = None,
    gateway_response: Optional[dict[str, Any]] = None,
    notify: bool = True,
) -> PaymentOutcome:
    """Apply a payment result to the appointment or order it references.

    On success the payment is marked paid and a ``pending_payment``
    appointment becomes ``confirmed``; on failure only the payment
    status changes. Replayed callbacks (same ``transaction_id``) are
    acknowledged without changing anything.

    Raises:
        NotFoundError: reference matches no appointment or order
    """
    reference = reference.strip().upper()
    new_payment_status = PaymentStatus.PAID if paid else PaymentStatus.FAILED
    recipient: Optional[str] = None

    async with get_db_context() as db:
        if transaction_id:
            seen = await db.execute(
                select(PaymentTransaction.id).where(
                    PaymentTransaction.transaction_id == transaction_id
                )
            )
            if seen.first() is not None:
                logger.info(f"Duplicate payment callback {transaction_id} for {reference}")
                return PaymentOutcome(
                    reference=reference,
                    reference_type="unknown",
                    payment_status=new_payment_status,
                    duplicate=True,
                )

        if reference.startswith(ORDER_REFERENCE_PREFIX):
            outcome = await _apply_to_order(db, reference, new_payment_status)
        else:
            outcome, recipient = await _apply_to_appointment(db, reference, new_payment_status)

        db.add(PaymentTransaction(
            reference=reference,
            reference_type=outcome.reference_type,
            payment_method=payment_method,
            amount_cents=amount_cents,
            transaction_id=transaction_id,
            status="completed" if paid else "failed",
            gateway_response=gateway_response,
        ))

    logger.info(
        f"Payment {outcome.payment_status.value} for {outcome.reference_type} {reference}"
        + (f" (appointment now {outcome.status.value})" if outcome.status else "")
    )

    if notify and recipient:
        await _notify_client(recipient, reference, paid, amount_cents, outcome.status)

    return outcome


async def _apply_to_appointment(db, reference: str, payment_status: PaymentStatus):
    result = await db.execute(
        select(Appointment).where(Appointment.code == reference).with_for_update()
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise NotFoundError(f"No appointment with code {reference}")

    appointment.payment_status = payment_status
    if payment_status == PaymentStatus.PAID and appointment.status == AppointmentStatus.PENDING_PAYMENT:
        appointment.status = AppointmentStatus.CONFIRMED

    outcome = PaymentOutcome(
        reference=reference,
        reference_type="appointment",
        payment_status=payment_status,
        status=appointment.status,
    )
    return outcome, appointment.channel_user_id


async def _apply_to_order(db, reference: str, payment_status: PaymentStatus) -> PaymentOutcome:
    try:
        order_id = int(reference[len(ORDER_REFERENCE_PREFIX):])
    except ValueError:
        raise NotFoundError(f"Invalid order reference {reference}")

    order = await db.get(BookOrder, order_id)
    if order is None:
        raise NotFoundError(f"No order with reference {reference}")

    order.payment_status = payment_status
    return PaymentOutcome(reference=reference, reference_type="order", payment_status=payment_status)


async def _notify_client(
    user_id: str,
    reference: str,
    paid: bool,
    amount_cents: Optional[int],
    status: Optional[AppointmentStatus],
) -> None:
    amount = f" of {format_amount(amount_cents)}" if amount_cents else ""
    if paid and status == AppointmentStatus.CANCELLED:
        text = (
            f"We received your payment{amount} for appointment {reference}, but that "
            "appointment has been cancelled. Please contact support with your "
            "appointment code to arrange a refund."
        )
    elif paid and status != AppointmentStatus.CONFIRMED:
        text = f"Payment received! Your payment{amount} for appointment {reference} has been recorded."
    elif paid:
        text = (
            f"Payment confirmed! Your payment{amount} for appointment {reference} "
            "has been received. Your appointment is confirmed and you'll get a "
            "reminder before your session."
        )
    else:
        text = (
            f"Your payment for appointment {reference} did not go through. "
            f"Send 'status {reference}' to check it or contact support."
        )
    await get_telegram_client().send(OutgoingMessage(user_id=user_id, text=text))
