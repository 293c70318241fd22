"""Book purchase flow."""

import logging
import uuid
from typing import Optional

from sqlalchemy import select

from counselbot.config import get_settings
from counselbot.core.dialogue import validators as v
from counselbot.core.dialogue.forms import (
    FieldError,
    FlowCancelled,
    FlowResult,
    FormStep,
    GuidedForm,
    reply,
)
from counselbot.core.dialogue.session import DialogueSession, FlowType
from counselbot.infra.database import get_db_context
from counselbot.models.database import Book, BookOrder
from counselbot.services.payments import ORDER_REFERENCE_PREFIX, format_amount

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {
    "m-pesa": "M-Pesa",
    "mpesa": "M-Pesa",
    "bank": "Bank Transfer",
    "bank transfer": "Bank Transfer",
}


def choose_book(text: str, session: DialogueSession) -> dict:
    if text.lower() == "no":
        raise FlowCancelled()
    return v.numbered_choice(
        "books", "Please reply with a valid number from the list above, or type 'no' to cancel."
    )(text, session)


def confirm_order(text: str, session: DialogueSession) -> bool:
    answer = text.lower()
    if answer == "confirm":
        return True
    if answer == "cancel":
        raise FlowCancelled()
    raise FieldError("Type 'confirm' to place this order, or 'cancel' to abort.")


def _book_label(book: dict) -> str:
    label = f"{book['title']} by {book['author'] or 'Unknown Author'}\n   Price: {format_amount(book['price_cents'])}"
    if book.get("description"):
        label += f"\n   {book['description']}"
    return label


def _books_prompt(session: DialogueSession) -> str:
    listing = v.options_text(session.context["books"], _book_label)
    return (
        f"Available Books for Sale:\n\n{listing}\n\n"
        "Reply with the number of the book you want to purchase, or type 'no' to cancel."
    )


def _name_prompt(session: DialogueSession) -> str:
    book = session.collected_fields["book"]
    return (
        f"You selected: {book['title']} by {book['author'] or 'Unknown Author'}\n"
        f"Price: {format_amount(book['price_cents'])}\n\n"
        "Please provide your contact information.\n\n1. Full Name:"
    )


def _payment_details_prompt(session: DialogueSession) -> str:
    if session.collected_fields["payment_method"] == "M-Pesa":
        return (
            "10. M-Pesa Payment Details:\n"
            "Format: Phone Number, Transaction Reference\n"
            "Example: 254712345678, QXY123456789"
        )
    return (
        "10. Bank Transfer Details:\n"
        "Format: Bank Name, Account Number, Transaction Reference\n"
        "Example: Equity Bank, 1234567890, T123456789"
    )


def _summary(session: DialogueSession) -> str:
    fields = session.collected_fields
    book = fields["book"]
    shipping = get_settings().book_shipping_cents
    text = (
        "Order Summary:\n\n"
        f"Book: {book['title']} by {book['author'] or 'Unknown Author'}\n"
        f"Book Price: {format_amount(book['price_cents'])}\n"
        f"Shipping: {format_amount(shipping)}\n"
        f"Total: {format_amount(book['price_cents'] + shipping)}\n\n"
        f"Customer: {fields['name']}\n"
        f"Email: {fields['email']}\n"
        f"Phone: {fields['phone']}\n"
        f"Address: {fields['address']}, {fields['city']}, {fields['country']}\n"
    )
    if fields.get("county"):
        text += f"County: {fields['county']}\n"
    if fields.get("postal_code"):
        text += f"Postal Code: {fields['postal_code']}\n"
    text += (
        f"Payment: {fields['payment_method']}\n"
        f"Details: {fields['payment_details']}\n\n"
        "Type 'confirm' to place this order, or 'cancel' to abort."
    )
    return text


class BookOrderFlow(GuidedForm):
    """Takes a shipping order for one book."""

    flow_type = FlowType.BOOK_ORDER
    cancel_message = "Book ordering canceled. Type /books if you want to browse books again."

    def build_steps(self) -> list[FormStep]:
        return [
            FormStep("book", _books_prompt, choose_book),
            FormStep("name", _name_prompt, v.full_name),
            FormStep("email", "2. Email Address:", v.email),
            FormStep("phone", "3. Phone Number:", v.phone),
            FormStep("address", "4. Full Address (Street, Building, etc.):", v.free_text),
            FormStep("city", "5. City:", v.free_text),
            FormStep("country", "6. Country:", v.free_text),
            FormStep("county", "7. County/State (optional, type 'skip'):", v.optional_text),
            FormStep("postal_code", "8. Postal Code (optional, type 'skip'):", v.optional_text),
            FormStep(
                "payment_method",
                "9. Payment Method (M-Pesa or Bank Transfer):",
                v.choice(
                    PAYMENT_METHODS,
                    "Please choose either 'M-Pesa' or 'Bank Transfer' as your payment method.",
                ),
                keyboard=[["M-Pesa", "Bank Transfer"]],
            ),
            FormStep("payment_details", _payment_details_prompt, v.free_text),
            FormStep("confirm", _summary, confirm_order, keyboard=[["confirm", "cancel"]]),
        ]

    async def start(
        self,
        user_id: str,
        username: Optional[str] = None,
        argument: Optional[str] = None,
    ) -> FlowResult:
        async with get_db_context() as db:
            result = await db.execute(
                select(Book).where(Book.is_available.is_(True)).order_by(Book.title)
            )
            books = list(result.scalars())

        if not books:
            return None, [reply(
                self.new_session(user_id),
                "Books for Sale\n\nNo books are available for sale at the moment. "
                "Check back later for new releases!",
            )]

        session = self.new_session(
            user_id,
            username,
            books=[
                {
                    "id": str(b.id),
                    "title": b.title,
                    "author": b.author,
                    "description": b.description,
                    "price_cents": b.price_cents,
                }
                for b in books
            ],
        )
        return session, [self.prompt_for(session, self.steps[0])]

    async def complete(self, session: DialogueSession) -> FlowResult:
        fields = session.collected_fields
        book = fields["book"]
        shipping = get_settings().book_shipping_cents

        async with get_db_context() as db:
            order = BookOrder(
                book_id=uuid.UUID(book["id"]),
                channel_user_id=session.user_id,
                client_name=fields["name"],
                client_email=fields["email"],
                client_phone=fields["phone"],
                client_address=fields["address"],
                client_city=fields["city"],
                client_country=fields["country"],
                client_county=fields.get("county"),
                client_postal_code=fields.get("postal_code"),
                payment_method=fields["payment_method"],
                payment_reference=fields["payment_details"],
                payment_amount_cents=book["price_cents"],
                shipping_cost_cents=shipping,
                total_amount_cents=book["price_cents"] + shipping,
            )
            db.add(order)
            await db.flush()
            reference = f"{ORDER_REFERENCE_PREFIX}{order.id}"

        logger.info(f"Book order {reference} placed by {session.user_id}")
        return None, [reply(
            session,
            f"Order placed! Your order reference is {reference}.\n"
            "We'll confirm your payment and let you know when the book ships.",
        )]
