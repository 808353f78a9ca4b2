"""
checkout.py: Cart to PIX checkout

Turns the contents of a browsing session's cart into a persisted sale and the
payment instructions shown to the customer.

Flow Overview:
1. Pre-flight: the store must have a PIX key and the cart must not be empty
2. Freeze the cart into a FinalizedOrder (figures shown later come from here)
3. Persist one `pending` sale row describing the whole cart
4. Render the PIX key as a QR code
5. Clear the cart and hand over a pre-filled WhatsApp link for the receipt

Error Handling:
    Every failure is caught inside finalize_order(), reported through the
    notifier and returned to the caller. A sale that was persisted is never
    retracted, even when the QR code cannot be rendered.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict

from shared.utils import settings
from .cart import CartItem, CartStore
from .clients import QrEncodingError, SalesClientError
from .models import SaleDB, SiteSettingsDB
from .schemas import SaleResponse

log = logging.getLogger(__name__)

# encodeURIComponent leaves these unescaped besides letters and digits
_URI_COMPONENT_SAFE = "-_.!~*'()"


class CheckoutState(str, Enum):
    EDITING = "editing"
    SUBMITTING = "submitting"
    PAYMENT_PENDING = "payment_pending"


# --- Errors ---
class CheckoutError(Exception):
    """Base class; `message` is the text shown to the customer."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(CheckoutError):
    """No PIX key configured. Nothing was sent."""


class EmptyCartError(CheckoutError):
    """Nothing to check out. Nothing was sent."""


class CheckoutStateError(CheckoutError):
    """A checkout is already running or finished for this cart."""


class PersistenceError(CheckoutError):
    """The sale could not be created. The cart is untouched; the customer may retry."""


class RenderError(CheckoutError):
    """The sale exists but the QR code could not be generated."""


# --- Finalized order snapshot ---
class FinalizedOrder(BaseModel):
    """
    Frozen copy of the cart taken when checkout starts.

    The live cart is cleared once the sale exists, so the amount on the
    payment screen and the WhatsApp message are both built from this copy.
    """
    model_config = ConfigDict(frozen=True)

    items: Tuple[CartItem, ...]
    total: Decimal

    @classmethod
    def capture(cls, cart: CartStore) -> "FinalizedOrder":
        return cls(items=tuple(cart.items), total=cart.total_price)

    @property
    def description(self) -> str:
        return describe_items(self.items)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)


def describe_items(items) -> str:
    """'2x A, 1x B'"""
    return ", ".join(f"{item.quantity}x {item.name}" for item in items)


def format_amount(amount) -> str:
    """Two decimal places, half up: Decimal('25.5') -> '25.50'."""
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def build_whatsapp_message(order: FinalizedOrder) -> str:
    return (
        f"Olá! Tenho interesse no pedido com os seguintes itens: {order.description} "
        f"(Total: R$ {format_amount(order.total)}). Segue o comprovante de pagamento."
    )


def build_whatsapp_link(order: FinalizedOrder, recipient: str,
                        base_url: str = settings.WHATSAPP_BASE_URL) -> str:
    text = quote(build_whatsapp_message(order), safe=_URI_COMPONENT_SAFE)
    return f"{base_url.rstrip('/')}/{recipient}?text={text}"


# --- Flow ---
class CheckoutFlow:
    """
    Checkout state machine for one cart.

    States:
        editing -> submitting -> payment_pending

    `payment_pending` is terminal: closing the checkout view throws the flow
    away and a new one starts in `editing`. While `submitting`, further calls
    to finalize_order() are refused, so one session never has two sales in
    flight.

    Collaborators are injected:
        cart: the session's CartStore
        site_settings: SiteSettingsDB read for this request (PIX key, theme)
        sales_client: anything with `async create(SaleDB) -> SaleResponse`
            raising SalesClientError
        qr_encoder: anything with `encode(text, width, margin) -> str`
            raising QrEncodingError
        notifier: anything with `success(msg)` and `error(msg)`
    """

    def __init__(self, cart: CartStore, site_settings: SiteSettingsDB, sales_client, qr_encoder,
                 notifier, session_id: str = "-",
                 qr_width: int = settings.QR_CODE_WIDTH,
                 qr_margin: int = settings.QR_CODE_MARGIN,
                 whatsapp_base_url: str = settings.WHATSAPP_BASE_URL):
        self.cart = cart
        self.site_settings = site_settings
        self.sales_client = sales_client
        self.qr_encoder = qr_encoder
        self.notifier = notifier
        self.session_id = session_id
        self.qr_width = qr_width
        self.qr_margin = qr_margin
        self.whatsapp_base_url = whatsapp_base_url

        self.state = CheckoutState.EDITING
        self.finalized_order: Optional[FinalizedOrder] = None
        self.sale: Optional[SaleResponse] = None
        self.qr_code_url: Optional[str] = None

    @property
    def is_submitting(self) -> bool:
        return self.state is CheckoutState.SUBMITTING

    @property
    def whatsapp_recipient(self) -> str:
        return self.site_settings.whatsapp_number or settings.WHATSAPP_NUMBER

    @property
    def whatsapp_link(self) -> Optional[str]:
        if self.finalized_order is None:
            return None
        return build_whatsapp_link(self.finalized_order, self.whatsapp_recipient, self.whatsapp_base_url)

    def _fail(self, error: CheckoutError) -> CheckoutError:
        self.notifier.error(error.message)
        return error

    def _preflight(self):
        if self.state is CheckoutState.SUBMITTING:
            raise CheckoutStateError("Seu pedido já está sendo finalizado.")
        if self.state is CheckoutState.PAYMENT_PENDING:
            raise CheckoutStateError("Este pedido já foi finalizado.")
        pix_key = (self.site_settings.pix_key or "").strip()
        if not pix_key:
            raise ConfigurationError("A chave PIX não está configurada pelo administrador.")
        if self.cart.is_empty():
            raise EmptyCartError("Seu carrinho está vazio.")

    async def finalize_order(self, customer_name: Optional[str] = None,
                             customer_phone: Optional[str] = None) -> Optional[CheckoutError]:
        """
        Creates the sale for the current cart and prepares the PIX payment.

        Args:
            customer_name (str | None): Optional, stored as null when blank.
            customer_phone (str | None): Optional, stored as null when blank.

        Returns:
            None on full success, otherwise the CheckoutError that was reported.
            A RenderError still leaves the flow in payment_pending with the
            sale created and the cart cleared.
        """
        log_prefix = f"[Session: {self.session_id}]"

        try:
            self._preflight()
        except CheckoutError as e:
            log.info(f"{log_prefix} Checkout refused: {e.message}")
            return self._fail(e)

        self.state = CheckoutState.SUBMITTING

        # Step 1: snapshot before anything goes over the wire
        order = FinalizedOrder.capture(self.cart)
        self.finalized_order = order

        # Step 2 + 3: one sale row for the whole cart, no retry
        record = SaleDB(
            product_name=order.description,
            quantity=order.total_quantity,
            total_amount=order.total,
            customer_name=customer_name or None,
            customer_phone=customer_phone or None,
            status="pending",
            product_id=None,
            unit_price=Decimal(0),
        )
        log.info(f"{log_prefix} Creating sale: {record.product_name} (R$ {format_amount(order.total)})")

        try:
            sale = await self.sales_client.create(record)
        except SalesClientError as e:
            log.error(f"{log_prefix} Sale creation failed: {e}")
            return self._abort_submission()
        except Exception as e:
            log.critical(f"{log_prefix} Unexpected error while creating sale: {e}", exc_info=True)
            return self._abort_submission()

        if sale is None:
            log.error(f"{log_prefix} Sale creation returned nothing.")
            return self._abort_submission()

        self.sale = sale
        log.info(f"{log_prefix} Sale {sale.id} created.", extra={"sale_id": sale.id})

        # Step 4: QR code; the sale stays even if this fails
        try:
            self.qr_code_url = self.qr_encoder.encode(
                self.site_settings.pix_key, width=self.qr_width, margin=self.qr_margin
            )
        except QrEncodingError as e:
            log.error(f"{log_prefix} Sale {sale.id} created but QR code failed: {e}")
            return self._finish_without_qr()
        except Exception as e:
            log.critical(f"{log_prefix} Unexpected error while rendering QR code for sale {sale.id}: {e}",
                         exc_info=True)
            return self._finish_without_qr()

        self.state = CheckoutState.PAYMENT_PENDING
        self.cart.clear()
        self.notifier.success("Pedido criado! Agora realize o pagamento.")
        return None

    def _finish_without_qr(self) -> CheckoutError:
        # The sale exists, so the order is done; only the image is missing
        self.qr_code_url = None
        self.state = CheckoutState.PAYMENT_PENDING
        self.cart.clear()
        return self._fail(RenderError("Pedido criado, mas houve um erro ao gerar o QR Code."))

    def _abort_submission(self) -> CheckoutError:
        # Back to editing with the cart untouched so the customer can retry
        self.state = CheckoutState.EDITING
        self.finalized_order = None
        return self._fail(PersistenceError("Erro ao criar seu pedido. Tente novamente."))
