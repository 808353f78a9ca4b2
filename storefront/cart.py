"""
cart.py: Session-scoped shopping cart

A CartStore holds the line items a customer has picked while browsing. It is
plain in-memory state: nothing is persisted until checkout turns the cart into
a sale. The SessionRegistry hands out one BrowsingSession (cart plus current
checkout) per browsing session id.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .clients import NotificationCollector

log = logging.getLogger(__name__)


class CartItem(BaseModel):
    """
    A product as placed in the cart.

    Attributes:
        id (str): Product identifier; identity of the line.
        name (str): Product name at the time it was added.
        price (Decimal): Unit price at the time it was added.
        image_url (str | None): Thumbnail shown next to the line.
        quantity (int): Units of this product. Always greater than zero.
    """
    id: str
    name: str
    price: Decimal
    image_url: Optional[str] = None
    quantity: int = Field(..., gt=0)

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class CartStore:
    """
    Ordered collection of CartItems for one browsing session.

    Lines keep the order in which products were first added. Setting a
    quantity to zero or below removes the line, so the cart never holds an
    item with a non-positive quantity.
    """

    def __init__(self):
        self._items: List[CartItem] = []

    @property
    def items(self) -> List[CartItem]:
        return [item.model_copy() for item in self._items]

    @property
    def total_price(self) -> Decimal:
        return sum((item.subtotal for item in self._items), Decimal(0))

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self._items)

    def is_empty(self) -> bool:
        return not self._items

    def _find(self, product_id: str) -> Optional[CartItem]:
        for item in self._items:
            if item.id == product_id:
                return item
        return None

    def add(self, product, quantity: int = 1) -> CartItem:
        """
        Adds a product, or bumps its quantity if it is already in the cart.

        Args:
            product: Anything exposing id, name, price and image_url
                (ProductDB, ProductResponse, CartItem).
            quantity (int): Units to add. Must be positive.

        Returns:
            CartItem: The line as it stands after the update.

        Raises:
            ValueError: If quantity is not positive.
        """
        if quantity <= 0:
            raise ValueError("quantity must be greater than zero")

        existing = self._find(product.id)
        if existing:
            existing.quantity += quantity
            return existing.model_copy()

        item = CartItem(
            id=product.id,
            name=product.name,
            price=Decimal(str(product.price)),
            image_url=getattr(product, "image_url", None),
            quantity=quantity,
        )
        self._items.append(item)
        return item.model_copy()

    def remove(self, product_id: str) -> bool:
        """Drops the line for product_id. Returns False if it was not in the cart."""
        before = len(self._items)
        self._items = [item for item in self._items if item.id != product_id]
        return len(self._items) != before

    def set_quantity(self, product_id: str, quantity: int) -> Optional[CartItem]:
        """
        Sets the quantity of an existing line; quantity <= 0 removes it.

        Returns:
            CartItem | None: The updated line, or None if it was removed.

        Raises:
            KeyError: If the product is not in the cart.
        """
        item = self._find(product_id)
        if item is None:
            raise KeyError(product_id)
        if quantity <= 0:
            self.remove(product_id)
            return None
        item.quantity = quantity
        return item.model_copy()

    def clear(self):
        self._items = []


class BrowsingSession:
    """State of one browsing session: cart, pending toasts, open checkout."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.cart = CartStore()
        self.notifications = NotificationCollector(prefix=f"[Session: {session_id}]")
        self.checkout = None
        # Held while a checkout request is running for this session
        self.checkout_lock = asyncio.Lock()


class SessionRegistry:
    """In-memory map of browsing session id to BrowsingSession."""

    def __init__(self):
        self._sessions: Dict[str, BrowsingSession] = {}

    def get(self, session_id: str) -> BrowsingSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = BrowsingSession(session_id)
            self._sessions[session_id] = session
            log.info(f"[Session: {session_id}] New browsing session.")
        return session

    def discard(self, session_id: str):
        self._sessions.pop(session_id, None)

    def __len__(self):
        return len(self._sessions)
