"""
This module provides the clients the storefront talks to:
- Hosted store (MongoDB via motor): sales, products and site settings
- QR code encoder (qrcode + Pillow)
- Notification surface (per-session toast collector)
Each class wraps its library's error surface into one exception type so the
checkout flow can treat every failure of a collaborator uniformly.
"""

import base64
import io
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import qrcode
from qrcode.exceptions import DataOverflowError
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .models import ProductDB, SaleDB, SiteSettingsDB
from .schemas import ProductResponse, SaleResponse

log = logging.getLogger(__name__)

SETTINGS_DOC_ID = "site"


class SalesClientError(Exception):
    """Any failure of the hosted store while reading or writing sales."""


class QrEncodingError(Exception):
    """The payment string could not be turned into a QR image."""


def str_to_oid(id: str) -> Optional[ObjectId]:
    # ObjectId(None) would mint a fresh id, so validate first
    if not ObjectId.is_valid(id):
        return None
    return ObjectId(id)


def _to_mongo(model) -> dict:
    # Decimal is stored as float, as the rest of the collections do
    doc = model.model_dump(by_alias=True, exclude={"id"})
    for key, value in doc.items():
        if isinstance(value, Decimal):
            doc[key] = float(value)
    return doc


def _from_mongo(doc: dict) -> dict:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


# --- Sales (Order Persistence Client) ---
class SalesClient:
    """
    Create/read interface to the `sales` collection.

    Every motor/pymongo failure is logged and re-raised as SalesClientError.
    """

    def __init__(self, db):
        self.collection = db.sales

    async def create(self, record: SaleDB) -> SaleResponse:
        """
        Inserts one sale row and returns it as stored.

        Args:
            record (SaleDB): The sale to persist.

        Returns:
            SaleResponse: The persisted sale including its generated id.

        Raises:
            SalesClientError: If the insert or the read-back fails.
        """
        try:
            result = await self.collection.insert_one(_to_mongo(record))
            created = await self.collection.find_one({"_id": result.inserted_id})
        except PyMongoError as e:
            log.error(f"Sale insert failed: {e}")
            raise SalesClientError(str(e)) from e

        if not created:
            raise SalesClientError("Sale was not found after insert")
        return SaleResponse(**_from_mongo(created))

    async def get(self, sale_id: str) -> Optional[SaleResponse]:
        oid = str_to_oid(sale_id)
        if oid is None:
            return None
        try:
            doc = await self.collection.find_one({"_id": oid})
        except PyMongoError as e:
            log.error(f"Sale lookup {sale_id} failed: {e}")
            raise SalesClientError(str(e)) from e
        return SaleResponse(**_from_mongo(doc)) if doc else None

    async def list(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Tuple[List[SaleResponse], int]:
        query = {"status": status} if status else {}
        skip = (page - 1) * limit
        try:
            total = await self.collection.count_documents(query)
            cursor = self.collection.find(query).sort("created_at", -1).skip(skip).limit(limit)
            sales = [SaleResponse(**_from_mongo(doc)) async for doc in cursor]
        except PyMongoError as e:
            log.error(f"Sale listing failed: {e}")
            raise SalesClientError(str(e)) from e
        return sales, total

    async def update_status(self, sale_id: str, status: str,
                            current_status: Optional[str] = None) -> Optional[SaleResponse]:
        """Sets the status; with current_status, only a sale still in that status is touched."""
        oid = str_to_oid(sale_id)
        if oid is None:
            return None
        query = {"_id": oid}
        if current_status:
            query["status"] = current_status
        try:
            doc = await self.collection.find_one_and_update(
                query,
                {"$set": {"status": status, "updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            log.error(f"Sale {sale_id} status update failed: {e}")
            raise SalesClientError(str(e)) from e
        return SaleResponse(**_from_mongo(doc)) if doc else None


# --- Products ---
class ProductsClient:
    """Catalog access for the public listing and the admin screens."""

    def __init__(self, db):
        self.collection = db.products

    async def list(self, page: int = 1, limit: int = 20, category: Optional[str] = None,
                   include_inactive: bool = False) -> Tuple[List[ProductResponse], int]:
        query = {}
        if not include_inactive:
            query["is_active"] = True
        if category:
            query["category"] = category
        skip = (page - 1) * limit
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("name", 1).skip(skip).limit(limit)
        products = [ProductResponse(**_from_mongo(doc)) async for doc in cursor]
        return products, total

    async def get(self, product_id: str) -> Optional[ProductResponse]:
        oid = str_to_oid(product_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return ProductResponse(**_from_mongo(doc)) if doc else None

    async def create(self, product: ProductDB) -> ProductResponse:
        result = await self.collection.insert_one(_to_mongo(product))
        return await self.get(str(result.inserted_id))

    async def update(self, product_id: str, fields: dict) -> Optional[ProductResponse]:
        oid = str_to_oid(product_id)
        if oid is None:
            return None
        update = {k: (float(v) if k == "price" else v) for k, v in fields.items()}
        update["updated_at"] = datetime.utcnow()
        doc = await self.collection.find_one_and_update(
            {"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        return ProductResponse(**_from_mongo(doc)) if doc else None

    async def delete(self, product_id: str) -> bool:
        oid = str_to_oid(product_id)
        if oid is None:
            return False
        result = await self.collection.delete_one({"_id": oid})
        return result.deleted_count == 1


# --- Site settings ---
class SiteSettingsClient:
    """Single settings document holding the PIX key and theme."""

    def __init__(self, db):
        self.collection = db.site_settings

    async def get(self) -> SiteSettingsDB:
        doc = await self.collection.find_one({"_id": SETTINGS_DOC_ID})
        if not doc:
            return SiteSettingsDB()
        doc.pop("_id", None)
        return SiteSettingsDB(**doc)

    async def update(self, fields: dict) -> SiteSettingsDB:
        fields = dict(fields, updated_at=datetime.utcnow())
        doc = await self.collection.find_one_and_update(
            {"_id": SETTINGS_DOC_ID},
            {"$set": fields},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        doc.pop("_id", None)
        return SiteSettingsDB(**doc)


# --- QR Encoder ---
class QrCodeEncoder:
    """Renders a payment string as a PNG data URI."""

    def encode(self, text: str, width: int = 280, margin: int = 2) -> str:
        """
        Encodes text as a QR code scaled to roughly `width` pixels.

        Args:
            text (str): Payload, here the PIX key.
            width (int): Target image width in pixels, quiet zone included.
            margin (int): Quiet zone around the code, in modules.

        Returns:
            str: `data:image/png;base64,...`

        Raises:
            QrEncodingError: If the payload is empty or does not fit a QR code.
        """
        if not text:
            raise QrEncodingError("Nothing to encode")
        try:
            qr = qrcode.QRCode(border=margin, box_size=1)
            qr.add_data(text)
            qr.make(fit=True)
            # Scale the module size so the whole image is close to `width`
            qr.box_size = max(1, width // (qr.modules_count + 2 * margin))
            image = qr.make_image()
            buffer = io.BytesIO()
            image.save(buffer)
        except (DataOverflowError, ValueError, OSError) as e:
            log.error(f"QR code encoding failed: {e}")
            raise QrEncodingError(str(e)) from e

        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"


# --- Notification Surface ---
class Notification:
    def __init__(self, level: str, message: str):
        self.level = level
        self.message = message

    def __repr__(self):
        return f"Notification({self.level!r}, {self.message!r})"


class NotificationCollector:
    """
    Toast surface for one browsing session: messages wait here until the next
    response picks them up, and are mirrored to the log.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.messages: List[Notification] = []

    def success(self, message: str):
        log.info(f"{self.prefix} {message}".strip())
        self.messages.append(Notification("success", message))

    def error(self, message: str):
        log.warning(f"{self.prefix} {message}".strip())
        self.messages.append(Notification("error", message))

    def drain(self) -> List[Notification]:
        """Returns and forgets everything collected so far."""
        messages, self.messages = self.messages, []
        return messages
