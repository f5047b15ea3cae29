"""
Marketplace flows built on the data access layer: listings, saved items,
purchases and chat. Each flow stamps the signed-in principal into the
records it writes.
"""

from __future__ import annotations

import logging
import mimetypes
import time
import uuid
from typing import Optional

from datastore.blobs import BlobStore
from datastore.dal import DataAccessLayer
from datastore.errors import PermissionDeniedError, RecordNotFoundError
from datastore.filters import Operator, Predicate
from datastore.identity import PrincipalSource
from datastore.subscriptions import OnChange, Subscription
from shared.constants import (
    BUYER_EMAIL_FIELD,
    CATEGORY_FIELD,
    CONVERSATION_ID_FIELD,
    CONVERSATIONS_COLLECTION,
    LAST_MESSAGE_FIELD,
    MESSAGES_COLLECTION,
    PARTICIPANTS_FIELD,
    PRODUCT_ID_FIELD,
    PRODUCTS_COLLECTION,
    PURCHASE_DATE_FIELD,
    PURCHASED_ITEMS_COLLECTION,
    SAVED_ITEMS_COLLECTION,
    SELLER_FIELD,
    SOLD_FIELD,
    TIMESTAMP_FIELD,
    UID_FIELD,
    USERS_COLLECTION,
)
from shared.types import (
    Conversation,
    Message,
    Product,
    PurchasedItem,
    Role,
    SavedItem,
    User,
)

logger = logging.getLogger(__name__)


class MarketplaceFlows:
    def __init__(
        self,
        dal: DataAccessLayer,
        identity: PrincipalSource,
        blobs: Optional[BlobStore] = None,
    ):
        self.dal = dal
        self.identity = identity
        self.blobs = blobs

    def _principal(self) -> str:
        principal = self.identity.current_principal()
        if not principal:
            raise PermissionDeniedError("Sign in required")
        return principal

    # ------------------------------------------------------------------- users

    async def register_user(self, uid: str, email: str, role: Role = Role.CUSTOMER) -> User:
        existing = await self.dal.get(USERS_COLLECTION, [(UID_FIELD, "==", uid)])
        if existing:
            return existing[0]
        user = User(uid=uid, email=email, role=role)
        user.id = await self.dal.add(USERS_COLLECTION, user)
        return user

    # ---------------------------------------------------------------- listings

    async def create_listing(
        self,
        *,
        product_name: str,
        price: float,
        category: str,
        description: str = "",
        image: Optional[bytes] = None,
        image_filename: str = "image",
    ) -> Product:
        seller = self._principal()
        image_url = ""
        if image is not None:
            if self.blobs is None:
                raise ValueError("No blob store configured for listing images")
            content_type = mimetypes.guess_type(image_filename)[0] or "application/octet-stream"
            path = f"products/{uuid.uuid4().hex}-{image_filename}"
            image_url = self.blobs.put(image, path, content_type)
        product = Product(
            product_name=product_name,
            price=price,
            category=category,
            description=description,
            image_url=image_url,
            seller=seller,
        )
        product.id = await self.dal.add(PRODUCTS_COLLECTION, product)
        return product

    async def browse_listings(self, category: Optional[str] = None) -> list[Product]:
        filters = [Predicate(SOLD_FIELD, Operator.EQ, False)]
        if category:
            filters.append(Predicate(CATEGORY_FIELD, Operator.EQ, category))
        return await self.dal.get(PRODUCTS_COLLECTION, filters)

    async def seller_listings(self) -> list[Product]:
        seller = self._principal()
        return await self.dal.get(PRODUCTS_COLLECTION, [(SELLER_FIELD, "==", seller)])

    # ------------------------------------------------------------- saved items

    async def toggle_saved(self, product: Product) -> bool:
        """Saves `product` for the current buyer, or unsaves it. Returns True when saved."""
        buyer = self._principal()
        if not product.id:
            raise ValueError("Product id is missing")
        saved = await self.dal.get(
            SAVED_ITEMS_COLLECTION,
            [
                (BUYER_EMAIL_FIELD, "==", buyer),
                (PRODUCT_ID_FIELD, "==", product.id),
            ],
        )
        if saved:
            for item in saved:
                await self.dal.delete(SAVED_ITEMS_COLLECTION, item.id)
            return False

        await self.dal.add(
            SAVED_ITEMS_COLLECTION,
            SavedItem(
                buyer_email=buyer,
                product_id=product.id,
                product_name=product.product_name,
                price=product.price,
                category=product.category,
                image_url=product.image_url,
                description=product.description,
                seller=product.seller,
            ),
        )
        return True

    async def saved_items(self) -> list[SavedItem]:
        buyer = self._principal()
        return await self.dal.get(
            SAVED_ITEMS_COLLECTION, [(BUYER_EMAIL_FIELD, "==", buyer)]
        )

    # --------------------------------------------------------------- purchases

    async def mark_sold(self, product: Product, buyer_email: str) -> PurchasedItem:
        seller = self._principal()
        if product.seller != seller:
            raise PermissionDeniedError("Only the seller can mark a listing as sold")
        current = await self.dal.get_by_id(PRODUCTS_COLLECTION, product.id)
        if current is None:
            raise RecordNotFoundError(PRODUCTS_COLLECTION, product.id)
        if current.sold:
            raise ValueError(f"Product {product.id} is already sold")
        purchase_date = max(time.time(), product.created_at)
        await self.dal.update(
            PRODUCTS_COLLECTION,
            product.id,
            {
                SOLD_FIELD: True,
                BUYER_EMAIL_FIELD: buyer_email,
                PURCHASE_DATE_FIELD: purchase_date,
            },
        )
        purchased = PurchasedItem(
            product_id=product.id,
            product_name=product.product_name,
            price=product.price,
            category=product.category,
            image_url=product.image_url,
            description=product.description,
            seller=product.seller,
            buyer_email=buyer_email,
            purchase_date=purchase_date,
            created_at=product.created_at,
        )
        purchased.id = await self.dal.add(PURCHASED_ITEMS_COLLECTION, purchased)
        return purchased

    async def purchased_items(self) -> list[PurchasedItem]:
        buyer = self._principal()
        return await self.dal.get(
            PURCHASED_ITEMS_COLLECTION, [(BUYER_EMAIL_FIELD, "==", buyer)]
        )

    # -------------------------------------------------------------------- chat

    async def find_conversation(self, other: str) -> Optional[Conversation]:
        me = self._principal()
        candidates = await self.dal.get(
            CONVERSATIONS_COLLECTION, [(PARTICIPANTS_FIELD, "contains", me)]
        )
        for conversation in candidates:
            if other in conversation.participants:
                return conversation
        return None

    async def send_message(self, recipient: str, text: str) -> Message:
        sender = self._principal()
        if not text.strip():
            raise ValueError("Message text is empty")
        conversation = await self.find_conversation(recipient)
        if conversation is None:
            conversation = Conversation(participants=[sender, recipient], last_message=text)
            conversation.id = await self.dal.add(CONVERSATIONS_COLLECTION, conversation)
        else:
            await self.dal.update(
                CONVERSATIONS_COLLECTION, conversation.id, {LAST_MESSAGE_FIELD: text}
            )

        message = Message(
            conversation_id=conversation.id,
            sender=sender,
            recipient=recipient,
            text=text,
        )
        message.id = await self.dal.add(MESSAGES_COLLECTION, message)
        logger.debug("Message %s sent in conversation %s", message.id, conversation.id)
        return message

    async def conversation_messages(self, conversation_id: str) -> list[Message]:
        return await self.dal.get(
            MESSAGES_COLLECTION,
            [(CONVERSATION_ID_FIELD, "==", conversation_id)],
            order_by=TIMESTAMP_FIELD,
        )

    async def watch_conversation(self, conversation_id: str, on_change: OnChange) -> Subscription:
        return await self.dal.subscribe(
            MESSAGES_COLLECTION,
            [(CONVERSATION_ID_FIELD, "==", conversation_id)],
            on_change,
        )
