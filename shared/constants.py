# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

# Collection names (identical in Firestore and the local store)
PRODUCTS_COLLECTION = "products"
SAVED_ITEMS_COLLECTION = "savedItems"
PURCHASED_ITEMS_COLLECTION = "purchasedItems"
OFFERS_COLLECTION = "offers"
USERS_COLLECTION = "users"
CONVERSATIONS_COLLECTION = "conversations"
MESSAGES_COLLECTION = "messages"

ALL_COLLECTIONS = (
    PRODUCTS_COLLECTION,
    SAVED_ITEMS_COLLECTION,
    PURCHASED_ITEMS_COLLECTION,
    OFFERS_COLLECTION,
    USERS_COLLECTION,
    CONVERSATIONS_COLLECTION,
    MESSAGES_COLLECTION,
)

# Reserved collections exist in the local schema but have no public flows yet.
RESERVED_COLLECTIONS = frozenset({OFFERS_COLLECTION})

# Field names
ID_FIELD = "id"
UID_FIELD = "uid"
EMAIL_FIELD = "email"
ROLE_FIELD = "role"
CREATED_AT_FIELD = "createdAt"
SOLD_FIELD = "sold"
BUYER_EMAIL_FIELD = "buyerEmail"
PRODUCT_ID_FIELD = "productId"
PRODUCT_NAME_FIELD = "productName"
PRICE_FIELD = "price"
IMAGE_URL_FIELD = "imageURL"
DESCRIPTION_FIELD = "description"
CATEGORY_FIELD = "category"
SELLER_FIELD = "seller"
PURCHASE_DATE_FIELD = "purchaseDate"
PARTICIPANTS_FIELD = "participants"
CONVERSATION_ID_FIELD = "conversationId"
SENDER_FIELD = "sender"
RECIPIENT_FIELD = "recipient"
TEXT_FIELD = "text"
TIMESTAMP_FIELD = "timestamp"
LAST_MESSAGE_FIELD = "lastMessage"

# Primary-key field per collection; anything not listed is keyed by "id".
KEY_FIELDS = {
    USERS_COLLECTION: UID_FIELD,
}


def key_field_for(collection: str) -> str:
    return KEY_FIELDS.get(collection, ID_FIELD)


CATEGORIES = (
    "Men's Clothing",
    "Women's Clothing",
    "Appliances",
    "Room Decoration",
    "Textbooks",
)
