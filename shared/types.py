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

import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from enum import StrEnum
from typing import Any, List, Optional, Type

from dacite import Config, DaciteError, from_dict

from shared.constants import (
    CONVERSATIONS_COLLECTION,
    CREATED_AT_FIELD,
    ID_FIELD,
    MESSAGES_COLLECTION,
    PARTICIPANTS_FIELD,
    PRICE_FIELD,
    PRODUCTS_COLLECTION,
    PURCHASE_DATE_FIELD,
    PURCHASED_ITEMS_COLLECTION,
    SAVED_ITEMS_COLLECTION,
    USERS_COLLECTION,
    key_field_for,
)
from shared.json_utils import convert_keys, to_json_safe

_DACITE_CONFIG = Config(check_types=False, cast=[StrEnum])


class Role(StrEnum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


@dataclass(kw_only=True)
class Record:
    """Fields shared by every stored record."""

    id: str = ""
    created_at: float = field(default_factory=lambda: time.time())

    def validate(self) -> None:
        """Checks write-time invariants. Readers never call this."""
        if self.id is None or not isinstance(self.id, str):
            raise ValueError("Record id must be a string")


def _check_purchase_after_creation(record: "Product | PurchasedItem") -> None:
    purchase_date = record.purchase_date
    if isinstance(purchase_date, (int, float)) and purchase_date < record.created_at:
        raise ValueError("purchase_date must not precede created_at")


@dataclass(kw_only=True)
class Product(Record):
    product_name: str
    price: float
    category: str
    image_url: str = ""
    description: str = ""
    seller: str
    sold: bool = False
    buyer_email: Optional[str] = None
    purchase_date: Optional[float] = None

    def validate(self) -> None:
        super().validate()
        if self.price < 0:
            raise ValueError("price must be non-negative")
        _check_purchase_after_creation(self)

    def summary(self) -> str:
        return f"{self.product_name} - ${self.price} ({self.category})"


@dataclass(kw_only=True)
class SavedItem(Record):
    buyer_email: str
    product_id: str
    product_name: str = ""
    price: float = 0.0
    category: str = ""
    image_url: str = ""
    description: str = ""
    seller: str = ""


@dataclass(kw_only=True)
class PurchasedItem(Record):
    product_id: Optional[str] = None
    product_name: str
    price: float
    category: str = ""
    image_url: str = ""
    description: str = ""
    seller: str
    sold: bool = True
    buyer_email: str
    purchase_date: float

    def validate(self) -> None:
        super().validate()
        _check_purchase_after_creation(self)


@dataclass(kw_only=True)
class User(Record):
    uid: str
    email: str
    role: Role = Role.CUSTOMER

    def validate(self) -> None:
        super().validate()
        if not self.uid:
            raise ValueError("uid must not be empty")

    def is_seller(self) -> bool:
        return self.role == Role.SELLER


@dataclass(kw_only=True)
class Conversation(Record):
    participants: List[str]
    last_message: str = ""

    def validate(self) -> None:
        super().validate()
        if len(self.participants) != 2 or len(set(self.participants)) != 2:
            raise ValueError("A conversation has exactly two distinct participants")


@dataclass(kw_only=True)
class Message(Record):
    conversation_id: str
    sender: str
    recipient: str
    text: str
    timestamp: float = field(default_factory=lambda: time.time())


RECORD_TYPES: dict[str, Type[Record]] = {
    PRODUCTS_COLLECTION: Product,
    SAVED_ITEMS_COLLECTION: SavedItem,
    PURCHASED_ITEMS_COLLECTION: PurchasedItem,
    USERS_COLLECTION: User,
    CONVERSATIONS_COLLECTION: Conversation,
    MESSAGES_COLLECTION: Message,
}


def record_type_for(collection: str) -> Type[Record]:
    try:
        return RECORD_TYPES[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def wire_fields(collection: str) -> frozenset[str]:
    """camelCase field names a record of this collection may carry."""
    record_type = record_type_for(collection)
    return frozenset(
        convert_keys({f.name: None for f in fields(record_type)}, "snake_to_camel")
    )


def record_from_dict(collection: str, data: Mapping[str, Any]) -> Record:
    """Builds the typed record for a camelCase wire dict."""
    return from_dict(
        data_class=record_type_for(collection),
        data=convert_keys(dict(data), "camel_to_snake"),
        config=_DACITE_CONFIG,
    )


def record_to_dict(record: Record) -> dict:
    """Returns the camelCase wire form; drops None values and an empty id."""
    data = convert_keys(to_json_safe(asdict(record)), "snake_to_camel")
    data = {key: value for key, value in data.items() if value is not None}
    if not data.get(ID_FIELD):
        data.pop(ID_FIELD, None)
    return data


def encode_record(collection: str, record: Record | Mapping[str, Any]) -> dict:
    """
    Validates a record for writing and returns its wire dict.

    Accepts either the collection's dataclass or a mapping with camelCase
    or snake_case keys. Unknown keys are dropped.
    """
    record_type = record_type_for(collection)
    if is_dataclass(record):
        if not isinstance(record, record_type):
            raise TypeError(
                f"{collection} expects {record_type.__name__}, "
                f"got {type(record).__name__}"
            )
        typed = record
    else:
        wire = convert_keys(to_json_safe(dict(record)), "snake_to_camel")
        try:
            typed = record_from_dict(collection, wire)
        except DaciteError as exc:
            raise ValueError(f"Invalid {collection} record: {exc}") from exc
    typed.validate()
    return record_to_dict(typed)


def encode_patch(collection: str, patch: Mapping[str, Any]) -> dict:
    """Normalises a partial update to wire keys and checks it against the schema."""
    wire = convert_keys(to_json_safe(dict(patch)), "snake_to_camel")
    allowed = wire_fields(collection)
    unknown = sorted(set(wire) - allowed)
    if unknown:
        raise ValueError(f"Unknown fields for {collection}: {', '.join(unknown)}")
    for key_field in {ID_FIELD, key_field_for(collection)}:
        if key_field in wire:
            raise ValueError(f"{key_field} cannot be changed by an update")
    return wire


# Patches touching these fields are re-validated against the merged record.
MERGE_CHECKED_FIELDS = frozenset(
    {CREATED_AT_FIELD, PURCHASE_DATE_FIELD, PRICE_FIELD, PARTICIPANTS_FIELD}
)


def needs_merge_check(changes: Mapping[str, Any]) -> bool:
    return not MERGE_CHECKED_FIELDS.isdisjoint(changes)


def validate_merged(collection: str, data: Mapping[str, Any]) -> None:
    """
    Re-checks write-time invariants on a stored record with a patch merged
    in. Records too incomplete to decode are left to the readers.
    """
    if collection not in RECORD_TYPES:
        return
    try:
        record = record_from_dict(collection, data)
    except DaciteError:
        return
    record.validate()
