# schemas.py

import json
from datetime import datetime, timezone
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from vdeck_api.errors import OrderValidationError

# Fields the client must send when placing an order (wire names)
REQUIRED_ORDER_FIELDS = ("fullname", "gcash", "address", "items", "total", "paymentProof")
# $inc operands must fit a 32-bit BSON int
MAX_QUANTITY = 2**31 - 1


# Pydantic models for orders

class LineItem(BaseModel):
    # One product and how many units of it; clients may send "id" or "productId"
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="id", validation_alias=AliasChoices("id", "productId"), min_length=1, examples=["p1"])
    quantity: int = Field(..., gt=0, le=MAX_QUANTITY, examples=[1])


class OrderRequest(BaseModel):
    # Fields that client sends in Request
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    fullname: str = Field(..., min_length=1, examples=["Juan Dela Cruz"])
    gcash: str = Field(..., min_length=1, examples=["09171234567"])
    address: str = Field(..., min_length=1, examples=["123 Rizal St, Manila"])
    items: list[LineItem] = Field(..., min_length=1)
    total: float = Field(..., gt=0, examples=[300])
    payment_proof: str = Field(..., alias="paymentProof", min_length=1, examples=["/uploads/1700000000000-proof.png"])

    @field_validator("items", mode="before")
    @classmethod
    def decode_items(cls, value):
        # multipart forms send the cart as a JSON string, JSON bodies send a list
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("items is not valid JSON") from exc
        if not isinstance(value, list):
            raise ValueError("items must be a list of line items")
        return value


class Order(BaseModel):
    # Persisted order; "_id" in the database, "id" in responses
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., validation_alias=AliasChoices("_id", "id"))
    fullname: str
    gcash: str
    address: str
    items: list[LineItem]
    total: float
    payment_proof: str = Field(..., alias="paymentProof")
    created_at: datetime = Field(..., alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # BSON dates are UTC; a client without tz_aware hands them back naive
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_document(cls, document: dict) -> "Order":
        return cls.model_validate(document)

    def to_document(self) -> dict:
        document = self.model_dump(by_alias=True)
        document["_id"] = document.pop("id")
        return document

    def to_response(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def _describe(exc: ValidationError) -> str:
    """ Turn the first pydantic error into a short human readable message. """
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    message = error["msg"]
    return f"{location}: {message}" if location else message


def parse_order_request(payload) -> OrderRequest:
    """
    Validate a raw request body into an OrderRequest.

    Raises OrderValidationError when a required field is missing or blank, or when
    a field (items in particular) is malformed.
    """
    if not isinstance(payload, dict):
        raise OrderValidationError("Request body must be a JSON object.")

    missing = [field for field in REQUIRED_ORDER_FIELDS if _is_blank(payload.get(field))]
    if missing:
        raise OrderValidationError(f"All fields are required. Missing: {', '.join(missing)}")

    try:
        return OrderRequest.model_validate(payload)
    except ValidationError as exc:
        raise OrderValidationError(_describe(exc)) from exc


# Pydantic models for products

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, examples=["VDECK Booster Pack"])
    price: float = Field(..., ge=0, examples=[100])
    stock: int = Field(0, ge=0, examples=[5])
    description: Optional[str] = None
    image: Optional[str] = Field(None, examples=["/uploads/1700000000000-pack.png"])


class ProductUpdate(BaseModel):
    # Only the fields that are sent get updated
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    image: Optional[str] = None


class Product(BaseModel):
    id: str = Field(..., validation_alias=AliasChoices("_id", "id"))
    name: str
    price: float
    # not constrained here: stock may be negative when oversell is allowed
    stock: int
    description: Optional[str] = None
    image: Optional[str] = None

    @classmethod
    def from_document(cls, document: dict) -> "Product":
        return cls.model_validate(document)
