import time
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Order (normalized at ingress) ---

class Customer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class OrderItem(BaseModel):
    id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, gt=0)

    @model_validator(mode="before")
    @classmethod
    def accept_qty(cls, data: Any) -> Any:
        if isinstance(data, dict) and "quantity" not in data and "qty" in data:
            data = {**data, "quantity": data["qty"]}
        return data

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


def generate_order_id() -> str:
    return f"BI-{int(time.time() * 1000)}"


class Order(CamelModel):
    """The checkout payload carried through to invoicing and notifications.

    Storefront variants send ``cart`` instead of ``items``, ``qty`` instead
    of ``quantity`` and customer fields either nested or flat; all of them
    collapse into this one shape here.
    """

    order_id: str = Field(default_factory=generate_order_id)
    customer: Customer = Field(default_factory=Customer)
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: Optional[float] = Field(None, ge=0)
    shipping: float = Field(0, ge=0)
    total: Optional[float] = Field(None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def normalize_variants(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "items" not in data and "cart" in data:
            data["items"] = data.pop("cart")
        if "customer" not in data:
            flat = {k: data.pop(k) for k in ("name", "email", "phone", "address") if k in data}
            if flat:
                data["customer"] = flat
        return data

    @model_validator(mode="after")
    def fill_totals(self) -> "Order":
        if self.subtotal is None:
            self.subtotal = sum(item.line_total for item in self.items)
        if self.total is None:
            self.total = self.subtotal + self.shipping
        return self


# --- HTTP payloads ---

class InitiateRequest(CamelModel):
    phone: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    account_reference: Optional[str] = Field(None, min_length=1, max_length=12)
    transaction_desc: str = Field("Order payment", min_length=1, max_length=13)
    order: Optional[Order] = None

    def reference_or(self, fallback: str) -> str:
        """AccountReference for the push: explicit, else the order id, else ``fallback``.

        The gateway accepts at most 12 characters.
        """
        if self.account_reference:
            return self.account_reference
        if self.order is not None:
            return self.order.order_id[:12]
        return fallback[:12]


class InitiateResponse(CamelModel):
    correlation_key: str
    merchant_request_id: str
    customer_message: Optional[str] = None


class StatusResponse(BaseModel):
    status: Literal["pending", "paid", "failed"]


class CallbackAck(BaseModel):
    acknowledged: bool = True
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


# --- Gateway callback envelope ---

class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class CallbackItems(BaseModel):
    Item: List[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str = Field(..., min_length=1)
    ResultCode: Union[int, str]
    ResultDesc: Optional[str] = None
    CallbackMetadata: Optional[CallbackItems] = None


class CallbackBody(BaseModel):
    stkCallback: StkCallback


class CallbackEnvelope(BaseModel):
    Body: CallbackBody
