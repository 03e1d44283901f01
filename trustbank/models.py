from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

Side = Literal["buy", "sell"]
TransactionKind = Literal["deposit", "withdrawal", "swap"]

class CreateOrderRequest(BaseModel):
    side: Side
    currency: str = Field(min_length=2, max_length=10)
    amount: Decimal = Field(gt=0)
    price: Decimal = Field(gt=0)

class UpdateOrderRequest(BaseModel):
    # Creators may only withdraw an order; fills drive every other status
    status: Literal["cancelled"]

class OpenTradeRequest(BaseModel):
    order_id: UUID
    amount: Decimal = Field(gt=0)

class ConfirmPaymentRequest(BaseModel):
    payment_proof: str = Field(min_length=1)

class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1)
    evidence: Optional[Any] = None

class OpenDisputeRequest(DisputeRequest):
    trade_id: UUID

class TradeStatusResponse(BaseModel):
    trade_id: str
    status: str

class CompleteTradeResponse(TradeStatusResponse):
    funds_released: bool

class DisputeResponse(BaseModel):
    dispute_id: str
    trade_id: str
    status: str

class GenerateReferenceRequest(BaseModel):
    user_id: Optional[str] = None
    type: TransactionKind = "deposit"
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=2, max_length=10)
    virtual_account_number: Optional[str] = None

class GenerateReferenceResponse(BaseModel):
    reference: str

class MarkPaidRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_number: str = Field(alias="accountNumber", min_length=1)
    amount: Decimal = Field(gt=0)

class AdminConfirmRequest(BaseModel):
    reference: str = Field(min_length=1)
    admin_id: str = Field(min_length=1)
    note: Optional[str] = None

class PaymentStatusResponse(BaseModel):
    reference: str
    status: str
    message: str


# Inbound webhooks, one envelope model per provider. Unknown fields are kept
# so the raw event can be stored for audit.

class KorapayEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

class KorapayWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    data: KorapayEventData

WEBHOOK_MODELS = {
    "korapay": KorapayWebhook,
}
