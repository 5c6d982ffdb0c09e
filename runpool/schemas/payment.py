from pydantic import BaseModel, ConfigDict


class PaymentIntentRequest(BaseModel):
    group_id: int
    period_id: str | None = None  # semana actual si falta
    payment_method_type: str = "card"


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    period_id: str
    amount: int
    status: str


class PaymentStatusResponse(BaseModel):
    group_id: int
    period_id: str
    status: str


class PayoutPublic(BaseModel):
    id: int
    group_id: int
    period_id: str
    recipient_id: int
    amount: int
    transfer_id: str | None
    status: str

    model_config = ConfigDict(from_attributes=True)
