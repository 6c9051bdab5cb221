"""
Pydantic schemas for Payments API endpoints

Field names follow the web client's camelCase convention on the wire.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CreditPackageSchema(CamelModel):
    id: str
    name: str
    credits: int
    price: float
    currency: str
    popular: bool = False
    savings: Optional[str] = None
    price_per_credit: float


class PackagesResponse(CamelModel):
    success: bool = True
    packages: List[CreditPackageSchema]
    costs: Dict[str, int]


class CheckoutRequest(CamelModel):
    package_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(CamelModel):
    success: bool = True
    checkout_url: Optional[str] = None
    session_id: str


class WebhookResponse(BaseModel):
    received: bool = True
