"""
Credit package catalog and per-action credit costs.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.config import settings


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: float  # in major currency units (EUR)
    currency: str = "EUR"
    popular: bool = False
    savings: Optional[str] = None

    @property
    def unit_amount(self) -> int:
        """Price in cents, as the payment provider expects it"""
        return int(round(self.price * 100))

    @property
    def price_per_credit(self) -> float:
        return self.price / self.credits


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(
        id="starter",
        name="Starter Pack",
        credits=50,
        price=4.99,
    ),
    CreditPackage(
        id="professional",
        name="Professional Pack",
        credits=1000,
        price=49.99,
        popular=True,
        savings="50% cheaper",
    ),
]

_PACKAGES_BY_ID: Dict[str, CreditPackage] = {package.id: package for package in CREDIT_PACKAGES}


def get_credit_package(package_id: Optional[str]) -> Optional[CreditPackage]:
    """Look up a package by id. Returns None for unknown ids."""
    if not package_id:
        return None
    return _PACKAGES_BY_ID.get(package_id)


def credit_costs() -> Dict[str, int]:
    """Credit cost per billable action"""
    return {
        "apply_suggestion": settings.credit_cost_apply_suggestion,
        "image_analysis": settings.credit_cost_image_analysis,
    }
