"""
Credit package and session pricing catalog.
"""

import calendar
from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel

from rinkbook.models.schemas import CreditPackageType, SessionType


class CreditPackage(BaseModel):
    """A purchasable bundle of session credits."""
    package_type: CreditPackageType
    credits: int
    price: float
    description: Optional[str] = None


CREDIT_PACKAGES: Dict[CreditPackageType, CreditPackage] = {
    CreditPackageType.SINGLE: CreditPackage(
        package_type=CreditPackageType.SINGLE,
        credits=1,
        price=45.0,
        description="One group training session"
    ),
    CreditPackageType.TEN_PACK: CreditPackage(
        package_type=CreditPackageType.TEN_PACK,
        credits=10,
        price=350.0,
        description="Ten group sessions"
    ),
    CreditPackageType.TWENTY_PACK: CreditPackage(
        package_type=CreditPackageType.TWENTY_PACK,
        credits=20,
        price=500.0,
        description="Twenty group sessions"
    ),
    CreditPackageType.FIFTY_PACK: CreditPackage(
        package_type=CreditPackageType.FIFTY_PACK,
        credits=50,
        price=1000.0,
        description="Fifty group sessions"
    ),
}

# Sessions that are not paid with credits are purchased directly through checkout
CREDITS_PER_SESSION: Dict[SessionType, int] = {
    SessionType.GROUP: 1,
    SessionType.SUNDAY: 0,
    SessionType.PRIVATE: 0,
    SessionType.SEMI_PRIVATE: 0,
}


def get_package(package_type: str) -> CreditPackage:
    """Get a credit package by its type identifier."""
    try:
        return CREDIT_PACKAGES[CreditPackageType(package_type)]
    except ValueError:
        raise ValueError(f"Unknown package type: {package_type}")


def credits_required(session_type: SessionType) -> int:
    """Credits one booking of this session type consumes."""
    return CREDITS_PER_SESSION[session_type]


def credit_expiry(purchased_at: datetime, months: int) -> datetime:
    """Expiry of credits bought at `purchased_at`, clamped to the end of short months."""
    month_index = purchased_at.month - 1 + months
    year = purchased_at.year + month_index // 12
    month = month_index % 12 + 1
    day = min(purchased_at.day, calendar.monthrange(year, month)[1])
    return purchased_at.replace(year=year, month=month, day=day)
