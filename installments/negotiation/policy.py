"""
Installment Policy Validation

Checks a new installment request against the administrator-configured
bounds. Settings are handed in on every call; nothing here caches them,
since an administrator can change policy between two requests.

Order of checks (first failure wins):
1. Feature toggle - nothing else is checked when installments are disabled
2. Minimum value
3. Maximum value
4. Minimum duration
5. Maximum duration

All bounds are inclusive.
"""
from dataclasses import asdict, dataclass
from decimal import Decimal

from installments.errors import (
    DurationOutOfRangeError,
    FeatureDisabledError,
    ValueOutOfRangeError,
)
from installments.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PolicySettings:
    """Snapshot of the global installment settings for one operation."""
    enable_installments: bool
    min_installment_value: Decimal
    max_installment_value: Decimal
    min_duration_months: int
    max_duration_months: int
    allow_supplier_offers: bool

    def as_dict(self) -> dict:
        return asdict(self)


def validate_request_policy(
    settings: PolicySettings,
    total_requested_value: Decimal,
    requested_duration_months: int,
) -> None:
    """
    Validate a proposed request against policy bounds.

    Raises:
        FeatureDisabledError: installments are switched off
        ValueOutOfRangeError: value below minimum or above maximum
        DurationOutOfRangeError: duration below minimum or above maximum
    """
    if not settings.enable_installments:
        raise FeatureDisabledError()

    value = Decimal(total_requested_value)

    if value < settings.min_installment_value:
        raise ValueOutOfRangeError(value, "min", settings.min_installment_value)
    if value > settings.max_installment_value:
        raise ValueOutOfRangeError(value, "max", settings.max_installment_value)

    if requested_duration_months < settings.min_duration_months:
        raise DurationOutOfRangeError(requested_duration_months, "min", settings.min_duration_months)
    if requested_duration_months > settings.max_duration_months:
        raise DurationOutOfRangeError(requested_duration_months, "max", settings.max_duration_months)

    logger.debug(
        "policy_check_passed",
        value=str(value),
        duration_months=requested_duration_months,
    )
