"""Reads and updates the global installment policy record."""
from typing import Optional

from sqlalchemy.orm import Session

from installments.config import Settings, settings as app_settings
from installments.database import transaction
from installments.errors import PolicyConfigurationError
from installments.logging import get_logger
from installments.models import InstallmentSettings
from installments.negotiation.policy import PolicySettings
from installments.schemas import SettingsUpdate

logger = get_logger(__name__)

GLOBAL_KEY = "global"


class SettingsStore:
    """
    Settings provider for the negotiation engine.

    `get` hits the database on every call; callers take one snapshot per
    operation and pass it down. Until an administrator saves the "global"
    row, the fallback policy from application configuration applies.
    """

    def __init__(self, db: Session, config: Optional[Settings] = None):
        self.db = db
        self.config = config or app_settings

    def defaults(self) -> PolicySettings:
        return PolicySettings(
            enable_installments=self.config.default_enable_installments,
            min_installment_value=self.config.default_min_installment_value,
            max_installment_value=self.config.default_max_installment_value,
            min_duration_months=self.config.default_min_duration_months,
            max_duration_months=self.config.default_max_duration_months,
            allow_supplier_offers=self.config.default_allow_supplier_offers,
        )

    def _load_row(self) -> Optional[InstallmentSettings]:
        return (
            self.db.query(InstallmentSettings)
            .filter(InstallmentSettings.key == GLOBAL_KEY)
            .populate_existing()
            .one_or_none()
        )

    def get(self) -> PolicySettings:
        row = self._load_row()
        if row is None:
            return self.defaults()
        return PolicySettings(
            enable_installments=row.enable_installments,
            min_installment_value=row.min_installment_value,
            max_installment_value=row.max_installment_value,
            min_duration_months=row.min_duration_months,
            max_duration_months=row.max_duration_months,
            allow_supplier_offers=row.allow_supplier_offers,
        )

    def update(self, patch: SettingsUpdate) -> PolicySettings:
        """
        Merge `patch` into the current policy and upsert the "global" row.

        Raises:
            PolicyConfigurationError: the merged bounds would have min above max
        """
        merged = self.get().as_dict()
        merged.update(patch.model_dump(exclude_none=True))

        if merged["min_installment_value"] > merged["max_installment_value"]:
            raise PolicyConfigurationError(
                "minInstallmentValue cannot exceed maxInstallmentValue",
                field="min_installment_value",
            )
        if merged["min_duration_months"] > merged["max_duration_months"]:
            raise PolicyConfigurationError(
                "minDurationMonths cannot exceed maxDurationMonths",
                field="min_duration_months",
            )

        with transaction(self.db):
            row = self._load_row()
            if row is None:
                row = InstallmentSettings(key=GLOBAL_KEY)
                self.db.add(row)
            for field, value in merged.items():
                setattr(row, field, value)

        logger.info("installment_settings_updated", **{k: str(v) for k, v in merged.items()})
        return self.get()
