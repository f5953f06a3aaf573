from __future__ import annotations

from functools import lru_cache
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from accessbundle.core.config import Settings, get_settings
from accessbundle.domain.bundle import FeatureAccess


logger = logging.getLogger(__name__)

# Product requirement: these features are always visible whatever the computed policy.
ALWAYS_GUARANTEED_FEATURES = ("dashboard_operational_indicators", "dashboard_head_office")


class FeatureDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_permissions: list[str] = Field(default_factory=list)
    default_access: FeatureAccess = FeatureAccess.NOT_GRANTED

    def resolve(self, allowed: set[str], denied: set[str]) -> FeatureAccess:
        # denied beats granted; partial grants fall back to the configured default.
        # An empty requirement list is satisfied, so such a feature is granted.
        if any(permission in denied for permission in self.required_permissions):
            return FeatureAccess.DENIED
        if all(permission in allowed for permission in self.required_permissions):
            return FeatureAccess.GRANTED
        return self.default_access


class FeatureTable(BaseModel):
    """Versioned map from feature key to the permissions it requires."""

    model_config = ConfigDict(frozen=True)

    version: str = "1"
    features: dict[str, FeatureDefinition] = Field(default_factory=dict)
    always_guaranteed: tuple[str, ...] = ALWAYS_GUARANTEED_FEATURES

    def evaluate(self, allowed: set[str], denied: set[str]) -> dict[str, FeatureAccess]:
        resolved = {key: definition.resolve(allowed, denied) for key, definition in sorted(self.features.items())}
        for key in self.always_guaranteed:
            resolved[key] = FeatureAccess.GUARANTEED
        return resolved


DEFAULT_FEATURE_TABLE = FeatureTable(
    version="1",
    features={
        "dashboard_operational_indicators": FeatureDefinition(
            required_permissions=["dashboards.operational.read"],
            default_access=FeatureAccess.GRANTED,
        ),
        "dashboard_head_office": FeatureDefinition(
            required_permissions=["dashboards.head_office.read"],
            default_access=FeatureAccess.GRANTED,
        ),
        "alarm_management": FeatureDefinition(
            required_permissions=["alarms.rules.read", "alarms.rules.update"],
        ),
        "user_administration": FeatureDefinition(
            required_permissions=["identity.users.manage"],
        ),
        "reports_export": FeatureDefinition(
            required_permissions=["reports.export.execute"],
        ),
        "device_commands": FeatureDefinition(
            required_permissions=["devices.commands.execute"],
        ),
    },
)


def load_feature_table(path: str | Path) -> FeatureTable:
    table = FeatureTable.model_validate_json(Path(path).read_text(encoding="utf-8"))
    logger.info("feature_table_loaded path=%s version=%s features=%s", path, table.version, len(table.features))
    return table


@lru_cache(maxsize=8)
def _cached_feature_table(path: str) -> FeatureTable:
    return load_feature_table(path)


def get_feature_table(settings: Settings | None = None) -> FeatureTable:
    # Deployments swap the table through configuration rather than a code change.
    resolved = settings or get_settings()
    if not resolved.bundle_feature_table_path:
        return DEFAULT_FEATURE_TABLE
    return _cached_feature_table(resolved.bundle_feature_table_path)
