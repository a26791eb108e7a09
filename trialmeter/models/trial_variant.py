"""
trialmeter/models/trial_variant.py

Trial variant configuration (A/B testing of trial generosity).

Variants are immutable values; the active `VariantTable` is replaced as a
whole, never edited in place.
"""

from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class TrialBehavior(str, Enum):
    HARD = "hard"  # block once a limit is reached
    SOFT = "soft"  # report only, never block


class TrialVariant(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    description: str = ""
    call_limit: int = Field(ge=1)
    duration_limit_seconds: int = Field(ge=1)
    trial_period_days: int = Field(ge=1)
    allow_wait_for_auto_convert: bool = True
    behavior: TrialBehavior = TrialBehavior.HARD

    @property
    def duration_limit_minutes(self) -> int:
        return -(-self.duration_limit_seconds // 60)


class VariantTable(BaseModel):
    """
    Versioned set of variants.

    `distribution` maps variant keys to integer weights summing to 100 and is
    only consulted when `ab_test_enabled` is set.
    """
    model_config = ConfigDict(frozen=True)

    version: str
    default_key: str
    variants: Dict[str, TrialVariant]
    ab_test_enabled: bool = False
    distribution: Dict[str, int] = Field(default_factory=dict)

    def get(self, key: Optional[str]) -> Optional[TrialVariant]:
        if not key:
            return None
        return self.variants.get(key)

    @property
    def default(self) -> TrialVariant:
        return self.variants[self.default_key]
