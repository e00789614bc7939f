"""
Boundary schemas.

Payloads coming from the gateway, the settings API and the admin API are
validated here before any arithmetic or write happens.
"""

import re
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.currency import parse_usd_to_microcents

_MICROCENTS_PATTERN = re.compile(r"[+-]?[0-9]+")


class GatewayCost(BaseModel):
    """Cost metadata reported by the AI gateway for one generation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cost: Optional[Union[str, int, float, Decimal]] = None
    generation_id: Optional[str] = Field(default=None, alias="generationId")

    @field_validator("cost", mode="before")
    @classmethod
    def _check_cost(cls, value):
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValueError("cost must be a string or number")
        if isinstance(value, str) and not value.strip():
            return None
        # Surfaces malformed or negative costs as validation errors
        parse_usd_to_microcents(value)
        return value

    @field_validator("generation_id", mode="before")
    @classmethod
    def _blank_generation_id(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CreditAccountSettings(BaseModel):
    """Auto-reload settings update.

    Fields left unset keep their stored value; fields set to None clear it.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    auto_reload_enabled: Optional[bool] = Field(default=None, alias="autoReloadEnabled")
    auto_reload_threshold_microcents: Optional[int] = Field(
        default=None, ge=0, alias="autoReloadThresholdMicrocents"
    )
    auto_reload_amount_microcents: Optional[int] = Field(
        default=None, ge=0, alias="autoReloadAmountMicrocents"
    )

    @field_validator("auto_reload_threshold_microcents", "auto_reload_amount_microcents", mode="before")
    @classmethod
    def _parse_decimal_string(cls, value):
        # Wire format carries microcents as decimal strings
        if isinstance(value, str):
            text = value.strip()
            if not _MICROCENTS_PATTERN.fullmatch(text):
                raise ValueError("must be an integer number of microcents")
            return int(text)
        return value


class AdminAdjustment(BaseModel):
    """Balance adjustment requested by an administrator."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    user_id: str = Field(min_length=1, alias="userId")
    amount_microcents: int = Field(alias="amountMicrocents")
    reason: str = Field(min_length=1, max_length=256)
    note: Optional[str] = Field(default=None, max_length=500)

    @field_validator("user_id")
    @classmethod
    def _strip_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("userId is required")
        return value

    @field_validator("amount_microcents", mode="before")
    @classmethod
    def _parse_amount(cls, value):
        if isinstance(value, bool):
            raise ValueError("amountMicrocents must be an integer")
        if isinstance(value, str):
            text = value.strip()
            if not _MICROCENTS_PATTERN.fullmatch(text):
                raise ValueError("amountMicrocents must be an integer")
            return int(text)
        return value

    @model_validator(mode="after")
    def _nonzero(self):
        if self.amount_microcents == 0:
            raise ValueError("amountMicrocents must be non-zero")
        return self
