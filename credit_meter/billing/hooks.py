"""
Billing hooks for chat completions and admin adjustments.

These are the consumers of the ledger: they validate their payloads, work
out the signed delta and hand it to CreditRepository.apply_credit_delta.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from ..core.currency import format_microcents
from ..core.errors import InvalidAmount
from ..core.pricing import CostBreakdown, PricingPolicy
from ..core.usage import TokenUsage
from ..storage.models import EntryType
from ..storage.repository import CreditRepository
from .schemas import AdminAdjustment, GatewayCost

logger = logging.getLogger(__name__)

GATEWAY_SOURCE = "gateway"
ADMIN_SOURCE = "admin"


@dataclass(frozen=True)
class CompletionCharge:
    """Outcome of billing one completion."""
    pricing: CostBreakdown
    balance_microcents: int
    generation_id: Optional[str] = None


def _pricing_metadata(pricing: CostBreakdown) -> Dict[str, Any]:
    return {
        "markupBps": pricing.markup_bps,
        "baseCents": pricing.base_cents,
        "markupCents": pricing.markup_cents,
        "totalCents": pricing.total_cents,
        "baseMicrocents": str(pricing.base_microcents),
        "markupMicrocents": str(pricing.markup_microcents),
        "totalMicrocents": str(pricing.total_microcents),
    }


def parse_gateway_cost(gateway: Union[GatewayCost, Mapping[str, Any], None]) -> GatewayCost:
    """Validate gateway cost metadata.

    Raises:
        InvalidAmount: If the reported cost is malformed or negative
    """
    if isinstance(gateway, GatewayCost):
        return gateway
    try:
        return GatewayCost.model_validate(dict(gateway or {}))
    except ValidationError as e:
        raise InvalidAmount(f"Invalid gateway cost: {e.errors()[0]['msg']}") from e


def charge_for_completion(
    repository: CreditRepository,
    policy: PricingPolicy,
    user_id: str,
    gateway: Union[GatewayCost, Mapping[str, Any], None],
    model_id: str,
    conversation_id: Optional[str] = None,
    usage: Optional[Union[TokenUsage, Mapping[str, Any]]] = None
) -> Optional[CompletionCharge]:
    """Charge a user for a finished completion.

    The gateway generation id is used as the idempotency key, so replaying
    the same completion does not charge twice.

    Args:
        repository: Ledger to charge
        policy: Markup and rounding policy
        user_id: User who ran the completion
        gateway: Gateway cost metadata (cost, generationId)
        model_id: Model that produced the completion
        conversation_id: Conversation the completion belongs to
        usage: Token usage for the audit trail

    Returns:
        CompletionCharge, or None when there was nothing to charge

    Raises:
        InvalidAmount: If the reported cost is malformed or negative
    """
    cost = parse_gateway_cost(gateway)
    pricing = policy.price_or_none(cost.cost)
    if pricing is None:
        logger.warning("No gateway cost for user %s on %s; nothing charged", user_id, model_id)
        return None
    if pricing.total_microcents <= 0:
        logger.info("Zero-cost completion for user %s on %s", user_id, model_id)
        return None

    if usage is not None and not isinstance(usage, TokenUsage):
        usage = TokenUsage.from_raw(usage)

    balance = repository.apply_credit_delta(
        user_id=user_id,
        amount_microcents=-pricing.total_microcents,
        entry_type=EntryType.USAGE,
        reason=f"Chat usage ({model_id})",
        external_source=GATEWAY_SOURCE,
        external_id=cost.generation_id,
        metadata={
            "conversationId": conversation_id,
            "modelId": model_id,
            "usage": usage.to_dict() if usage is not None else None,
            "gatewayCostUsd": str(cost.cost),
            "pricing": _pricing_metadata(pricing),
        }
    )
    logger.info(
        "Credits debited for user %s: -$%s USD",
        user_id, format_microcents(pricing.total_microcents, places=8)
    )
    return CompletionCharge(pricing=pricing, balance_microcents=balance, generation_id=cost.generation_id)


def adjust_balance(
    repository: CreditRepository,
    admin_user_id: str,
    payload: Union[AdminAdjustment, Mapping[str, Any]]
) -> int:
    """Apply an administrator's balance adjustment.

    Authorization happens before this is called.

    Args:
        repository: Ledger to adjust
        admin_user_id: Administrator making the change
        payload: AdminAdjustment or a mapping accepted by it

    Returns:
        Balance in microcents after the adjustment

    Raises:
        InvalidAmount: If the payload fails validation
    """
    if not isinstance(payload, AdminAdjustment):
        try:
            payload = AdminAdjustment.model_validate(dict(payload))
        except ValidationError as e:
            raise InvalidAmount(f"Invalid adjustment: {e.errors()[0]['msg']}") from e

    balance = repository.apply_credit_delta(
        user_id=payload.user_id,
        amount_microcents=payload.amount_microcents,
        entry_type=EntryType.ADJUSTMENT,
        reason=payload.reason,
        external_source=ADMIN_SOURCE,
        metadata={"adminUserId": admin_user_id, "note": payload.note}
    )
    logger.info(
        "Admin %s adjusted user %s by %d microcents",
        admin_user_id, payload.user_id, payload.amount_microcents
    )
    return balance
