"""
Billed gateway chat client.

Wraps an OpenAI-compatible AI gateway and charges each completion's
reported cost to the user's credit balance.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..billing.hooks import CompletionCharge, charge_for_completion
from ..core.pricing import PricingPolicy
from ..core.usage import TokenUsage
from ..storage.repository import CreditRepository

logger = logging.getLogger(__name__)


def _extract_gateway_cost(response: Any) -> Dict[str, Any]:
    """Pull cost and generation id out of a gateway completion response.

    Gateways report the USD cost as an extra field on usage; it is kept as
    the raw value so the pricing step can parse it exactly.
    """
    usage = getattr(response, "usage", None)
    cost = getattr(usage, "cost", None) if usage is not None else None
    if cost is None and usage is not None:
        extra = getattr(usage, "model_extra", None) or {}
        cost = extra.get("cost")
    return {"cost": cost, "generationId": getattr(response, "id", None)}


def _extract_usage(response: Any) -> Optional[TokenUsage]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    return TokenUsage(
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        total=getattr(usage, "total_tokens", None) or None
    )


class GatewayChatClient:
    """Chat client that bills completions to a credit account.

    The balance is charged after the completion finishes, since the exact
    cost is only known then. Any sufficiency check belongs to the caller.
    """

    def __init__(
        self,
        repository: CreditRepository,
        user_id: str,
        model: str,
        policy: Optional[PricingPolicy] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None
    ):
        """Initialize the billed client.

        Args:
            repository: Ledger to charge
            user_id: User to bill (required)
            model: Gateway model id (required)
            policy: Pricing policy, defaults to 15% markup rounded up to cents
            base_url: Gateway base URL, OpenAI default when omitted
            api_key: Gateway API key, read from the environment when omitted

        Raises:
            ValueError: If user_id or model is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.repository = repository
        self.user_id = user_id
        self.model = model
        self.policy = policy or PricingPolicy()
        self.client = OpenAI(base_url=base_url, api_key=api_key)
        self.last_charge: Optional[CompletionCharge] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        conversation_id: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion and bill its cost.

        Args:
            messages: List of message dictionaries (required)
            conversation_id: Conversation to record on the ledger entry
            **kwargs: Additional completion parameters

        Returns:
            The gateway completion response, unchanged

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
            Storage errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

        self.last_charge = charge_for_completion(
            self.repository,
            self.policy,
            user_id=self.user_id,
            gateway=_extract_gateway_cost(response),
            model_id=self.model,
            conversation_id=conversation_id,
            usage=_extract_usage(response)
        )
        if self.last_charge is None:
            logger.warning("Completion %s was not billed", getattr(response, "id", None))
        return response
