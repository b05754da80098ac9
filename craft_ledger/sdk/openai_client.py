"""
Metered OpenAI client wrapper.

Bills every chat completion against the caller's prepaid balance without
modifying the response.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.adapters import normalize_openai
from ..core.ai_billing import AIBillingResult, bill_ai_usage
from ..core.ledger import Ledger
from ..core.pricing import PRICING_CATALOG, PricingCatalog

PROVIDER_PREFIX = "openai/"


class MeteredOpenAI:
    """OpenAI client wrapper that debits usage through the Ledger.

    The response id is the idempotency key, so a retried billing call never
    charges twice. All failures are loud to ensure no silent revenue loss.
    """

    def __init__(
        self,
        model: str,
        user_id: str,
        ledger: Ledger,
        project_id: Optional[str] = None,
        catalog: PricingCatalog = PRICING_CATALOG,
        client: Optional[OpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            model: OpenAI model name, with or without the ``openai/`` prefix
            user_id: Account to bill (required)
            ledger: Ledger to debit through
            project_id: Optional project the calls belong to

        Raises:
            ValueError: If model or user_id is missing/empty
            PricingNotFound: If the model has no pricing
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        self.model = model[len(PROVIDER_PREFIX):] if model.startswith(PROVIDER_PREFIX) else model
        self.model_id = PROVIDER_PREFIX + self.model
        catalog.get_pricing(self.model_id)

        self.user_id = user_id
        self.ledger = ledger
        self.project_id = project_id
        self.catalog = catalog
        self.client = client or OpenAI()
        self.last_billing: Optional[AIBillingResult] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion and bill its usage.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response has no usage
            OpenAI API errors: Propagated without modification
            Ledger errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        if not response.usage:
            raise ValueError("OpenAI response missing usage information")

        self.last_billing = bill_ai_usage(
            self.ledger,
            self.user_id,
            self.model_id,
            normalize_openai(response.usage),
            request_id=response.id,
            project_id=self.project_id,
            catalog=self.catalog,
        )

        return response
