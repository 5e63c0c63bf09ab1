"""
Model Pricing
Per-model token prices used to cost every interaction.
"""

import re
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


# Pricing per 1M tokens (USD)
#
# The provider gateway may report its own cost; when it doesn't, the ledger
# prices the interaction from this table. Unknown models are priced at the
# mid-tier default instead of failing.
MODEL_PRICING = {
    # Anthropic - Claude 4.x
    "claude-opus-4-20250514": {"prompt": 15.0, "completion": 75.0},
    "claude-opus-4-1": {"prompt": 15.0, "completion": 75.0},
    "claude-sonnet-4-5-20250514": {"prompt": 3.0, "completion": 15.0},
    "claude-sonnet-4-20250514": {"prompt": 3.0, "completion": 15.0},
    "claude-haiku-4-5-20250514": {"prompt": 0.25, "completion": 1.25},

    # Anthropic - Claude 3.x
    "claude-3-opus-20240229": {"prompt": 15.0, "completion": 75.0},
    "claude-3-5-sonnet-20241022": {"prompt": 3.0, "completion": 15.0},
    "claude-3-5-haiku-20241022": {"prompt": 0.80, "completion": 4.0},
    "claude-3-haiku-20240307": {"prompt": 0.25, "completion": 1.25},

    # OpenAI
    "gpt-5.1-turbo": {"prompt": 5.0, "completion": 15.0},
    "gpt-4o": {"prompt": 2.5, "completion": 10.0},
    "gpt-4o-mini": {"prompt": 0.15, "completion": 0.60},
    "gpt-4-turbo": {"prompt": 10.0, "completion": 30.0},
    "gpt-3.5-turbo": {"prompt": 0.5, "completion": 1.5},

    # Google Gemini
    "gemini-3-pro": {"prompt": 2.0, "completion": 10.0},
    "gemini-3-flash": {"prompt": 0.15, "completion": 0.75},
    "gemini-2.5-pro": {"prompt": 1.25, "completion": 10.0},
    "gemini-2.5-flash": {"prompt": 0.30, "completion": 2.50},
}

# Mid-tier price point for models missing from the table
DEFAULT_PRICING = {"prompt": 3.0, "completion": 15.0}

_VERSION_SUFFIX = re.compile(r'(-\d{4}-\d{2}-\d{2}|-\d{8}|-latest|-preview.*)$')


def get_pricing(model_name: Optional[str]) -> Dict[str, float]:
    """
    Get pricing for a model with fallback.

    Lookup order:
    1. Exact match
    2. Strip provider prefix (anthropic/claude-3-opus-20240229 -> claude-3-opus-20240229)
    3. Strip date/version suffix (gpt-4o-2024-08-06 -> gpt-4o)
    4. DEFAULT_PRICING
    """
    if not model_name:
        return DEFAULT_PRICING

    pricing = MODEL_PRICING.get(model_name)
    if pricing:
        return pricing

    base_model = model_name.split('/')[-1]
    pricing = MODEL_PRICING.get(base_model)
    if pricing:
        logger.debug(f"Fallback pricing for {model_name} -> {base_model}")
        return pricing

    stripped = _VERSION_SUFFIX.sub('', base_model)
    if stripped != base_model:
        pricing = MODEL_PRICING.get(stripped)
        if pricing:
            logger.debug(f"Version fallback pricing for {model_name} -> {stripped}")
            return pricing

    logger.debug(f"No pricing data for model: {model_name}, using default")
    return DEFAULT_PRICING


def calculate_cost(model_name: Optional[str], input_tokens: int, output_tokens: int) -> float:
    """Cost in USD for one call."""
    pricing = get_pricing(model_name)
    input_cost = (max(input_tokens or 0, 0) / 1_000_000) * pricing["prompt"]
    output_cost = (max(output_tokens or 0, 0) / 1_000_000) * pricing["completion"]
    return round(input_cost + output_cost, 8)
