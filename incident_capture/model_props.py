# incident_capture/model_props.py
from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import commentjson
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("incident_capture")

_DEFAULT_PRICING_PATH = Path(__file__).resolve().parent.parent / "config" / "llm_pricing.jsonc"

_pricing_lock = threading.Lock()
_pricing_table: Dict[str, Any] | None = None


def _load_pricing_config(path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load the per-model price table from a JSON-with-comments file.
    LLM_PRICING_ENV_PATH overrides the bundled config/llm_pricing.jsonc.
    """
    cfg_path = Path(path or os.getenv("LLM_PRICING_ENV_PATH") or _DEFAULT_PRICING_PATH)
    if not cfg_path.exists():
        raise FileNotFoundError(f"LLM pricing config file not found at '{cfg_path}'.")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    table = data.get("MODEL_BASE_PRICE_TABLE")
    if not isinstance(table, dict):
        raise ValueError("Pricing config missing or invalid key: MODEL_BASE_PRICE_TABLE")
    return table


def get_price_table() -> Dict[str, Any]:
    global _pricing_table
    with _pricing_lock:
        if _pricing_table is None:
            _pricing_table = _load_pricing_config()
        return _pricing_table


#! PRICING API

def _per_million(rate_usd: float, tokens: int) -> float:
    if rate_usd <= 0.0 or tokens <= 0:
        return 0.0
    return rate_usd * (tokens / 1_000_000.0)


def estimate_cost_usd(
    llm_model_name: str,
    prompt_tokens: int,
    completion_tokens: int,
    service_tier: str | None = None,
) -> Optional[float]:
    """
    Estimate USD cost for a single request from per-1M-token prices.

    - Models with a long-context band switch rates once prompt_tokens
      exceeds long_threshold_tokens.
    - OpenAI models are priced per service tier ("default" when unset).
    - Unknown models return None; a cost estimate is optional everywhere.
    """
    base_name, _ = parse_model_name(llm_model_name)
    try:
        pricing = get_price_table().get(base_name)
    except (FileNotFoundError, ValueError) as e:
        logger.warning(f"estimate_cost_usd: pricing unavailable: {e}")
        return None
    if pricing is None:
        return None

    # !OpenAI Models
    if is_openai_model(base_name):
        pricing = pricing.get(service_tier or "default", pricing.get("default"))
        if not pricing:
            return None
        in_rate = pricing["input_short"]
        out_rate = pricing["output_short"]
    # !VertexAI Models
    elif pricing.get("long_threshold_tokens") is not None and pricing.get("input_long") is not None:
        if prompt_tokens > pricing["long_threshold_tokens"]:
            in_rate = pricing["input_long"]
            out_rate = pricing.get("output_long") or pricing["output_short"]
        else:
            in_rate = pricing["input_short"]
            out_rate = pricing["output_short"]
    else:
        in_rate = pricing["input_short"]
        out_rate = pricing["output_short"]

    return float(_per_million(in_rate, prompt_tokens) + _per_million(out_rate, completion_tokens))


# !######################################################################################################
#! UTILS
# !######################################################################################################

def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "gpt-4", "gpt-5", "o1", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-5.1_low_low'
        - 'gpt-5.1_standard'
        - 'gpt-5.1_fast'
    into (base_model, openai_params).
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed. ")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    service_tier: Optional[str] = None

    verbosity_tokens = {"low", "medium", "high"}
    reasoning_tokens = {"none", "minimal", "low", "medium", "high"}
    service_tier_tokens = {"auto", "default", "flex", "priority"}

    wildcards: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]] = {
        "standard": ("low", "low", None),
        "fast": ("low", "none", None),
        "deep": ("medium", "high", None),
        "standard-flex": ("low", "low", "flex"),
    }

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue

        if t in wildcards:
            w_verb, w_reason, w_tier = wildcards[t]
            verbosity = verbosity or w_verb
            reasoning_effort = reasoning_effort or w_reason
            service_tier = service_tier or w_tier
            continue

        if verbosity is None and t in verbosity_tokens:
            verbosity = t
            continue

        if reasoning_effort is None and t in reasoning_tokens:
            reasoning_effort = t
            continue

        if service_tier is None and t in service_tier_tokens:
            service_tier = t
            continue

        unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'. ")

    params: Dict[str, Any] = {}
    if verbosity is not None:
        params.setdefault("text", {})["verbosity"] = verbosity
    if reasoning_effort is not None:
        params.setdefault("reasoning", {})["effort"] = reasoning_effort
    params["service_tier"] = service_tier or "default"

    return base, params
