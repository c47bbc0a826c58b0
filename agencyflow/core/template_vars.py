"""
Template variables for node configuration.

Node configs may reference the run's target model with {{model.<name>}}
placeholders, e.g. "photo of {{model.lora_trigger}} at the beach". Resolution
walks the whole config tree and only touches strings.

Unknown variable names are left untouched so the text reaches the backend as
written; a typo like {{model.nmae}} is therefore not an error.
"""

import re
from typing import Any, Dict, List, Optional

TEMPLATE_VAR_RE = re.compile(r"\{\{model\.(\w+)\}\}")

DEFAULT_LORA_STRENGTH = "0.7"

VARIABLE_DESCRIPTIONS = {
    "name": "Model display name",
    "slug": "Model URL slug",
    "of_handle": "OnlyFans handle",
    "notes": "Free-form notes about the model",
    "lora_name": "LoRA file path",
    "lora_strength": "LoRA strength (default 0.7)",
    "lora_trigger": "LoRA trigger word",
}


def build_model_variables(model: Optional[Any]) -> Dict[str, str]:
    """
    Build the variable namespace for a target model.

    Accepts any object with TargetModel's attributes (ORM row or ModelContext).
    A missing model or missing field resolves to an empty string.
    """
    if model is None:
        return {key: "" for key in VARIABLE_DESCRIPTIONS}

    lora = getattr(model, "lora_config", None) or {}
    weight = lora.get("weight")

    return {
        "name": getattr(model, "name", None) or "",
        "slug": getattr(model, "slug", None) or "",
        "of_handle": getattr(model, "onlyfans_handle", None) or "",
        "notes": getattr(model, "notes", None) or "",
        "lora_name": lora.get("path") or "",
        "lora_strength": str(weight) if weight is not None else DEFAULT_LORA_STRENGTH,
        "lora_trigger": lora.get("triggerWord") or "",
    }


def resolve_template_string(text: str, variables: Dict[str, str]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables:
            return variables[key]
        return match.group(0)

    return TEMPLATE_VAR_RE.sub(_replace, text)


def resolve_value(value: Any, variables: Dict[str, str]) -> Any:
    """Recursively resolve placeholders in strings nested in dicts and lists."""
    if isinstance(value, str):
        return resolve_template_string(value, variables)
    if isinstance(value, dict):
        return {key: resolve_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, variables) for item in value]
    return value


def resolve_node_config(config: Optional[Dict[str, Any]], model: Optional[Any]) -> Dict[str, Any]:
    """Return a resolved copy of a node config; the input is not modified."""
    return resolve_value(config or {}, build_model_variables(model))


def available_variables() -> List[Dict[str, str]]:
    """Variable list for the workflow editor."""
    return [
        {"key": f"{{{{model.{name}}}}}", "name": name, "description": description}
        for name, description in VARIABLE_DESCRIPTIONS.items()
    ]
