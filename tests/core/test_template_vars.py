"""
Unit Tests for template variable resolution

Tests cover:
- {{model.*}} substitution in nested configs
- Unknown variables left untouched
- Missing model / missing LoRA fields
"""

import pytest

from agencyflow.core.context import ModelContext
from agencyflow.core.template_vars import (
    available_variables,
    build_model_variables,
    resolve_node_config,
    resolve_template_string,
)

LUNA = ModelContext(
    id=1,
    agency_id=1,
    name="Luna",
    slug="luna",
    onlyfans_handle="@luna",
    notes="Prefers warm lighting",
    lora_config={"path": "loras/luna_v2.safetensors", "weight": 0.85, "triggerWord": "lunaxyz"},
)


@pytest.mark.unit
def test_resolves_every_variable():
    text = "{{model.name}}|{{model.slug}}|{{model.of_handle}}|{{model.notes}}|" \
           "{{model.lora_name}}|{{model.lora_strength}}|{{model.lora_trigger}}"

    assert resolve_template_string(text, build_model_variables(LUNA)) == (
        "Luna|luna|@luna|Prefers warm lighting|loras/luna_v2.safetensors|0.85|lunaxyz"
    )


@pytest.mark.unit
def test_resolves_nested_config_without_mutating_input():
    config = {
        "prompt": "photo of {{model.lora_trigger}} at the beach",
        "count": 2,
        "extra": {"negative": ["not {{model.name}}", 3]},
    }

    resolved = resolve_node_config(config, LUNA)

    assert resolved == {
        "prompt": "photo of lunaxyz at the beach",
        "count": 2,
        "extra": {"negative": ["not Luna", 3]},
    }
    assert config["prompt"] == "photo of {{model.lora_trigger}} at the beach"


@pytest.mark.unit
def test_unknown_variables_are_left_as_written():
    assert resolve_node_config({"prompt": "{{model.nmae}} and {{other.name}}"}, LUNA) == {
        "prompt": "{{model.nmae}} and {{other.name}}"
    }


@pytest.mark.unit
def test_missing_model_resolves_to_empty_strings():
    assert resolve_node_config({"prompt": "hi {{model.name}}!"}, None) == {"prompt": "hi !"}


@pytest.mark.unit
def test_lora_strength_defaults_when_not_set():
    model = ModelContext(id=2, agency_id=1, name="Mia")

    variables = build_model_variables(model)

    assert variables["lora_strength"] == "0.7"
    assert variables["lora_name"] == ""
    assert variables["slug"] == ""


@pytest.mark.unit
def test_available_variables_lists_placeholders():
    keys = [item["key"] for item in available_variables()]

    assert "{{model.lora_trigger}}" in keys
    assert len(keys) == 7
