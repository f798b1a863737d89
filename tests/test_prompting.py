from __future__ import annotations

import copy
import json
from unittest.mock import Mock

from loreforge.config import DEFAULT_CONFIG
from loreforge.endpoints import resolve_endpoints
from loreforge.prompting import build_generation_prompt, describe_form_data, hash_prompt
from loreforge.schemas import GenerationKind, build_asset_prompt, schema_for


def _template(prompt: str) -> dict:
    return json.loads(prompt.split("JSON only:\n", 1)[1])


def test_prompt_includes_description_specifications_and_template() -> None:
    prompt = build_generation_prompt("npc", "a nervous smuggler", {"name": "Mira", "location": "Docks"})

    assert prompt.startswith('Create D&D NPC based on this description: "a nervous smuggler"')
    assert ". Additional specifications: named Mira, location: Docks" in prompt
    template = _template(prompt)
    assert list(template) == list(schema_for(GenerationKind.NPC).field_names)


def test_prompt_with_campaign_context_uses_defaults_for_missing_keys() -> None:
    prompt = build_generation_prompt(
        GenerationKind.QUEST,
        "find the missing heir",
        {"campaign_context": {"theme": "Horror"}, "difficulty": "Hard"},
    )

    assert "- Theme: Horror" in prompt
    assert "- Setting: Fantasy world" in prompt
    assert 'Quest Description: "find the missing heir"' in prompt
    assert "difficulty: Hard" in prompt
    assert "campaign_context" not in prompt
    assert "IMPORTANT: This quest should fit" in prompt


def test_describe_form_data_skips_empty_values_and_joins_lists() -> None:
    phrases = describe_form_data({"name": "", "traits": ["brave", "loud"], "level_range": "3-5", "mood": None})

    assert phrases == ["traits: brave, loud", "level range: 3-5"]


def test_hash_prompt_is_stable() -> None:
    assert hash_prompt("abc") == hash_prompt("abc")
    assert hash_prompt("abc") != hash_prompt("abd")


def test_asset_prompts_per_kind() -> None:
    assert build_asset_prompt("npc", {"name": "Mira"}) == "D&D NPC portrait: Mira, fantasy NPC"
    assert (
        build_asset_prompt("item", {"name": "Ember Blade", "description": "a glowing sword"})
        == "D&D magical item: Ember Blade, a glowing sword"
    )


def test_endpoint_table_defaults() -> None:
    table = resolve_endpoints(copy.deepcopy(DEFAULT_CONFIG))

    assert set(table) == set(GenerationKind)
    assert table[GenerationKind.NPC].temperature == 0.8
    assert table[GenerationKind.WORLD].max_tokens == 4000
    assert table[GenerationKind.QUEST].content_url == "https://openrouter.ai/api/v1/chat/completions"
    assert table[GenerationKind.CHARACTER].asset_url == "http://localhost:3000/api/generate-portrait"
    assert table[GenerationKind.QUEST].asset_url is None


def test_endpoint_overrides_and_unknown_kinds() -> None:
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["endpoints"] = {
        "quest": {"model": "big-model", "max_tokens": 1200, "temperature": 0.2},
        "item": {"asset_route": "/api/item-image"},
        "dragon": {"model": "x"},
    }
    logger = Mock()

    table = resolve_endpoints(config, logger)

    assert table[GenerationKind.QUEST].model == "big-model"
    assert table[GenerationKind.QUEST].max_tokens == 1200
    assert table[GenerationKind.QUEST].temperature == 0.2
    assert table[GenerationKind.ITEM].asset_url == "http://localhost:3000/api/item-image"
    logger.warning.assert_called_once()
