"""Utilities for constructing per-kind generation prompts."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, List, Mapping

from .schemas import GenerationKind, schema_for

CONTEXT_KEY = "campaign_context"

_CONTEXT_DEFAULTS = (
    ("theme", "Theme", "Adventure"),
    ("setting", "Setting", "Fantasy world"),
    ("main_plot", "Main Plot", "Epic adventure"),
    ("level_range", "Level Range", "1-10"),
)

_SUBJECTS = {
    GenerationKind.CHARACTER: "D&D 5e character",
    GenerationKind.NPC: "D&D NPC",
    GenerationKind.ITEM: "D&D 5e magic item",
    GenerationKind.QUEST: "detailed D&D 5e quest",
    GenerationKind.ENCOUNTER: "D&D 5e encounter",
    GenerationKind.WORLD: "detailed D&D 5e world",
    GenerationKind.CAMPAIGN: "complete D&D 5e campaign",
}


def describe_form_data(form_data: Mapping[str, Any]) -> List[str]:
    """Render the non-empty form fields as ``key: value`` phrases.

    ``name`` reads as ``named <value>``; the campaign context is excluded.
    """

    phrases: List[str] = []
    for key, value in form_data.items():
        if key == CONTEXT_KEY or value in (None, "", [], {}):
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        if key == "name":
            phrases.append(f"named {value}")
        else:
            phrases.append(f"{key.replace('_', ' ')}: {value}")
    return phrases


def _context_lines(context: Mapping[str, Any]) -> Iterable[str]:
    for key, label, default in _CONTEXT_DEFAULTS:
        yield f"- {label}: {context.get(key) or default}"


def build_generation_prompt(
    kind: GenerationKind | str,
    prompt: str,
    form_data: Mapping[str, Any] | None = None,
) -> str:
    """Return the user prompt sent to the model for ``kind``."""

    resolved = GenerationKind.parse(kind)
    schema = schema_for(resolved)
    form_data = dict(form_data or {})
    subject = _SUBJECTS[resolved]
    context = form_data.get(CONTEXT_KEY)

    if context:
        header = [f"Create {subject} for a campaign with:", *_context_lines(context)]
        if prompt:
            header.extend(["", f'{resolved.label[0].upper() + resolved.label[1:]} Description: "{prompt.strip()}"'])
        lead = "\n".join(header)
    elif prompt:
        lead = f'Create {subject} based on this description: "{prompt.strip()}"'
    else:
        lead = f"Create {subject}"

    phrases = describe_form_data(form_data)
    if phrases:
        lead += f". Additional specifications: {', '.join(phrases)}"

    sections = [lead]
    if context:
        sections.append(
            f"IMPORTANT: This {resolved.label} should fit into the campaign's narrative "
            "and connect to its locations, quests and main plot."
        )
    example = json.dumps(schema.build_example(), indent=2, ensure_ascii=False)
    sections.append(f"JSON only:\n{example}")
    return "\n\n".join(sections)


def hash_prompt(prompt: str) -> str:
    """Generate a stable hash for the given ``prompt``."""

    return hashlib.sha1(prompt.encode("utf-8")).hexdigest()


__all__ = ["CONTEXT_KEY", "build_generation_prompt", "describe_form_data", "hash_prompt"]
