"""Fixed kind -> endpoint lookup table for content and asset generation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .schemas import ASSET_KINDS, GenerationKind


@dataclass(frozen=True)
class KindEndpoint:
    kind: GenerationKind
    content_url: str
    model: str
    system_prompt: str
    temperature: float
    max_tokens: int
    asset_url: Optional[str] = None


_JSON_ONLY = "JSON only, no explanations."

# kind -> (system prompt, temperature, max_tokens)
_DEFAULT_TABLE: Dict[GenerationKind, tuple] = {
    GenerationKind.CHARACTER: (f"D&D character expert. {_JSON_ONLY}", 0.7, 8000),
    GenerationKind.NPC: (f"D&D NPC expert. {_JSON_ONLY}", 0.8, 8000),
    GenerationKind.ITEM: (f"D&D item expert. {_JSON_ONLY}", 0.7, 8000),
    GenerationKind.QUEST: (
        "You are a D&D 5e quest creation expert. You must respond with ONLY valid JSON "
        "objects, no other text or explanations. Always format your response as a complete JSON object.",
        0.7,
        8000,
    ),
    GenerationKind.ENCOUNTER: (
        "You are a D&D 5e encounter design expert. You must respond with ONLY a valid JSON object.",
        0.7,
        8000,
    ),
    GenerationKind.WORLD: (
        "You are a D&D 5e world-building expert. You must respond with ONLY valid JSON objects, "
        "no other text or explanations. Keep all descriptions concise and focused.",
        0.7,
        4000,
    ),
    GenerationKind.CAMPAIGN: (
        "You are a D&D 5e campaign creation expert. You must respond with ONLY valid JSON objects, "
        "no markdown formatting, code blocks, or explanatory text.",
        0.8,
        8000,
    ),
}


def resolve_endpoints(
    config: Mapping[str, Any],
    logger: logging.Logger | None = None,
) -> Dict[GenerationKind, KindEndpoint]:
    """Return the endpoint for every generation kind.

    ``config["endpoints"][<kind>]`` may override ``url``, ``model``,
    ``temperature``, ``max_tokens``, ``system_prompt`` and ``asset_route``.
    """

    service = config.get("service", {})
    assets = config.get("assets", {})
    overrides = config.get("endpoints") or {}
    base_url = str(service.get("base_url") or "").rstrip("/")
    default_content = f"{base_url}/chat/completions"
    asset_base = str(assets.get("base_url") or "").rstrip("/")
    asset_route = str(assets.get("route") or "")

    for key in overrides:
        try:
            GenerationKind.parse(key)
        except ValueError:
            if logger:
                logger.warning("Ignoring endpoint override for unknown kind %r", key)

    table: Dict[GenerationKind, KindEndpoint] = {}
    for kind, (system_prompt, temperature, max_tokens) in _DEFAULT_TABLE.items():
        override = overrides.get(kind.value) or {}
        asset_url = None
        if kind in ASSET_KINDS:
            route = str(override.get("asset_route") or asset_route)
            asset_url = f"{asset_base}{route}" if asset_base or route else None
        table[kind] = KindEndpoint(
            kind=kind,
            content_url=str(override.get("url") or default_content),
            model=str(override.get("model") or service.get("model") or ""),
            system_prompt=str(override.get("system_prompt") or system_prompt),
            temperature=float(override.get("temperature", temperature)),
            max_tokens=int(override.get("max_tokens") or min(max_tokens, int(service.get("max_tokens") or max_tokens))),
            asset_url=asset_url,
        )
    return table


__all__ = ["KindEndpoint", "resolve_endpoints"]
