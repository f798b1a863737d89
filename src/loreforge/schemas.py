"""Per-kind record schemas for generated content."""

from __future__ import annotations

import copy
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Tuple


class GenerationKind(str, Enum):
    CHARACTER = "character"
    NPC = "npc"
    ITEM = "item"
    QUEST = "quest"
    ENCOUNTER = "encounter"
    WORLD = "world"
    CAMPAIGN = "campaign"

    @property
    def label(self) -> str:
        return "NPC" if self is GenerationKind.NPC else self.value

    @classmethod
    def parse(cls, value: "GenerationKind | str") -> "GenerationKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown generation kind: {value!r}") from None


class FieldType(str, Enum):
    STRING = "string"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    INTEGER = "integer"
    BOOLEAN = "boolean"

    def empty(self) -> Any:
        return {
            FieldType.STRING: "",
            FieldType.SEQUENCE: [],
            FieldType.MAPPING: {},
            FieldType.INTEGER: 0,
            FieldType.BOOLEAN: False,
        }[self]


@dataclass(frozen=True)
class FieldSpec:
    """Definition of a single field expected in a generated record."""

    name: str
    kind: FieldType
    default: Any = None
    example: Any = None

    def default_value(self) -> Any:
        if self.default is None:
            return self.kind.empty()
        return copy.deepcopy(self.default)

    def example_value(self) -> Any:
        if self.example is not None:
            return copy.deepcopy(self.example)
        return self.default_value()


@dataclass(frozen=True)
class RecordSchema:
    """Required fields (with defaults) for one generation kind."""

    kind: GenerationKind
    fields: Tuple[FieldSpec, ...]

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(field.name for field in self.fields)

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def build_example(self) -> "OrderedDict[str, Any]":
        example: "OrderedDict[str, Any]" = OrderedDict()
        for spec in self.fields:
            example[spec.name] = spec.example_value()
        return example


def _s(name: str, default: str = "", example: str | None = None) -> FieldSpec:
    return FieldSpec(name, FieldType.STRING, default, example)


def _seq(name: str, default: list | None = None, example: list | None = None) -> FieldSpec:
    return FieldSpec(name, FieldType.SEQUENCE, default if default is not None else [], example)


def _int(name: str, default: int = 0) -> FieldSpec:
    return FieldSpec(name, FieldType.INTEGER, default)


_DEFAULT_STATS = {"STR": 10, "DEX": 10, "CON": 10, "INT": 10, "WIS": 10, "CHA": 10}


SCHEMAS: Dict[GenerationKind, RecordSchema] = {
    GenerationKind.CHARACTER: RecordSchema(
        GenerationKind.CHARACTER,
        (
            _s("name", "Unnamed Adventurer"),
            _s("race"),
            _s("class"),
            _s("background"),
            _s("backstory", example="brief backstory"),
            _seq("personalityTraits", example=["trait1", "trait2", "trait3", "trait4"]),
            FieldSpec("stats", FieldType.MAPPING, _DEFAULT_STATS),
            _s("quote"),
            _s("uniqueTrait"),
            _s("appearance"),
            _int("level", 1),
            _int("hitPoints", 12),
            _int("armorClass", 10),
            _int("initiative", 0),
            _int("speed", 30),
            _seq("proficiencies", ["Common"]),
            _seq("features", ["Class Feature 1", "Class Feature 2"]),
        ),
    ),
    GenerationKind.NPC: RecordSchema(
        GenerationKind.NPC,
        (
            _s("name", "Unnamed NPC"),
            _s("race", "Human"),
            _s("location"),
            _s("role"),
            _s("mood"),
            _s("backstory", example="Brief backstory"),
            _s("personality"),
            _s("appearance"),
            _seq("motivations"),
            _seq("relationships"),
            _seq("secrets"),
            _s("quote"),
            _s("uniqueTrait"),
            FieldSpec("stats", FieldType.MAPPING, _DEFAULT_STATS),
            _seq("skills", ["Common"]),
            _seq("equipment", ["Basic clothing"]),
            _seq("goals", ["Survive"]),
        ),
    ),
    GenerationKind.ITEM: RecordSchema(
        GenerationKind.ITEM,
        (
            _s("name", "Unnamed Item"),
            _s("itemType"),
            _s("rarity", "Common", example="Common/Uncommon/Rare/Very Rare/Legendary/Artifact"),
            _s("description"),
            _seq("properties", ["Magical"]),
            _seq("magicalEffects", ["Has magical properties"]),
            _s("history"),
            _s("value"),
            _s("weight"),
            _seq("requirements", ["None"]),
            FieldSpec("attunement", FieldType.BOOLEAN, False),
            _s("quote"),
            _s("uniqueTrait"),
            _seq("craftingMaterials", ["Unknown materials"]),
            _seq("enchantments", ["Basic enchantment"]),
            _seq("restrictions", ["None"]),
        ),
    ),
    GenerationKind.QUEST: RecordSchema(
        GenerationKind.QUEST,
        (
            _s("title", "Untitled Quest"),
            _s("description"),
            _s("difficulty", "Medium", example="Easy/Medium/Hard/Deadly/Epic"),
            _seq("objectives", example=["Objective 1", "Objective 2", "Objective 3"]),
            _s("rewards"),
            _s("location"),
            _seq("npcs", example=["NPC 1 description", "NPC 2 description"]),
            _s("timeline"),
            _s("consequences"),
            _s("questType"),
            _s("levelRange", "1-5"),
            _s("estimatedDuration", "1-2 sessions"),
        ),
    ),
    GenerationKind.ENCOUNTER: RecordSchema(
        GenerationKind.ENCOUNTER,
        (
            _s("name", "Unnamed Encounter"),
            _s("description"),
            _s("difficulty", "Medium", example="Easy/Medium/Hard/Deadly"),
            _s("enemies"),
            _s("environment"),
            _seq("objectives", example=["Objective 1", "Objective 2"]),
            _s("rewards"),
            _s("tactics"),
        ),
    ),
    GenerationKind.WORLD: RecordSchema(
        GenerationKind.WORLD,
        (
            _s("name", "Unknown World"),
            _s("theme", "Fantasy"),
            _s("landName", "Unknown Land"),
            _s("geography", "A mysterious land with diverse terrain."),
            _s("politics", "A complex political system governs this realm."),
            _s("culture", "Rich cultural traditions shape the society."),
            _s("climate", "Temperate climate with seasonal changes."),
            _s("population", "A diverse population of various races."),
            _s("government", "Monarchy with noble houses."),
            _s("religion", "Polytheistic beliefs with multiple deities."),
            _s("economy", "Mixed economy with trade and agriculture."),
            _s("quote", "A world of endless possibilities."),
            _s("uniqueFeature", "Mystical energy flows through the land."),
            _s("history", "Ancient civilizations have shaped this world."),
            _seq("notableEvents", ["Ancient founding"]),
            _seq("majorFactions", ["Local government"]),
            _seq("landmarks", ["Central plaza"]),
            _seq("resources", ["Basic materials"]),
            _seq("conflicts", ["Minor disputes"]),
            _seq("legends", ["Local myths"]),
        ),
    ),
    GenerationKind.CAMPAIGN: RecordSchema(
        GenerationKind.CAMPAIGN,
        (
            _s("name", "Generated Campaign"),
            _s("description", "A campaign generated from your specifications"),
            _s("theme", "Adventure"),
            _s("difficulty", "Medium"),
            _int("playerCount", 4),
            _s("levelRange", "1-10"),
            _s("estimatedDuration", "3-6 months"),
            _s("setting", "Fantasy world"),
            _s("mainPlot", "The main story arc of your campaign"),
            _seq("subPlots", example=["Sub-plot 1", "Sub-plot 2"]),
            _seq("majorNPCs", example=[{"name": "NPC name", "role": "Their role", "motivation": "What they want"}]),
            _seq("locations", example=[{"name": "Location name", "significance": "Why it's important"}]),
            _seq("quests", example=[{"title": "Quest title", "objectives": ["Objective 1"]}]),
            _seq("encounters", example=[{"name": "Encounter name", "difficulty": "Easy/Medium/Hard/Deadly"}]),
            _s("notes", "Campaign notes and tips for the DM"),
        ),
    ),
}


# Kinds that support an auxiliary image asset.
ASSET_KINDS = frozenset({GenerationKind.CHARACTER, GenerationKind.NPC, GenerationKind.ITEM})


def schema_for(kind: GenerationKind | str) -> RecordSchema:
    return SCHEMAS[GenerationKind.parse(kind)]


def supports_asset(kind: GenerationKind | str) -> bool:
    return GenerationKind.parse(kind) in ASSET_KINDS


def build_asset_prompt(kind: GenerationKind | str, content: Mapping[str, Any]) -> str:
    """Return the image prompt describing generated ``content``."""

    resolved = GenerationKind.parse(kind)
    name = content.get("name") or "Unnamed"
    if resolved is GenerationKind.CHARACTER:
        appearance = content.get("appearance") or "fantasy character"
        return (
            f"D&D character portrait: {name}, {content.get('race', '')} "
            f"{content.get('class', '')}, {appearance}"
        )
    if resolved is GenerationKind.NPC:
        return f"D&D NPC portrait: {name}, {content.get('appearance') or 'fantasy NPC'}"
    if resolved is GenerationKind.ITEM:
        return f"D&D magical item: {name}, {content.get('description') or 'fantasy magical item'}"
    return "D&D fantasy art"


__all__ = [
    "GenerationKind",
    "FieldType",
    "FieldSpec",
    "RecordSchema",
    "SCHEMAS",
    "ASSET_KINDS",
    "schema_for",
    "supports_asset",
    "build_asset_prompt",
]
