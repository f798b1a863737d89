"""loreforge: queued, multi-stage generation of tabletop RPG content."""

__version__ = "0.1.0"
