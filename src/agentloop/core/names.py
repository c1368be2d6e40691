"""Codename generator for completion markers.

Produces markers like 'COBALT_FALCON', used instead of the fixed ``DONE``
when codename markers are enabled.
"""
from __future__ import annotations

import random

ADJECTIVES = [
    "SILENT", "CRIMSON", "SHADOW", "IRON", "GOLDEN", "ARCTIC",
    "PHANTOM", "STEEL", "MIDNIGHT", "COBALT", "VELVET", "THUNDER",
    "SILVER", "OBSIDIAN", "SCARLET", "AZURE", "ONYX", "AMBER",
    "JADE", "RAVEN", "FROST", "EMBER", "STORM", "LUNAR",
    "SOLAR", "NOBLE", "SWIFT", "BOLD", "DARK", "BRIGHT",
]

NOUNS = [
    "THUNDER", "FALCON", "SERPENT", "PHOENIX", "DRAGON", "EAGLE",
    "WOLF", "TIGER", "VIPER", "HAWK", "LION", "PANTHER",
    "COBRA", "CONDOR", "JAGUAR", "SPHINX", "GRIFFIN", "HYDRA",
    "KRAKEN", "TITAN", "ORACLE", "SENTINEL", "GUARDIAN", "SPECTRE",
    "CIPHER", "VECTOR", "NEXUS", "APEX", "PRISM", "VERTEX",
]


def generate_codename() -> str:
    """Random codename like 'SWIFT_HYDRA'; a fresh one for every loop."""
    return f"{random.choice(ADJECTIVES)}_{random.choice(NOUNS)}"
