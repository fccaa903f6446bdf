# backend/app/stages.py
from app.errors import ValidationError

# The seven cultivation phases, in the order a farmer goes through them.
STAGE_NAMES = [
    "Land Preparation",
    "Sowing",
    "Germination",
    "Vegetative Growth",
    "Flowering & Pollination",
    "Harvesting",
    "Post-Harvest Processing",
]

MIN_IMAGES_PER_STAGE = 2

_BY_KEY = {name.lower(): name for name in STAGE_NAMES}


def normalize_stage_name(name: str) -> str:
    """Map user input (any case, stray spaces) to the canonical stage name."""
    canonical = _BY_KEY.get(" ".join((name or "").split()).lower())
    if not canonical:
        raise ValidationError(
            f"Unknown stage '{name}'",
            allowed_stages=STAGE_NAMES,
        )
    return canonical


def stage_number(name: str) -> int:
    return STAGE_NAMES.index(normalize_stage_name(name)) + 1
