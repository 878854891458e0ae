"""Hero packs per variant and prompt lookup."""

import json
from functools import lru_cache
from pathlib import Path

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ProviderConfigurationMissingError

BOY_KEYS = (
    "deadpool", "wolverine", "spider-man", "miles-morales", "iron-man", "captain-america",
    "thor", "venom", "doctor-strange", "black-panther", "hulk", "loki",
)
GIRL_KEYS = (
    "elsa", "moana", "rapunzel", "wonderwoman", "ariel", "belle",
    "cinderella", "barbie", "snow-white", "aurora", "strawberry", "anna",
)
HERO_PACKS = {"boy": BOY_KEYS, "girl": GIRL_KEYS}
DEFAULT_VARIANT = "boy"


@lru_cache
def _load_prompts(path: str) -> dict[str, str]:
    p = Path(path)
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProviderConfigurationMissingError(f"Hero prompt catalog at {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items() if v}


def get_prompts() -> dict[str, str]:
    """Hero key -> prompt map. Raises if the catalog is missing or empty."""
    prompts = _load_prompts(get_settings().hero_prompts_path)
    if not prompts:
        raise ProviderConfigurationMissingError("Hero prompt catalog not loaded; set HERO_PROMPTS_PATH")
    return prompts


def normalize_variant(variant: str | None) -> str:
    v = (variant or DEFAULT_VARIANT).strip().lower()
    if v not in HERO_PACKS:
        raise BadRequestError(f"Unknown variant '{v}'. Use: {' | '.join(HERO_PACKS)}")
    return v


def pack_prompts(variant: str) -> list[tuple[str, str]]:
    """Return [(hero_key, prompt)] for the variant's pack, in pack order."""
    prompts = get_prompts()
    keys = HERO_PACKS[variant]
    missing = [k for k in keys if k not in prompts]
    if missing:
        raise BadRequestError("Missing prompts for some heroes.", details={"missing": missing})
    return [(k, prompts[k]) for k in keys]


def hero_prompt(hero_key: str) -> str:
    prompts = get_prompts()
    prompt = prompts.get(hero_key)
    if not prompt:
        raise BadRequestError(f"Unknown hero key '{hero_key}'.")
    return prompt
