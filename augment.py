"""
Request augmentation: prepend selected modifier prompts to the system turn.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from prompts import DEFAULT_CATALOG, IntensityLevel, PromptCatalog

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n\n"
SYSTEM_SEPARATOR = "\n\n"


def build_modifier_text(
    keys: list[str],
    levels: Mapping[str, IntensityLevel | str] | None = None,
    catalog: PromptCatalog = DEFAULT_CATALOG,
) -> str:
    """
    Combine the modifier text of every known key, in the order given.

    Keys missing from the catalog are skipped. Keys with intensity variants
    get a labelled block for the requested level (NORMAL when unspecified).
    """
    levels = levels or {}
    blocks: list[str] = []

    for key in keys:
        entry = catalog.lookup(key)
        if entry is None:
            logger.debug(f"Unknown prompt key '{key}', skipping")
            continue

        blocks.append(entry.system_prompt)

        level = IntensityLevel.parse(levels.get(key)) or IntensityLevel.NORMAL
        variant = catalog.intensity_text(key, level)
        if variant:
            blocks.append(f"INTENSITY FOR {entry.name.upper()}: {level.value}\n{variant}")

    return BLOCK_SEPARATOR.join(blocks)


def _prepend_to_content(content: Any, text: str) -> Any:
    # Structured (multimodal) content gets a leading text part
    if isinstance(content, list):
        return [{"type": "text", "text": text}, *content]
    if not content:
        return text
    return f"{text}{SYSTEM_SEPARATOR}{content}"


def augment(
    messages: list[dict[str, Any]],
    keys: list[str],
    levels: Mapping[str, IntensityLevel | str] | None = None,
    catalog: PromptCatalog = DEFAULT_CATALOG,
) -> list[dict[str, Any]]:
    """
    Merge the modifier prompts for ``keys`` into the conversation.

    The combined text goes in front of the first system turn's content, or
    becomes a new leading system turn when there is none. The input list and
    its dicts are never mutated.
    """
    if not keys:
        return messages

    combined = build_modifier_text(keys, levels, catalog).strip()
    if not combined:
        return messages

    result = list(messages)
    for i, msg in enumerate(result):
        if msg.get("role") == "system":
            updated = dict(msg)
            updated["content"] = _prepend_to_content(msg.get("content"), combined)
            result[i] = updated
            return result

    return [{"role": "system", "content": combined}, *result]


def apply_prompt(
    messages: list[dict[str, Any]],
    key: str | None,
    intensity: IntensityLevel | str = IntensityLevel.NORMAL,
    catalog: PromptCatalog = DEFAULT_CATALOG,
) -> list[dict[str, Any]]:
    """Single-key form of augment()."""
    if not key:
        return messages
    return augment(messages, [key], {key: intensity}, catalog)


def _as_key_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return []


def extract_prompt_selection(
    body: Mapping[str, Any],
) -> tuple[list[str], dict[str, str]]:
    """
    Read prompt selection parameters from an inbound request body.

    Accepts snake_case and camelCase spellings:
        prompt_key / promptKey                  single key
        prompt_keys / promptKeys                list (or comma separated string)
        intensity                               level applied to every key
        intensity_settings / intensitySettings  per-key levels (override intensity)

    Returns:
        (keys, levels) with duplicate keys removed, order preserved
    """
    keys: list[str] = []
    for name in ("prompt_key", "promptKey", "prompt_keys", "promptKeys"):
        for key in _as_key_list(body.get(name)):
            if key not in keys:
                keys.append(key)

    levels: dict[str, str] = {}
    default_level = body.get("intensity")
    if isinstance(default_level, str) and default_level.strip():
        levels = {key: default_level for key in keys}

    per_key = body.get("intensity_settings") or body.get("intensitySettings")
    if isinstance(per_key, Mapping):
        for key, level in per_key.items():
            if isinstance(level, str):
                levels[key] = level

    return keys, levels
