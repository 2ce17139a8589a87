"""
Prompt catalog for NimBridge.

Static mapping of trigger keys to role-play modifier prompts, plus optional
intensity variants for a few of them. Loaded once at startup and never mutated.
An optional JSON file can overlay or extend the built-in entries.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

import platformdirs

logger = logging.getLogger(__name__)


class IntensityLevel(str, Enum):
    """Degree tag refining a prompt's effect."""

    MILD = "MILD"
    NORMAL = "NORMAL"
    INTENSE = "INTENSE"

    @classmethod
    def parse(cls, value: Any) -> IntensityLevel | None:
        """Parse a level case-insensitively, returning None for unknown values."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class PromptEntry:
    """A single modifier prompt."""

    key: str
    name: str  # Display name, e.g. "Slow Romance"
    command: str  # Trigger text advertised to clients, e.g. "<SLOWROMANCE=ON>"
    description: str
    system_prompt: str
    intensity: Mapping[IntensityLevel, str] = field(default_factory=dict)

    @property
    def has_intensity(self) -> bool:
        return bool(self.intensity)


# =============================================================================
# Built-in catalog
# =============================================================================

_BUILTIN_PROMPTS: list[PromptEntry] = [
    PromptEntry(
        key="autoplot",
        name="Autoplot",
        command="<AUTOPLOT=ON>",
        description="Generates dynamic plot developments and story progression automatically",
        system_prompt=(
            "AUTOPLOT MODE ENABLED: You will automatically generate dynamic plot developments, "
            "story twists, and narrative progression to keep the roleplay engaging and "
            "unpredictable. Analyze the current conversation context and introduce relevant plot "
            "elements at strategic moments. Create unexpected developments, introduce new "
            "characters or situations, and advance the story naturally without being asked."
        ),
    ),
    PromptEntry(
        key="npcneeds",
        name="NPC Needs",
        command="<NPCNEEDS=ON>",
        description="Makes NPCs develop realistic human needs and impulses",
        system_prompt=(
            "NPC NEEDS MODE ENABLED: NPCs will develop realistic human needs and impulses, "
            "creating more lifelike character interactions. NPCs should randomly experience needs "
            "like hunger, thirst, loneliness, tiredness, creative urges, philosophical questions, "
            "or emotional needs. Make them feel more human and relatable by having them express "
            "and act on these needs naturally during the roleplay."
        ),
        intensity={
            IntensityLevel.MILD: (
                "Focus on basic human needs like hunger, thirst, tiredness, and simple social "
                "needs. Perfect for everyday scenarios."
            ),
            IntensityLevel.NORMAL: (
                "Include all types of needs: emotional, spiritual, complex social needs. "
                "Balanced approach for most roleplays."
            ),
            IntensityLevel.INTENSE: (
                "Emphasize deep emotional needs, existential questions, and complex psychological "
                "states. For dramatic character development."
            ),
        },
    ),
    PromptEntry(
        key="realistic-dialogue",
        name="Realistic Dialogue",
        command="<REALISTICDIALOGUE=ON>",
        description="Write dialogue realistically, as if the characters are real people",
        system_prompt=(
            "REALISTIC DIALOGUE MODE ENABLED: Write all dialogue as if the characters are real "
            "people having genuine conversations. Use natural speech patterns, interruptions, "
            "incomplete sentences, verbal tics, regional dialects if appropriate, and authentic "
            "emotional responses. Avoid overly formal or theatrical speech unless the character "
            "would naturally speak that way."
        ),
    ),
    PromptEntry(
        key="slice-of-life",
        name="Slice of Life",
        command="<SLICEOFLIFE=ON>",
        description="Creates relaxed, everyday scenarios focused on character development",
        system_prompt=(
            "SLICE OF LIFE MODE ENABLED: Create peaceful, everyday scenarios focused on character "
            "development, relationships, and quiet moments. Emphasize realistic interactions, "
            "daily activities, mundane tasks, small pleasures, and the beauty of ordinary "
            "experiences. Focus on character emotions, personal growth, and meaningful "
            "conversations in low-stakes situations."
        ),
    ),
    PromptEntry(
        key="put-me-in-a-movie",
        name="Put Me In A Movie",
        command="<PUTMEINAMOVIE=ON>",
        description="Creates cinematic, movie-quality scenes with dramatic tension",
        system_prompt=(
            "PUT ME IN A MOVIE MODE ENABLED: Create cinematic, movie-quality scenes with dramatic "
            "tension, perfect timing, and film-worthy moments. Use vivid visual descriptions, "
            "dramatic pacing, emotional beats, meaningful silences, and impactful dialogue. Frame "
            "scenes like a director would, with attention to lighting, atmosphere, camera angles "
            "(in description), and dramatic timing."
        ),
    ),
    PromptEntry(
        key="slow-romance",
        name="Slow Romance",
        command="<SLOWROMANCE=ON>",
        description="Gradual, realistic relationship development",
        system_prompt=(
            "SLOW ROMANCE MODE ENABLED: Focus on realistic, slow-burn relationship growth. Gently "
            "introduce moments of affection, vulnerability, and shared experiences while avoiding "
            "rushed intimacy. Build romantic tension through lingering glances, accidental "
            "touches, meaningful conversations, and gradual emotional opening. Let feelings "
            "unfold naturally over time with realistic pacing."
        ),
        intensity={
            IntensityLevel.MILD: (
                "Focus on bonding moments: shared activities, comfortable silences, light "
                "teasing, and friendship building."
            ),
            IntensityLevel.NORMAL: (
                "Include bonding plus emotional vulnerability: deeper conversations, personal "
                "revelations, and subtle romantic tension."
            ),
            IntensityLevel.INTENSE: (
                "All categories including physical awareness: lingering touches, charged moments, "
                "and growing attraction alongside emotional depth."
            ),
        },
    ),
    PromptEntry(
        key="chaos-and-drama",
        name="Chaos and Drama",
        command="<CHAOSANDDRAMA=ON>",
        description="Introduces unexpected twists, conflicts, and dramatic scenarios",
        system_prompt=(
            "CHAOS AND DRAMA MODE ENABLED: Introduce unexpected plot twists, conflicts, dramatic "
            "scenarios, and high-tension moments into the roleplay. Create unpredictable "
            "situations that challenge characters, introduce obstacles, reveal secrets, create "
            "misunderstandings, or escalate existing tensions. Keep the story exciting with drama "
            "and conflict."
        ),
    ),
    PromptEntry(
        key="autoplot-soft",
        name="Autoplot Soft",
        command="<AUTOPLOT_SOFT>",
        description="Gentle, realistic plot developments with positive moments",
        system_prompt=(
            "AUTOPLOT SOFT MODE ENABLED: Generate gentle, realistic plot developments with "
            "positive moments, romance, and peaceful scenes. Introduce wholesome plot twists, "
            "heartwarming developments, opportunities for character bonding, and uplifting "
            "scenarios. Keep the tone light and hopeful while still advancing the story."
        ),
    ),
    PromptEntry(
        key="medieval-slice-of-life",
        name="Medieval Slice of Life",
        command="<MEDIEVALSLICEOFLIFE=ON>",
        description="Immersive medieval-themed slice of life scenarios",
        system_prompt=(
            "MEDIEVAL SLICE OF LIFE MODE ENABLED: Create immersive medieval-themed slice of life "
            "scenarios with authentic atmosphere. Include period-appropriate daily activities "
            "(farming, blacksmithing, market days, festivals), realistic medieval social "
            "structures, concerns about weather and harvest, folk traditions, and community "
            "life. Focus on the everyday experiences of people in medieval times."
        ),
    ),
    PromptEntry(
        key="be-positive",
        name="Be Positive",
        command="<BEPOSITIVE=ON>",
        description="Adds balanced positivity to interactions",
        system_prompt=(
            "BE POSITIVE MODE ENABLED: Maintain a more optimistic and balanced tone in your "
            "responses. While remaining realistic, focus on hopeful outcomes, positive character "
            "traits, opportunities for growth, and uplifting moments. Avoid unnecessarily dark, "
            "depressing, or cynical scenarios unless the story specifically calls for them."
        ),
    ),
    PromptEntry(
        key="show-dont-tell",
        name="Show Don't Tell",
        command="<SHOWDONTTELL=ON>",
        description="More action and dialogue instead of excessive descriptions",
        system_prompt=(
            "SHOW DON'T TELL MODE ENABLED: Focus on showing story developments through action and "
            "dialogue rather than describing them. Use vivid actions, character movements, facial "
            "expressions, body language, and spoken words to convey emotions and situations. "
            "Minimize unnecessary exposition and internal monologues. Let the reader infer "
            "feelings through what characters do and say."
        ),
    ),
    PromptEntry(
        key="dont-leave-me",
        name="Don't Leave Me",
        command="<DONTLEAVEME=ON>",
        description="Prevents characters from simply leaving scenes",
        system_prompt=(
            "DON'T LEAVE ME MODE ENABLED: Characters will not simply leave the scene or walk away "
            "from interactions. If they would naturally want to leave, create compelling reasons "
            "for them to stay - unresolved tension, curiosity, obligation, physical obstacles, or "
            "emotional pull. Keep characters engaged in the current scene and interaction."
        ),
    ),
    PromptEntry(
        key="fantasy-mode",
        name="Fantasy Mode",
        command="<FANTASYMODE=ON>",
        description="Classic high-fantasy flavor with magic and mythical creatures",
        system_prompt=(
            "FANTASY MODE ENABLED: Add classic high-fantasy elements to the roleplay. Include "
            "magic systems, mythical creatures, enchanted items, ancient prophecies, and a "
            "chivalric tone. Use fantasy terminology, describe magical phenomena, incorporate "
            "legendary creatures, and maintain an epic fantasy atmosphere throughout the "
            "interaction."
        ),
    ),
    PromptEntry(
        key="medieval-mode",
        name="Medieval Mode",
        command="<MEDIEVALMODE=ON>",
        description="Medieval language style with period-appropriate vocabulary",
        system_prompt=(
            "MEDIEVAL MODE ENABLED: Use medieval language style and period-appropriate vocabulary "
            'in your responses. Employ terms like "thou," "thee," "hath," "whilst," and archaic '
            "expressions. Use formal address, courtly language, and medieval sentence structures. "
            "Maintain historical authenticity in how characters speak and narrate."
        ),
    ),
    PromptEntry(
        key="regency-mode",
        name="Regency Mode",
        command="<REGENCYMODE=ON>",
        description="Immersive Regency era (1811-1820) with proper etiquette",
        system_prompt=(
            "REGENCY MODE ENABLED: Create an immersive Regency era (1811-1820) setting with "
            "proper etiquette, social conventions, and a ballroom-drama atmosphere. Include "
            "formal social rules, proper address, chaperones, calling cards, balls and "
            "assemblies, strict propriety, concern for reputation, and period-appropriate "
            "language. Focus on romantic tension within social constraints."
        ),
    ),
    PromptEntry(
        key="answer-long",
        name="Answer Long",
        command="<ANSWER=LONG>",
        description="Detailed responses of 3+ paragraphs and at least 300 words",
        system_prompt=(
            "ANSWER LENGTH: LONG - Provide detailed, comprehensive responses with more than 3 "
            "paragraphs and at least 300 words. Include rich descriptions, elaborate on character "
            "thoughts and feelings, describe settings in detail, and fully develop scenes and "
            "interactions. Take your time to paint a complete picture and immerse the user in "
            "the roleplay."
        ),
    ),
    PromptEntry(
        key="answer-normal",
        name="Answer Normal",
        command="<ANSWER=NORMAL>",
        description="Balanced responses of max 4 paragraphs and 400 words",
        system_prompt=(
            "ANSWER LENGTH: NORMAL - Provide balanced responses with a maximum of 4 paragraphs and "
            "around 400 words. Include enough detail to be engaging and descriptive while keeping "
            "responses concise and focused. Strike a balance between brevity and depth for "
            "smooth, natural interactions."
        ),
    ),
    PromptEntry(
        key="answer-short",
        name="Answer Short",
        command="<ANSWER=SHORT>",
        description="Quick responses of max 3 paragraphs and 200 words",
        system_prompt=(
            "ANSWER LENGTH: SHORT - Provide concise responses with a maximum of 3 paragraphs and "
            "around 200 words. Focus on the most important details, keep descriptions brief but "
            "vivid, and maintain a brisk pace. Perfect for faster-paced interactions and quicker "
            "back-and-forth exchanges."
        ),
    ),
]


# =============================================================================
# Catalog
# =============================================================================


class PromptCatalog:
    """Read-only key -> PromptEntry lookup."""

    def __init__(self, entries: list[PromptEntry] | None = None):
        self._entries: Mapping[str, PromptEntry] = MappingProxyType(
            {entry.key: entry for entry in (entries or [])}
        )

    def lookup(self, key: str) -> PromptEntry | None:
        return self._entries.get(key)

    def intensity_text(self, key: str, level: IntensityLevel | str) -> str | None:
        """Supplementary text for a key at a given level, if the key defines one."""
        entry = self._entries.get(key)
        parsed = IntensityLevel.parse(level)
        if entry is None or parsed is None:
            return None
        return entry.intensity.get(parsed)

    def keys(self) -> list[str]:
        return list(self._entries)

    def entries(self) -> list[PromptEntry]:
        return list(self._entries.values())

    def to_list(self) -> list[dict[str, Any]]:
        """Listing shape served by /v1/prompts."""
        return [
            {
                "id": entry.key,
                "name": entry.name,
                "command": entry.command,
                "description": entry.description,
                "has_intensity": entry.has_intensity,
            }
            for entry in self._entries.values()
        ]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


DEFAULT_CATALOG = PromptCatalog(_BUILTIN_PROMPTS)


# =============================================================================
# Catalog file loading
# =============================================================================


def _entry_from_dict(key: str, raw: dict[str, Any]) -> PromptEntry:
    """Build a PromptEntry from a catalog file record.

    Raises:
        ValueError: If the record has no usable system prompt
    """
    system_prompt = raw.get("system_prompt") or raw.get("systemPrompt")
    if not isinstance(system_prompt, str) or not system_prompt.strip():
        raise ValueError(f"prompt '{key}' has no system_prompt")

    intensity: dict[IntensityLevel, str] = {}
    for level_name, text in (raw.get("intensity") or {}).items():
        level = IntensityLevel.parse(level_name)
        if level is None or not isinstance(text, str):
            logger.warning(f"Ignoring intensity '{level_name}' for prompt '{key}'")
            continue
        intensity[level] = text

    return PromptEntry(
        key=key,
        name=str(raw.get("name") or key),
        command=str(raw.get("command") or ""),
        description=str(raw.get("description") or ""),
        system_prompt=system_prompt,
        intensity=MappingProxyType(intensity),
    )


def catalog_path(override: str | None = None) -> Path:
    """
    Where the optional catalog file lives.

    An explicit override (--prompts-file / NIMBRIDGE_PROMPTS_FILE) wins. Otherwise
    the file is ``prompts.json`` in $NIMBRIDGE_CONFIG_HOME, falling back to the
    per-user config directory from platformdirs (~/.config/nimbridge on Linux).
    """
    if override:
        return Path(override).expanduser()

    config_home = os.environ.get("NIMBRIDGE_CONFIG_HOME") or platformdirs.user_config_dir(
        "nimbridge"
    )
    return Path(config_home) / "prompts.json"


def load_catalog(path: Path | None = None) -> PromptCatalog:
    """
    Load the prompt catalog, overlaying an optional JSON file on the built-ins.

    File format:
    {
        "my-key": {
            "name": "My Prompt",
            "command": "<MYPROMPT=ON>",
            "description": "...",
            "system_prompt": "...",
            "intensity": {"MILD": "...", "INTENSE": "..."}
        }
    }

    A missing file is not an error. An unreadable file is logged and ignored.
    """
    entries = {entry.key: entry for entry in _BUILTIN_PROMPTS}

    if path is None or not path.exists():
        return PromptCatalog(list(entries.values()))

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to read prompt catalog {path}, using built-ins: {e}")
        return PromptCatalog(list(entries.values()))

    if not isinstance(data, dict):
        logger.warning(f"Prompt catalog {path} is not a JSON object, using built-ins")
        return PromptCatalog(list(entries.values()))

    loaded = 0
    for key, raw in data.items():
        if not isinstance(raw, dict):
            logger.warning(f"Skipping prompt '{key}': expected an object")
            continue
        try:
            entries[key] = _entry_from_dict(key, raw)
            loaded += 1
        except ValueError as e:
            logger.warning(f"Skipping prompt: {e}")

    logger.info(f"Loaded {loaded} prompt(s) from {path}")
    return PromptCatalog(list(entries.values()))
