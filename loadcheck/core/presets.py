"""Named workloads.

``quick`` is a smoke test. ``baseline`` .. ``extreme`` are the fixed-load
levels of the stress suite and ``ultimate`` the largest one; ``progressive``
is the ramp run level by level until the target stops keeping up.
"""

from typing import Dict, List

from .config import Level
from ..utils.errors import HarnessFault


PRESETS: Dict[str, List[Level]] = {
    "quick": [Level("QUICK", 5, 10, 5)],
    "baseline": [Level("BASELINE", 10, 20, 10)],
    "medium": [Level("MEDIUM", 25, 30, 15)],
    "high": [Level("HIGH", 50, 50, 25)],
    "extreme": [Level("EXTREME", 100, 100, 50)],
    "stress": [
        Level("BASELINE", 10, 20, 10),
        Level("MEDIUM", 25, 30, 15),
        Level("HIGH", 50, 50, 25),
        Level("EXTREME", 100, 100, 50),
    ],
    "ultimate": [Level("ULTIMATE", 500, 500, 250)],
    "progressive": [
        Level("LEVEL_1", 25, 50, 25),
        Level("LEVEL_2", 50, 100, 50),
        Level("LEVEL_3", 100, 200, 100),
        Level("LEVEL_4", 200, 300, 150),
        Level("LEVEL_5", 500, 500, 250),
    ],
}

# Run mode each preset was designed for
PRESET_MODES: Dict[str, str] = {
    "quick": "burst",
    "baseline": "burst",
    "medium": "burst",
    "high": "burst",
    "extreme": "burst",
    "stress": "progressive",
    "ultimate": "burst",
    "progressive": "progressive",
}


def get_preset(name: str) -> List[Level]:
    try:
        return list(PRESETS[name.lower()])
    except KeyError as e:
        raise HarnessFault(f"Unknown preset {name!r}; available: {', '.join(sorted(PRESETS))}") from e


def preset_mode(name: str) -> str:
    return PRESET_MODES.get(name.lower(), "burst")
