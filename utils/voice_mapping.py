"""
Audiobook Creator
Copyright (C) 2025 Prakhar Sharma

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import os
import math
from typing import Dict, List, Optional, Tuple
from config.constants import NARRATOR_VOICE, MIN_SPEAKING_PERCENTAGE
from utils.file_utils import read_json
from utils.character_utils import (
    Character,
    SpeakerAssignment,
    UNNAMED_SPEAKERS,
    UNNAMED_SPEAKER_GENDERS,
    count_speaking_frequency,
)

VOICE_POOL_FILE = "static_files/voice_pool.json"
VOICE_MAPPING_VERSION = 1

# Kokoro voices, used when no voice pool file is present
DEFAULT_VOICE_POOL = {
    "male": ["am_adam", "am_michael", "am_eric", "am_liam", "am_onyx", "am_puck", "bm_george", "bm_lewis", "bm_daniel", "bm_fable"],
    "female": ["af_bella", "af_nicole", "af_sarah", "af_sky", "af_nova", "af_alloy", "bf_emma", "bf_isabella", "bf_alice", "bf_lily"],
}

def load_voice_pool(path: str = VOICE_POOL_FILE) -> Dict[str, List[str]]:
    """Load the {"male": [...], "female": [...], "unknown": [...]} voice pool, or the default one."""
    if os.path.exists(path):
        return read_json(path)
    return DEFAULT_VOICE_POOL

def build_character_voice_map(
    characters: List[Character],
    voice_pool: Optional[Dict[str, List[str]]] = None,
    narrator_voice: str = NARRATOR_VOICE,
    speaking_frequency: Optional[Dict[str, int]] = None,
) -> Dict[str, str]:
    """
    Give every character, and each unnamed-speaker placeholder, a voice matching its gender.

    Characters that speak more are served first so they get distinct voices; once a gender's pool is
    used up voices are reused in order. The narrator voice is never handed out. Characters of unknown
    gender draw from the "unknown" pool, or from the male and female pools combined.

    Returns:
        dict: canonical name -> voice id
    """
    voice_pool = voice_pool or load_voice_pool()
    speaking_frequency = speaking_frequency or {}

    pools = {}
    for gender in ("male", "female"):
        pools[gender] = [v for v in voice_pool.get(gender, []) if v != narrator_voice]
    pools["unknown"] = [v for v in voice_pool.get("unknown", []) if v != narrator_voice] or pools["male"] + pools["female"]

    used = {gender: 0 for gender in pools}

    def next_voice(gender: str) -> str:
        pool = pools.get(gender) or pools["unknown"]
        if not pool:
            return narrator_voice
        voice = pool[used[gender] % len(pool)]
        used[gender] += 1
        return voice

    ranked = sorted(characters, key=lambda c: -speaking_frequency.get(c.canonical_name, 0))

    voice_map = {}
    for char in ranked:
        voice_map[char.canonical_name] = next_voice(char.gender)
    for placeholder in UNNAMED_SPEAKERS:
        voice_map[placeholder] = next_voice(UNNAMED_SPEAKER_GENDERS[placeholder])

    return voice_map

def sort_characters_by_frequency(
    characters: List[Character],
    assignments: List[SpeakerAssignment],
    min_speaking_percentage: float = MIN_SPEAKING_PERCENTAGE,
) -> List[Character]:
    """Most frequent speakers first, leaving out characters below `min_speaking_percentage` of all sentences."""
    frequency = count_speaking_frequency(assignments)
    min_sentences = math.ceil(len(assignments) * min_speaking_percentage)
    kept = [c for c in characters if frequency.get(c.canonical_name, 0) >= min_sentences]
    return sorted(kept, key=lambda c: -frequency.get(c.canonical_name, 0))

def export_voice_mapping(
    characters: List[Character],
    voice_map: Dict[str, str],
    narrator_voice: str = NARRATOR_VOICE,
) -> Dict:
    """The saved voice mapping: {"version": 1, "narrator": ..., "voices": [{name, voice, gender}, ...]}."""
    return {
        "version": VOICE_MAPPING_VERSION,
        "narrator": narrator_voice,
        "voices": [
            {"name": c.canonical_name, "voice": voice_map.get(c.canonical_name, ""), "gender": c.gender}
            for c in characters
        ],
    }

def load_voice_mapping(path: str) -> Tuple[List[Dict], str]:
    """
    Read a saved voice mapping (characters.json of an earlier run, or a hand-edited copy).

    Returns:
        tuple: (voice entries, narrator voice)

    Raises:
        ValueError: if the file has the wrong version or no voices array.
    """
    data = read_json(path)
    if not isinstance(data, dict) or data.get("version") != VOICE_MAPPING_VERSION:
        raise ValueError(f"Invalid voice mapping file version in {path}")
    if not isinstance(data.get("voices"), list):
        raise ValueError(f"Invalid voice mapping file {path}: missing voices array")
    return data["voices"], data.get("narrator") or ""

def apply_voice_mapping(
    entries: List[Dict],
    characters: List[Character],
    voice_map: Dict[str, str],
) -> Dict[str, str]:
    """
    Override voices with saved entries, matching canonical names case-insensitively.
    Characters missing from the saved mapping keep their current voice.
    """
    new_map = dict(voice_map)
    saved = {str(e.get("name", "")).lower(): e for e in entries if isinstance(e, dict)}

    for char in characters:
        entry = saved.get(char.canonical_name.lower())
        if entry and entry.get("voice"):
            new_map[char.canonical_name] = entry["voice"]
            for variation in char.variations:
                new_map[variation] = entry["voice"]

    return new_map
