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

from typing import List, Dict, Literal, Optional, Iterable
from pydantic import BaseModel, ConfigDict, Field, model_validator

Gender = Literal["male", "female", "unknown"]
GENDERS = ("male", "female", "unknown")

NARRATOR = "narrator"

# Placeholders for speakers the text never names, one per gender bucket
MALE_UNNAMED = "MALE_UNNAMED"
FEMALE_UNNAMED = "FEMALE_UNNAMED"
UNKNOWN_UNNAMED = "UNKNOWN_UNNAMED"
UNNAMED_SPEAKERS = (MALE_UNNAMED, FEMALE_UNNAMED, UNKNOWN_UNNAMED)
UNNAMED_SPEAKER_GENDERS: Dict[str, str] = {
    MALE_UNNAMED: "male",
    FEMALE_UNNAMED: "female",
    UNKNOWN_UNNAMED: "unknown",
}

# A-Z, 0-9, a-z = 62 single-symbol codes
CODES = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789abcdefghijklmnopqrstuvwxyz"


class Character(BaseModel):
    """One speaking entity with every name it goes by."""
    model_config = ConfigDict(populate_by_name=True)

    canonical_name: str = Field(alias="canonicalName", min_length=1)
    variations: List[str] = Field(default_factory=list)
    gender: Gender = "unknown"

    @model_validator(mode="after")
    def _normalize_variations(self):
        self.canonical_name = self.canonical_name.strip()
        if not self.canonical_name:
            raise ValueError("canonicalName must not be blank")
        seen = []
        for name in [self.canonical_name, *self.variations]:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        self.variations = seen
        return self

    def to_json(self) -> Dict:
        return self.model_dump(by_alias=True)


class TextBlock(BaseModel):
    """Contiguous slice of sentences; global index = sentence_start_index + offset."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sentences: List[str]
    sentence_start_index: int = Field(alias="sentenceStartIndex", ge=0)

    @property
    def sentence_end_index(self) -> int:
        return self.sentence_start_index + len(self.sentences) - 1


class SpeakerAssignment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sentence_index: int = Field(alias="sentenceIndex")
    text: str
    speaker: str
    voice_id: str = Field(alias="voiceId")


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class MergeDecision(BaseModel):
    """Collapse the characters at `absorb` into the one at `keep` (0-based indices)."""
    keep: int
    absorb: List[int] = Field(default_factory=list)
    variations: List[str] = Field(default_factory=list)
    gender: Optional[Gender] = None


class CodeMapping(BaseModel):
    name_to_code: Dict[str, str] = Field(default_factory=dict)
    code_to_name: Dict[str, str] = Field(default_factory=dict)


def _code_for_index(index: int) -> str:
    return CODES[index] if index < len(CODES) else f"X{index}"


def build_code_mapping_from_names(names: Iterable[str]) -> CodeMapping:
    """
    Assign short codes to names in the given order, then to the three unnamed-speaker placeholders.

    Indices beyond the 62-symbol alphabet get an `X<index>` code. Repeated names keep their first code
    so the mapping stays injective.
    """
    mapping = CodeMapping()
    index = 0
    for name in [*names, *UNNAMED_SPEAKERS]:
        if name in mapping.name_to_code:
            continue
        code = _code_for_index(index)
        mapping.name_to_code[name] = code
        mapping.code_to_name[code] = name
        index += 1
    return mapping


def build_code_mapping(characters: List[Character]) -> CodeMapping:
    return build_code_mapping_from_names(c.canonical_name for c in characters)


def _first_known_gender(characters: Iterable[Character]) -> str:
    for c in characters:
        if c.gender != "unknown":
            return c.gender
    return "unknown"


def merge_characters(characters: List[Character]) -> List[Character]:
    """
    Merge characters whose canonical names match case-insensitively.

    Variations are unioned and an unknown gender is replaced by a known one. Characters with
    different canonical names are never compared here.
    """
    merged: Dict[str, Character] = {}

    for char in characters:
        key = char.canonical_name.lower()
        existing = merged.get(key)
        if existing is None:
            merged[key] = char.model_copy(deep=True)
            continue

        existing.variations = existing.variations + [v for v in char.variations if v not in existing.variations]
        if existing.gender == "unknown" and char.gender != "unknown":
            existing.gender = char.gender

    return list(merged.values())


def normalize_canonical_names(characters: List[Character]) -> List[Character]:
    """Use each character's longest variation as its canonical name."""
    normalized = []
    for c in characters:
        longest = c.canonical_name
        for v in c.variations:
            if len(v) > len(longest):
                longest = v
        normalized.append(Character(canonical_name=longest, variations=c.variations, gender=c.gender))
    return normalized


def apply_merge_decisions(
    characters: List[Character],
    decisions: List[MergeDecision],
) -> List[Character]:
    """
    Apply validated merge decisions to a character list.

    Every index not named by a decision is carried over unchanged. The result keeps the input order
    of each surviving (kept or unchanged) character.
    """
    consumed = set()
    survivors: Dict[int, Character] = {}

    for decision in decisions:
        keep = characters[decision.keep]
        absorbed = [characters[i] for i in decision.absorb]
        group = [keep, *absorbed]

        variations = []
        for name in [v for c in group for v in c.variations] + list(decision.variations):
            if isinstance(name, str) and name.strip() and name.strip() not in variations:
                variations.append(name.strip())

        # A hint never overrides a gender the group already knows
        known_genders = {c.gender for c in group if c.gender != "unknown"}
        if decision.gender and decision.gender != "unknown" and (not known_genders or decision.gender in known_genders):
            gender = decision.gender
        else:
            gender = _first_known_gender(group)

        survivors[decision.keep] = Character(
            canonical_name=keep.canonical_name,
            variations=variations,
            gender=gender,
        )
        consumed.add(decision.keep)
        consumed.update(decision.absorb)

    for i, char in enumerate(characters):
        if i not in consumed:
            survivors[i] = char.model_copy(deep=True)

    return [survivors[i] for i in sorted(survivors)]


def count_speaking_frequency(assignments: List[SpeakerAssignment]) -> Dict[str, int]:
    """Number of sentences spoken by each non-narrator speaker."""
    frequency: Dict[str, int] = {}
    for a in assignments:
        if a.speaker != NARRATOR:
            frequency[a.speaker] = frequency.get(a.speaker, 0) + 1
    return frequency
