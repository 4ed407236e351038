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

import re
import json
from typing import Annotated, List, Dict, Literal
from pydantic import BaseModel, Field, StrictStr, StringConstraints, ValidationError
from utils.character_utils import (
    Character,
    TextBlock,
    CodeMapping,
    MergeDecision,
    ValidationResult,
    GENDERS,
)

ASSIGNMENT_LINE_PATTERN = re.compile(r"^(\d+):([A-Za-z0-9]+)$")

NonBlankStr = Annotated[StrictStr, StringConstraints(strip_whitespace=True, min_length=1)]


# Pydantic models for the extraction reply

class ExtractedCharacter(BaseModel):
    canonicalName: NonBlankStr
    variations: List[StrictStr] = Field(min_length=1)
    gender: Literal["male", "female", "unknown"]


class ExtractResponse(BaseModel):
    characters: List[ExtractedCharacter]


def _format_pydantic_errors(error: ValidationError) -> List[str]:
    messages = []
    for err in error.errors():
        loc = err["loc"]
        if loc == ("characters",):
            messages.append('Response must have a "characters" array')
        elif len(loc) >= 3 and loc[0] == "characters":
            field = ".".join(str(part) for part in loc[2:])
            if loc[2] == "gender":
                messages.append(f'Character {loc[1]}: gender must be "male", "female", or "unknown"')
            else:
                messages.append(f"Character {loc[1]}: {field}: {err['msg']}")
        else:
            messages.append(f"{'.'.join(str(part) for part in loc) or 'response'}: {err['msg']}")
    return messages


def validate_extract_response(response: str) -> ValidationResult:
    """The reply must be {"characters": [{canonicalName, variations, gender}, ...]}."""
    try:
        parsed = json.loads(response)
    except json.JSONDecodeError as e:
        return ValidationResult(valid=False, errors=[f"Invalid JSON: {e}"])

    if not isinstance(parsed, dict):
        return ValidationResult(valid=False, errors=["Response must be a JSON object"])

    try:
        ExtractResponse.model_validate(parsed)
    except ValidationError as e:
        return ValidationResult(valid=False, errors=_format_pydantic_errors(e))

    return ValidationResult(valid=True)


def parse_extract_response(response: str) -> List[Character]:
    extract_result = ExtractResponse.model_validate(json.loads(response))
    return [
        Character(canonical_name=c.canonicalName, variations=c.variations, gender=c.gender)
        for c in extract_result.characters
    ]


def _is_index(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_merge_response(response: str, characters: List[Character]) -> ValidationResult:
    """
    The reply must account for every input index exactly once, as a keep, an absorbed entry, or
    unchanged. A merge joining two different known genders is rejected.
    """
    errors = []
    count = len(characters)

    try:
        parsed = json.loads(response)
    except json.JSONDecodeError as e:
        return ValidationResult(valid=False, errors=[f"Invalid JSON: {e}"])

    if not isinstance(parsed, dict):
        return ValidationResult(valid=False, errors=["Response must be a JSON object"])

    merges = parsed.get("merges")
    unchanged = parsed.get("unchanged")
    if not isinstance(merges, list):
        errors.append('Response must have a "merges" array')
    if not isinstance(unchanged, list):
        errors.append('Response must have an "unchanged" array')
    if errors:
        return ValidationResult(valid=False, errors=errors)

    seen: Dict[int, str] = {}

    def claim(index, where):
        if not _is_index(index):
            errors.append(f'{where}: index "{index}" is not an integer')
            return False
        if index < 0 or index >= count:
            errors.append(f"{where}: index {index} out of range [0-{count - 1}]")
            return False
        if index in seen:
            errors.append(f"{where}: index {index} already used in {seen[index]}")
            return False
        seen[index] = where
        return True

    for i, merge in enumerate(merges):
        where = f"Merge {i}"
        if not isinstance(merge, dict):
            errors.append(f'{where}: must be an object with "keep" and "absorb"')
            continue

        absorb = merge.get("absorb", [])
        if not isinstance(absorb, list):
            errors.append(f'{where}: "absorb" must be an array')
            continue
        if "gender" in merge and merge["gender"] is not None and merge["gender"] not in GENDERS:
            errors.append(f'{where}: gender must be "male", "female", or "unknown"')
        if "variations" in merge and not isinstance(merge["variations"], list):
            errors.append(f'{where}: "variations" must be an array')

        group = []
        if claim(merge.get("keep"), where):
            group.append(merge["keep"])
        for index in absorb:
            if claim(index, where):
                group.append(index)

        known_genders = {characters[idx].gender for idx in group if characters[idx].gender != "unknown"}
        if len(known_genders) > 1:
            names = ", ".join(f'"{characters[idx].canonical_name}" ({characters[idx].gender})' for idx in group)
            errors.append(f"{where}: cannot merge characters with conflicting genders: {names}")

    for index in unchanged:
        claim(index, "unchanged")

    missing = [i for i in range(count) if i not in seen]
    if missing:
        errors.append(f"Missing indices (must appear in a merge or in unchanged): {missing}")

    return ValidationResult(valid=len(errors) == 0, errors=errors)


def parse_merge_response(response: str) -> List[MergeDecision]:
    """Merge decisions from a validated reply (0-based indices)."""
    parsed = json.loads(response)
    decisions = []
    for merge in parsed.get("merges", []):
        decisions.append(MergeDecision(
            keep=merge["keep"],
            absorb=merge.get("absorb", []),
            variations=[v for v in merge.get("variations") or [] if isinstance(v, str)],
            gender=merge.get("gender") or None,
        ))
    return decisions


def _assignment_lines(response: str) -> List[str]:
    return [line.strip() for line in response.strip().splitlines() if line.strip()]


def validate_assign_response(response: str, block: TextBlock, mapping: CodeMapping) -> ValidationResult:
    """
    Every line must be `index:code`, with the index inside the block and a known code.
    An empty reply is valid: the whole block is narration.
    """
    errors = []
    first_index = block.sentence_start_index
    last_index = block.sentence_end_index

    for line in _assignment_lines(response):
        match = ASSIGNMENT_LINE_PATTERN.match(line)
        if not match:
            errors.append(f'Invalid format: "{line}". Expected: index:code')
            continue

        index = int(match.group(1))
        code = match.group(2)

        if index < first_index or index > last_index:
            errors.append(f"Index {index} out of range [{first_index}-{last_index}]")
        if code not in mapping.code_to_name:
            errors.append(f'Unknown code "{code}"')

    return ValidationResult(valid=len(errors) == 0, errors=errors)


def parse_assign_response(response: str, mapping: CodeMapping) -> Dict[int, str]:
    """Sparse map of global sentence index -> speaker name."""
    speaker_map = {}
    for line in _assignment_lines(response):
        match = ASSIGNMENT_LINE_PATTERN.match(line)
        if not match:
            continue
        name = mapping.code_to_name.get(match.group(2))
        if name:
            speaker_map[int(match.group(1))] = name
    return speaker_map
