"""Tests for the reply validators and parsers of the three passes."""

import json

from utils.character_utils import Character, TextBlock, build_code_mapping
from utils.response_validators import (
    parse_assign_response,
    parse_extract_response,
    parse_merge_response,
    validate_assign_response,
    validate_extract_response,
    validate_merge_response,
)


def test_extract_response_valid():
    reply = json.dumps({"characters": [{"canonicalName": "John", "variations": ["John", "Johnny"], "gender": "male"}]})
    assert validate_extract_response(reply).valid
    assert parse_extract_response(reply) == [
        Character(canonical_name="John", variations=["John", "Johnny"], gender="male"),
    ]


def test_extract_response_empty_list_is_valid():
    assert validate_extract_response('{"characters": []}').valid
    assert parse_extract_response('{"characters": []}') == []


def test_extract_response_invalid_json():
    result = validate_extract_response("not json")
    assert not result.valid
    assert result.errors[0].startswith("Invalid JSON")


def test_extract_response_missing_array_and_bad_fields():
    assert validate_extract_response('{"people": []}').errors == ['Response must have a "characters" array']

    reply = json.dumps({"characters": [
        {"canonicalName": "John", "variations": ["John"], "gender": "man"},
        {"canonicalName": "  ", "variations": ["x"], "gender": "male"},
        {"canonicalName": "Mary", "variations": [], "gender": "female"},
    ]})
    result = validate_extract_response(reply)
    assert not result.valid
    assert 'Character 0: gender must be "male", "female", or "unknown"' in result.errors
    assert any(e.startswith("Character 1: canonicalName") for e in result.errors)
    assert any(e.startswith("Character 2: variations") for e in result.errors)


def _characters(*specs):
    return [Character(canonical_name=name, gender=gender) for name, gender in specs]


def test_merge_response_valid_and_parsed():
    characters = _characters(("Protagonist", "unknown"), ("Elena", "female"), ("Guard", "unknown"))
    reply = '{"merges": [{"keep": 1, "absorb": [0], "variations": ["Elena", "Protagonist"], "gender": "female"}], "unchanged": [2]}'

    assert validate_merge_response(reply, characters).valid
    decisions = parse_merge_response(reply)
    assert len(decisions) == 1
    assert decisions[0].keep == 1
    assert decisions[0].absorb == [0]
    assert decisions[0].gender == "female"


def test_merge_response_missing_and_duplicate_indices():
    characters = _characters(("A", "male"), ("B", "male"), ("C", "male"))

    missing = validate_merge_response('{"merges": [], "unchanged": [0, 1]}', characters)
    assert not missing.valid
    assert any("Missing indices" in e and "[2]" in e for e in missing.errors)

    duplicate = validate_merge_response('{"merges": [{"keep": 0, "absorb": [1]}], "unchanged": [1, 2]}', characters)
    assert not duplicate.valid
    assert any("already used" in e for e in duplicate.errors)


def test_merge_response_rejects_out_of_range_and_non_integers():
    characters = _characters(("A", "male"), ("B", "male"))
    result = validate_merge_response('{"merges": [{"keep": 0, "absorb": [5]}], "unchanged": [true]}', characters)
    assert not result.valid
    assert any("out of range" in e for e in result.errors)
    assert any("not an integer" in e for e in result.errors)


def test_merge_response_rejects_conflicting_genders():
    characters = _characters(("John", "male"), ("Mary", "female"))
    result = validate_merge_response('{"merges": [{"keep": 0, "absorb": [1]}], "unchanged": []}', characters)
    assert not result.valid
    assert any("conflicting genders" in e for e in result.errors)


def test_merge_response_requires_both_arrays():
    result = validate_merge_response('{"merges": []}', _characters(("A", "male")))
    assert result.errors == ['Response must have an "unchanged" array']


def test_assign_response_valid(john_and_mary, greeting_block):
    mapping = build_code_mapping(john_and_mary)
    assert validate_assign_response("1:A\n2:B", greeting_block, mapping).valid
    assert parse_assign_response("1:A\n2:B", mapping) == {1: "John", 2: "Mary"}


def test_assign_response_empty_is_valid(john_and_mary, greeting_block):
    mapping = build_code_mapping(john_and_mary)
    assert validate_assign_response("", greeting_block, mapping).valid
    assert parse_assign_response("", mapping) == {}


def test_assign_response_errors(john_and_mary):
    mapping = build_code_mapping(john_and_mary)
    block = TextBlock(sentences=["a.", "b.", "c."], sentence_start_index=10)

    result = validate_assign_response("10:A\n13:B\n11:Z\n12 : A\nJohn said it", block, mapping)
    assert not result.valid
    assert "Index 13 out of range [10-12]" in result.errors
    assert 'Unknown code "Z"' in result.errors
    assert 'Invalid format: "12 : A". Expected: index:code' in result.errors
    assert 'Invalid format: "John said it". Expected: index:code' in result.errors


def test_assign_response_uses_global_indices(john_and_mary):
    mapping = build_code_mapping(john_and_mary)
    block = TextBlock(sentences=["\"Hi.\""], sentence_start_index=40)
    assert not validate_assign_response("0:A", block, mapping).valid
    assert validate_assign_response("40:A", block, mapping).valid
