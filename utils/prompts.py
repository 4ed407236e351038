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

import json
from string import Template
from typing import List
from pydantic import BaseModel
from utils.character_utils import Character, TextBlock, CodeMapping, UNNAMED_SPEAKERS, UNNAMED_SPEAKER_GENDERS


class LLMPrompt(BaseModel):
    system: str
    user: str


EXTRACT_SYSTEM_PROMPT = """You are an expert literary analyst. Your task is to list EVERY entity that SPEAKS or COMMUNICATES in the text excerpt, so that each one can be given its own voice in an audiobook.

WHAT COUNTS AS COMMUNICATION:
- Quoted speech: "Hello", “Hello”, «Bonjour», „Hallo", 'Hi'
- Em-dash dialogue: — What happened?
- Bracketed game/interface messages: [Level Up!], [Quest Complete] (always spoken by "System" unless attributed to someone else)
- Telepathy in angle brackets: <Can you hear me?>
- First-person narration that speaks: "Stop!" I shouted.
- Non-human speakers: monsters, AI, spirits, talking items, animals that talk

HOW TO FIND THE SPEAKER OF A LINE (in this order):
1. Explicit speech tag in the same sentence: "Run!" the guard shouted. -> guard
2. Action beat right before or after the line: Sarah frowned. "This is bad." -> Sarah
3. First-person narration: I turned. "What do you want?" -> the narrator (see PROTAGONIST below)
4. Conversation flow: in a two-person exchange speakers alternate. Use this only when 1-3 fail.

THE VOCATIVE TRAP:
A name INSIDE the quotation marks is the person being addressed, NOT the speaker.
"John, come here!" Mary called. -> speaker is Mary, John is only addressed.

SAME PERSON, DIFFERENT NAMES:
If one entity is called by several names in the excerpt ("The Dark Lord" and "Azaroth", "Jack" and "Jackson Miller", "Mom" and "Mrs. Johnson"), output ONE entry and put every name in "variations".

CHOOSING canonicalName (highest priority first):
1. Full proper name ("Elizabeth Blackwood")
2. Partial proper name ("Elizabeth")
3. Title with name ("Queen Elizabeth")
4. Title alone ("The Queen")
5. Role or description ("The Guard", "The Old Man")
6. Special entities ("System", "Protagonist")

PROTAGONIST:
- If a first-person narrator speaks and their name is revealed, use the name and add "Protagonist" to variations.
- If the name is never revealed, use canonicalName "Protagonist".

SYSTEM:
- All game interfaces, notifications and status screens are ONE character named "System" with gender "female", unless the text clearly shows several distinct systems.

GENDER:
- "male" or "female" only with evidence: pronouns (he/she), titles (Mr./Mrs., Lord/Lady, King/Queen), relationships (son/daughter), descriptions (the man/the woman).
- Otherwise "unknown". Never guess.

NAMES:
- Never translate names. Keep them exactly as written, in their original script.

DO NOT INCLUDE:
- Characters who are only mentioned and never speak.
- Reported speech without quotation ("He said that he would come.").

OUTPUT FORMAT:
Output ONLY a JSON object, no markdown, no commentary:
{"characters": [{"canonicalName": "Elizabeth Blackwood", "variations": ["Elizabeth Blackwood", "Elizabeth", "The Queen"], "gender": "female"}]}

- "canonicalName": non-empty string
- "variations": non-empty array of strings, including canonicalName
- "gender": exactly "male", "female" or "unknown"
If nobody speaks, output {"characters": []}"""

EXTRACT_USER_TEMPLATE = Template("""Extract every speaking character from this text excerpt:

<text_excerpt>
$text
</text_excerpt>""")


MERGE_SYSTEM_PROMPT = """You are an identity resolution engine for fiction. You will receive a numbered list of characters that were extracted from DIFFERENT parts of the same book. The same person may appear several times under different names. Merge entries that are the SAME entity and keep genuinely different characters apart.

MERGE WHEN:
1. PROTAGONIST LINKING: "Protagonist" (or "Narrator", "Main Character") and a named character who narrates in first person, with the same gender or with one of the genders unknown. Keep the proper name, absorb "Protagonist".
2. SYSTEM UNIFICATION: "System", "Interface", "Notification", "Blue Box", "Status Screen" and similar game-interface entries become ONE entry kept as "System" with gender "female". Keep systems separate only if the list clearly names distinct systems ("Main System" vs "Dungeon System").
3. NAME HIERARCHY: entries whose variations overlap or whose names are clearly the same person ("Elizabeth" and "Elizabeth Smith", "Jack" and "Jackson Miller", "The Dark Lord" and "Azaroth" when both share the role). Keep the most specific name:
   full proper name > partial name > title with name > title alone > generic placeholder.

NEVER MERGE:
- Entries whose genders are both known and different.
- Different roles that only share a word ("Captain Reynolds" and "Captain Hook", "the King" and "the Prince").
- Several unnamed characters that share a label ("Guard" and "Guard Captain", two different "Soldier" entries).
- Family members sharing a surname ("Mr. Smith" and "Mrs. Smith").
When in doubt, DO NOT merge.

OUTPUT FORMAT:
Output ONLY a JSON object, no markdown, no commentary:
{"merges": [{"keep": 1, "absorb": [0], "variations": ["Elena", "Protagonist"], "gender": "female"}], "unchanged": [2]}

- Indices are the numbers of the input list (0-based).
- "keep" is the entry whose canonicalName survives; "absorb" lists the entries folded into it.
- "variations" (optional) is the combined list of names; "gender" (optional) is the resulting gender.
- "unchanged" lists every entry that is not part of any merge.
- EVERY input index must appear EXACTLY ONCE: as a keep, inside an absorb list, or in unchanged.
If nothing should be merged: {"merges": [], "unchanged": [0, 1, 2, ...]}"""

MERGE_USER_TEMPLATE = Template("""<character_list>
$characters
</character_list>

Merge the duplicate entries in the list above. Account for all $count entries (indices 0 to $last_index).""")


ASSIGN_SYSTEM_TEMPLATE = Template("""You are a dialogue attribution engine for audiobook narration. For each numbered sentence you decide who utters it. Sentences that are plain narration belong to the narrator and are simply left out of your answer.

<speaker_list>
$character_lines
$unnamed_lines
</speaker_list>

Use the unnamed codes only for speakers that have no entry above (an anonymous man, woman, or voice).

HOW TO DECIDE (in this order, stop at the first that applies):
1. [Square bracket] messages are spoken by System if it is in the list.
2. Explicit speech tag in the same sentence: "Run!" John shouted. -> John
3. Action beat: the character acting right before or after the line. Sarah frowned. "Bad news." -> Sarah
4. First-person narration: "Stop!" I yelled. -> the protagonist
5. Alternation: in a two-person exchange with no other clue, speakers take turns. Use this only as a last resort.

THE VOCATIVE TRAP:
A name inside the quotation marks is the listener, never the speaker of that line.
"Mary, wait!" -> NOT Mary.

ALIASES:
Match titles, nicknames and partial names to the speaker list using the aliases given there.

OUTPUT FORMAT:
- One line per sentence that contains speech: INDEX:CODE
- INDEX is the number in square brackets before the sentence, CODE is a code from the speaker list.
- No spaces, no names, no explanations, no markdown.
- Omit narration sentences. If no sentence contains speech, output nothing.

Example:
12:A
13:B
15:$example_unnamed_code""")

ASSIGN_USER_TEMPLATE = Template("""<sentences>
$sentences
</sentences>

Output the INDEX:CODE lines for the sentences above (indices $first_index to $last_index).""")


def build_extract_prompt(block_text: str) -> LLMPrompt:
    return LLMPrompt(
        system=EXTRACT_SYSTEM_PROMPT,
        user=EXTRACT_USER_TEMPLATE.substitute(text=block_text),
    )


def format_character_list_for_merge(characters: List[Character]) -> str:
    return "\n".join(
        f"{i}. canonicalName: {json.dumps(c.canonical_name, ensure_ascii=False)}, "
        f"variations: {json.dumps(c.variations, ensure_ascii=False)}, gender: {c.gender}"
        for i, c in enumerate(characters)
    )


def build_merge_prompt(characters: List[Character]) -> LLMPrompt:
    return LLMPrompt(
        system=MERGE_SYSTEM_PROMPT,
        user=MERGE_USER_TEMPLATE.substitute(
            characters=format_character_list_for_merge(characters),
            count=len(characters),
            last_index=len(characters) - 1,
        ),
    )


def format_character_roster(characters: List[Character], mapping: CodeMapping) -> str:
    """One line per character: code, canonical name, gender hint and aliases."""
    lines = []
    for c in characters:
        code = mapping.name_to_code[c.canonical_name]
        gender_info = f" [{c.gender}]" if c.gender != "unknown" else ""
        aliases = [v for v in c.variations if v != c.canonical_name]
        alias_info = f" (aliases: {', '.join(aliases)})" if aliases else ""
        lines.append(f"- {code} = {c.canonical_name}{gender_info}{alias_info}")
    return "\n".join(lines)


def format_unnamed_roster(mapping: CodeMapping) -> str:
    return "\n".join(
        f"- {mapping.name_to_code[name]} = unnamed {UNNAMED_SPEAKER_GENDERS[name]} speaker"
        if UNNAMED_SPEAKER_GENDERS[name] != "unknown"
        else f"- {mapping.name_to_code[name]} = unnamed speaker of unknown gender"
        for name in UNNAMED_SPEAKERS
    )


def format_numbered_sentences(block: TextBlock) -> str:
    return "\n".join(
        f"[{block.sentence_start_index + offset}] {sentence}"
        for offset, sentence in enumerate(block.sentences)
    )


def build_assign_prompt(characters: List[Character], mapping: CodeMapping, block: TextBlock) -> LLMPrompt:
    system = ASSIGN_SYSTEM_TEMPLATE.substitute(
        character_lines=format_character_roster(characters, mapping),
        unnamed_lines=format_unnamed_roster(mapping),
        example_unnamed_code=mapping.name_to_code[UNNAMED_SPEAKERS[0]],
    )
    user = ASSIGN_USER_TEMPLATE.substitute(
        sentences=format_numbered_sentences(block),
        first_index=block.sentence_start_index,
        last_index=block.sentence_end_index,
    )
    return LLMPrompt(system=system, user=user)
