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
from typing import List, Callable, Optional
import tiktoken
from config.constants import MAX_EXTRACT_BLOCK_TOKENS, MAX_ASSIGN_BLOCK_TOKENS
from utils.character_utils import TextBlock

_TOKENIZER = None
_TOKENIZER_FAILED = False

OPENING_QUOTES = {"“", "«"}  # “ «
CLOSING_QUOTES = {"”", "»"}  # ” »
SENTENCE_ENDINGS = {".", "!", "?", "…"}

ABBREVIATION_PATTERN = re.compile(r"\b(Mr|Mrs|Ms|Dr|Prof|Sr|Jr|St|Inc|Ltd|vs|etc)\.$", re.IGNORECASE)
PARAGRAPH_SEPARATOR = re.compile(r"\n\s*\n")


def get_tokenizer():
    """
    Get or initialize the global tokenizer.
    Uses cl100k_base encoding (GPT-4/GPT-3.5) as a good approximation for most LLMs.
    """
    global _TOKENIZER, _TOKENIZER_FAILED
    if _TOKENIZER is None and not _TOKENIZER_FAILED:
        try:
            _TOKENIZER = tiktoken.get_encoding("cl100k_base")
            print("✅ Initialized tiktoken (cl100k_base) for token counting")
        except Exception as e:
            _TOKENIZER_FAILED = True
            print(f"⚠️  Failed to initialize tokenizer, estimating tokens from length: {e}")
    return _TOKENIZER


def count_tokens(text: str) -> int:
    """
    Count tokens in text using tiktoken.
    Falls back to a chars/4 estimate when the encoding can't be loaded.
    """
    tokenizer = get_tokenizer()
    if tokenizer is None:
        return (len(text) + 3) // 4
    return len(tokenizer.encode(text))


def is_pronounceable(text: str) -> bool:
    return any(ch.isalnum() for ch in text)


def ends_with_closed_quotation(text: str) -> bool:
    """True if `text` ends with a quotation whose last sentence is finished, like `"Hello!"`."""
    text = text.rstrip()
    return len(text) >= 2 and text[-1] in ('"', "”", "»") and text[-2] in SENTENCE_ENDINGS


def split_paragraph_into_sentences(paragraph: str) -> List[str]:
    """
    Split one paragraph into sentences.

    Sentences end at . ! ? … (or ...) followed by whitespace or the end of the paragraph. Nothing is
    split inside an open quotation, and common abbreviations like "Mr." don't end a sentence.
    """
    text = re.sub(r"\s+", " ", paragraph).strip()
    sentences = []
    current = ""
    in_quotes = False
    i = 0

    while i < len(text):
        char = text[i]

        # A new quotation right after a finished one is the next sentence
        opens_quote = (char == '"' and not in_quotes) or char in OPENING_QUOTES
        if opens_quote and current.endswith(" ") and ends_with_closed_quotation(current):
            sentence = current.strip()
            if is_pronounceable(sentence):
                sentences.append(sentence)
            current = ""

        if char == '"':
            in_quotes = not in_quotes
        elif char in OPENING_QUOTES:
            in_quotes = True
        elif char in CLOSING_QUOTES:
            in_quotes = False

        if text.startswith("...", i):
            current += "..."
            i += 3
            char = "…"
        else:
            current += char
            i += 1

        if char not in SENTENCE_ENDINGS or in_quotes:
            continue

        # Closing quotes/brackets right after the punctuation belong to this sentence
        while i < len(text) and text[i] in ('"', "”", "»", "'", "’", ")", "]"):
            if text[i] == '"':
                # Outside quotes, a straight quote opens the next quotation
                break
            current += text[i]
            i += 1

        at_end = i >= len(text)
        before_space = not at_end and text[i].isspace()
        if (at_end or before_space) and not ABBREVIATION_PATTERN.search(current):
            sentence = current.strip()
            if sentence and is_pronounceable(sentence):
                sentences.append(sentence)
            current = ""

    remaining = current.strip()
    if remaining and is_pronounceable(remaining):
        sentences.append(remaining)

    return sentences


def split_into_sentences(text: str) -> List[str]:
    """Split text into sentences, treating blank lines as paragraph boundaries."""
    sentences = []
    for paragraph in PARAGRAPH_SEPARATOR.split(text):
        if paragraph.strip():
            sentences.extend(split_paragraph_into_sentences(paragraph))
    return sentences


def split_into_blocks(
    sentences: List[str],
    max_tokens: int,
    token_counter: Optional[Callable[[str], int]] = None,
) -> List[TextBlock]:
    """
    Group sentences into gap-free blocks of at most `max_tokens` each.

    A sentence that is larger than the budget on its own is kept whole in its own block.
    """
    token_counter = token_counter or count_tokens
    blocks = []
    current_block: List[str] = []
    current_tokens = 0
    start_index = 0

    for i, sentence in enumerate(sentences):
        tokens = token_counter(sentence)

        if current_block and current_tokens + tokens > max_tokens:
            blocks.append(TextBlock(sentences=current_block, sentence_start_index=start_index))
            current_block = []
            current_tokens = 0

        if not current_block:
            start_index = i

        current_block.append(sentence)
        current_tokens += tokens

        if tokens > max_tokens:
            # Oversized sentence: never split mid-sentence, give it a block of its own
            blocks.append(TextBlock(sentences=current_block, sentence_start_index=start_index))
            current_block = []
            current_tokens = 0

    if current_block:
        blocks.append(TextBlock(sentences=current_block, sentence_start_index=start_index))

    return blocks


def create_extract_blocks(text: str, max_tokens: int = MAX_EXTRACT_BLOCK_TOKENS, token_counter=None) -> List[TextBlock]:
    """Coarse blocks for character discovery."""
    return split_into_blocks(split_into_sentences(text), max_tokens, token_counter)


def create_assign_blocks(text: str, max_tokens: int = MAX_ASSIGN_BLOCK_TOKENS, token_counter=None) -> List[TextBlock]:
    """Fine blocks for speaker assignment."""
    return split_into_blocks(split_into_sentences(text), max_tokens, token_counter)
