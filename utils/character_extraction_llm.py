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
import re
import asyncio
from typing import List, Dict, Optional, Callable
from tqdm import tqdm
from config.constants import (
    NARRATOR_VOICE,
    MAX_CONCURRENT_LLM_REQUESTS,
    MAX_EXTRACT_BLOCK_TOKENS,
    MAX_ASSIGN_BLOCK_TOKENS,
    SPEAKER_ATTRIBUTED_BOOK_FILE,
    CHARACTERS_FILE,
    VOICE_MAPPING_FILE,
)
from utils.character_utils import (
    NARRATOR,
    Character,
    TextBlock,
    CodeMapping,
    SpeakerAssignment,
    build_code_mapping,
    merge_characters,
    normalize_canonical_names,
    apply_merge_decisions,
    count_speaking_frequency,
)
from utils.file_utils import write_jsons_to_jsonl_file, empty_file, write_json_to_file
from utils.llm_utils import LLMApiClient, CancellationToken
from utils.prompts import build_extract_prompt, build_merge_prompt, build_assign_prompt
from utils.response_validators import (
    validate_extract_response,
    parse_extract_response,
    validate_merge_response,
    parse_merge_response,
    validate_assign_response,
    parse_assign_response,
)
from utils.text_block_splitter import create_extract_blocks, create_assign_blocks
from utils.voice_mapping import (
    build_character_voice_map,
    load_voice_mapping,
    apply_voice_mapping,
    export_voice_mapping,
    sort_characters_by_frequency,
)

# Quotes, guillemets, em dash and single quotes (straight and curly)
SPEECH_SYMBOLS_PATTERN = re.compile("[\"«»—“”„‹›'‘’]")

ProgressCallback = Callable[..., None]


def has_speech(sentence: str) -> bool:
    return bool(SPEECH_SYMBOLS_PATTERN.search(sentence))


class LLMVoiceService:
    """
    Three-pass speaker attribution over a text-completion collaborator.

    1. Extract: discover speaking characters block by block (sequential).
    2. Merge: fold together entries from different blocks that are the same person.
    3. Assign: label every sentence with its speaker (concurrent, batched).

    One CancellationToken is shared by every call of a run; `cancel()` stops whichever pass is active
    with OperationCancelledError.
    """

    def __init__(
        self,
        completion_client,
        narrator_voice: str = NARRATOR_VOICE,
        max_concurrent_requests: int = MAX_CONCURRENT_LLM_REQUESTS,
        retry_delays: Optional[List[float]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.api_client = LLMApiClient(completion_client, retry_delays=retry_delays)
        self.narrator_voice = narrator_voice
        self.max_concurrent_requests = max(1, max_concurrent_requests)
        self.cancel_token = cancel_token or CancellationToken()

    def cancel(self):
        self.cancel_token.cancel()

    async def extract_characters(self, blocks: List[TextBlock], on_progress: Optional[ProgressCallback] = None) -> List[Character]:
        """
        Extract characters from coarse blocks, one block at a time, then merge duplicates.

        Entries with the same canonical name are merged locally. If more than one block was read and
        more than one character survives, the LLM merge pass resolves the remaining duplicates.
        """
        print(f"\n🔍 Extract: starting ({len(blocks)} blocks)")
        self.api_client.reset_logging()
        all_characters: List[Character] = []

        for i, block in enumerate(blocks):
            self.cancel_token.raise_if_cancelled()
            if on_progress:
                on_progress(i + 1, len(blocks))

            block_characters = await self._extract_block(block)
            all_characters = all_characters + block_characters
            print(f"✨ Extract: block {i + 1}/{len(blocks)} found {len(block_characters)} characters")

        merged = merge_characters(all_characters)
        print(f"📊 Extract: {len(all_characters)} raw entries, {len(merged)} after name merge")

        return await self.merge_characters(merged, block_count=len(blocks), on_progress=on_progress)

    async def _extract_block(self, block: TextBlock) -> List[Character]:
        response = await self.api_client.call_with_retry(
            build_extract_prompt("\n".join(block.sentences)),
            validate_extract_response,
            pass_type="extract",
            cancel_token=self.cancel_token,
        )
        return parse_extract_response(response)

    async def merge_characters(
        self,
        characters: List[Character],
        block_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Character]:
        """LLM deduplication across blocks. A single block or a single character needs no merge."""
        if block_count <= 1 or len(characters) <= 1:
            return characters

        # Longest variation becomes the canonical name; entries that now share a name are merged again
        normalized = merge_characters(normalize_canonical_names(characters))
        if len(normalized) <= 1:
            return normalized
        if on_progress:
            on_progress(block_count, block_count, f"Merging {len(normalized)} characters...")

        merged = await self.merge_characters_with_llm(normalized, on_progress)

        if on_progress:
            on_progress(block_count, block_count, f"Merged to {len(merged)} characters")
        return merged

    async def merge_characters_with_llm(
        self,
        characters: List[Character],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Character]:
        print(f"🔀 Merge: starting character deduplication ({len(characters)} characters)")
        self.cancel_token.raise_if_cancelled()

        def report_retry(attempt, delay, errors):
            if on_progress:
                reason = f" ({len(errors)} errors): {errors[-1]}" if errors else ""
                on_progress(0, 0, f"Merge validation failed{reason}, retry {attempt} in {round(delay)}s...")

        response = await self.api_client.call_with_retry(
            build_merge_prompt(characters),
            lambda result: validate_merge_response(result, characters),
            pass_type="merge",
            cancel_token=self.cancel_token,
            on_retry=report_retry,
        )

        decisions = parse_merge_response(response)
        for decision in decisions:
            if decision.absorb:
                absorbed = ", ".join(characters[i].canonical_name for i in decision.absorb)
                print(f"🔀 MERGE: '{absorbed}' → '{characters[decision.keep].canonical_name}'")
        return apply_merge_decisions(characters, decisions)

    async def assign_speakers(
        self,
        blocks: List[TextBlock],
        character_voice_map: Dict[str, str],
        characters: List[Character],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[SpeakerAssignment]:
        """
        Label every sentence of every block with its speaker.

        Blocks are sent in batches of at most `max_concurrent_requests` concurrent requests; batches
        run one after another. The result is sorted by sentence index.
        """
        print(f"\n🎯 Assign: starting ({len(blocks)} blocks)")
        mapping = build_code_mapping(characters)
        results: List[SpeakerAssignment] = []
        completed = 0

        progress_bar = tqdm(total=len(blocks), unit="block", desc="Speaker Assignment Progress")
        try:
            for batch_start in range(0, len(blocks), self.max_concurrent_requests):
                self.cancel_token.raise_if_cancelled()

                batch = blocks[batch_start:batch_start + self.max_concurrent_requests]
                tasks = [
                    asyncio.ensure_future(self._process_assign_block(block, character_voice_map, characters, mapping))
                    for block in batch
                ]
                try:
                    batch_results = await asyncio.gather(*tasks)
                except BaseException:
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                    raise

                for block_assignments in batch_results:
                    results.extend(block_assignments)
                    completed += 1
                    progress_bar.update(1)
                    if on_progress:
                        on_progress(completed, len(blocks))
        finally:
            progress_bar.close()

        results.sort(key=lambda a: a.sentence_index)
        return results

    def voice_for(self, speaker: str, character_voice_map: Dict[str, str]) -> str:
        if speaker == NARRATOR:
            return self.narrator_voice
        return character_voice_map.get(speaker) or self.narrator_voice

    async def _process_assign_block(
        self,
        block: TextBlock,
        character_voice_map: Dict[str, str],
        characters: List[Character],
        mapping: CodeMapping,
    ) -> List[SpeakerAssignment]:
        speaker_map: Dict[int, str] = {}

        # Blocks without a single speech symbol are pure narration, no need to ask
        if any(has_speech(sentence) for sentence in block.sentences):
            response = await self.api_client.call_with_retry(
                build_assign_prompt(characters, mapping, block),
                lambda result: validate_assign_response(result, block, mapping),
                pass_type="assign",
                cancel_token=self.cancel_token,
            )
            speaker_map = parse_assign_response(response, mapping)

        assignments = []
        for offset, text in enumerate(block.sentences):
            sentence_index = block.sentence_start_index + offset
            speaker = speaker_map.get(sentence_index, NARRATOR)
            assignments.append(SpeakerAssignment(
                sentence_index=sentence_index,
                text=text,
                speaker=speaker,
                voice_id=self.voice_for(speaker, character_voice_map),
            ))
        return assignments

    async def identify_characters(
        self,
        text: str,
        on_progress: Optional[ProgressCallback] = None,
        max_block_tokens: int = MAX_EXTRACT_BLOCK_TOKENS,
    ) -> List[Character]:
        """Segment `text` into coarse blocks and extract its characters."""
        self.cancel_token.reset()
        if not text or not text.strip():
            raise ValueError("Input text is empty")
        blocks = create_extract_blocks(text, max_block_tokens)
        if not blocks:
            raise ValueError("Input text contains no sentences")
        return await self.extract_characters(blocks, on_progress)

    async def attribute_speakers(
        self,
        text: str,
        characters: List[Character],
        character_voice_map: Dict[str, str],
        on_progress: Optional[ProgressCallback] = None,
        max_block_tokens: int = MAX_ASSIGN_BLOCK_TOKENS,
    ) -> List[SpeakerAssignment]:
        """Segment `text` into fine blocks and label each of its sentences. One assignment per sentence."""
        self.cancel_token.reset()
        if not text or not text.strip():
            raise ValueError("Input text is empty")
        blocks = create_assign_blocks(text, max_block_tokens)
        if not blocks:
            raise ValueError("Input text contains no sentences")
        return await self.assign_speakers(blocks, character_voice_map, characters, on_progress)


async def _drain_progress(queue: asyncio.Queue, task: asyncio.Future):
    """Yield progress messages from `queue` until `task` is finished and the queue is empty."""
    while not (task.done() and queue.empty()):
        try:
            yield await asyncio.wait_for(queue.get(), timeout=0.2)
        except asyncio.TimeoutError:
            continue


async def llm_identify_characters_and_output_to_jsonl(
    text: str,
    service: LLMVoiceService,
    character_voice_map: Optional[Dict[str, str]] = None,
    output_file: str = SPEAKER_ATTRIBUTED_BOOK_FILE,
    characters_file: str = CHARACTERS_FILE,
    voice_mapping_file: Optional[str] = VOICE_MAPPING_FILE,
):
    """
    Run the whole pipeline on `text`, yielding progress strings as it goes.

    Pass 1 extracts and merges characters, pass 2 assigns a speaker to every sentence. The assignments
    are written to `output_file` (JSONL, one sentence per line). `characters_file` gets the saved voice
    mapping (characters sorted by how often they speak, rare speakers left out) plus their codes.

    Unless `character_voice_map` is given, voices are handed out by speaking frequency once pass 2 is
    done. Entries from `voice_mapping_file`, an earlier run's characters file, override those voices.

    The last item yielded is the tuple (assignments, characters, character_voice_map).
    """
    print("\n🚀 Starting character identification and speaker attribution...")
    empty_file(output_file)

    # ==================== PASS 1: Extract and merge characters ====================
    queue: asyncio.Queue = asyncio.Queue()

    def extract_progress(completed, total, message=None):
        if message:
            queue.put_nowait(f"Pass 1: {message}")
        elif total:
            queue.put_nowait(f"Pass 1: Extracting Characters. Progress: {completed}/{total} ({int(completed * 100 / total)}%)")

    task = asyncio.ensure_future(service.identify_characters(text, extract_progress))
    async for update in _drain_progress(queue, task):
        yield update
    characters = task.result()
    print(f"\n✅ PASS 1 Complete! {len(characters)} characters")

    saved_voices = []
    if voice_mapping_file:
        if os.path.exists(voice_mapping_file):
            saved_voices, _ = load_voice_mapping(voice_mapping_file)
            print(f"🎙️ Loaded {len(saved_voices)} saved voices from {voice_mapping_file}")
        else:
            print(f"⚠️  Voice mapping file {voice_mapping_file} not found, using default voices")

    build_default_voices = character_voice_map is None
    if build_default_voices:
        character_voice_map = build_character_voice_map(characters, narrator_voice=service.narrator_voice)
    character_voice_map = apply_voice_mapping(saved_voices, characters, character_voice_map)

    # ==================== PASS 2: Assign speakers ====================
    def assign_progress(completed, total, message=None):
        if message:
            queue.put_nowait(f"Pass 2: {message}")
        elif total:
            queue.put_nowait(f"Pass 2: Assigning Speakers. Progress: {completed}/{total} ({int(completed * 100 / total)}%)")

    task = asyncio.ensure_future(service.attribute_speakers(text, characters, character_voice_map, assign_progress))
    async for update in _drain_progress(queue, task):
        yield update
    assignments = task.result()

    frequency = count_speaking_frequency(assignments)
    print(f"\n✅ PASS 2 Complete! {sum(frequency.values())} of {len(assignments)} sentences attributed to characters")

    if build_default_voices:
        # Now that frequencies are known, the busiest speakers get the first voices of each pool
        character_voice_map = build_character_voice_map(
            characters, narrator_voice=service.narrator_voice, speaking_frequency=frequency
        )
        character_voice_map = apply_voice_mapping(saved_voices, characters, character_voice_map)
        assignments = [
            a.model_copy(update={"voice_id": service.voice_for(a.speaker, character_voice_map)})
            for a in assignments
        ]

    write_jsons_to_jsonl_file([a.model_dump(by_alias=True) for a in assignments], output_file)
    mapping = build_code_mapping(characters)
    sorted_characters = sort_characters_by_frequency(characters, assignments)
    summary = export_voice_mapping(sorted_characters, character_voice_map, service.narrator_voice)
    summary.update({
        "characters": [c.to_json() for c in sorted_characters],
        "codes": mapping.name_to_code,
        "speakingFrequency": frequency,
    })
    write_json_to_file(summary, characters_file)

    yield assignments, characters, character_voice_map
