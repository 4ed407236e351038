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

import time
import asyncio
from config.constants import (
    CHARACTER_IDENTIFICATION_LLM_BASE_URL,
    CHARACTER_IDENTIFICATION_LLM_API_KEY,
    CHARACTER_IDENTIFICATION_LLM_MODEL_NAME,
)
from utils.llm_utils import OpenAICompletionClient, OperationCancelledError, check_if_llm_is_up
from utils.character_extraction_llm import LLMVoiceService, llm_identify_characters_and_output_to_jsonl

completion_client = OpenAICompletionClient(
    base_url=CHARACTER_IDENTIFICATION_LLM_BASE_URL,
    api_key=CHARACTER_IDENTIFICATION_LLM_API_KEY,
    model_name=CHARACTER_IDENTIFICATION_LLM_MODEL_NAME,
)

async def identify_characters_and_output_book_to_jsonl(text: str, service: LLMVoiceService):
    """
    Identify the speaking characters of a book and attribute every sentence to a speaker.

    Args:
        text (str): The input text to be processed, typically a book or script.
        service (LLMVoiceService): The attribution service for this run. Call `service.cancel()` to stop it.

    Outputs:
        - speaker_attributed_book.jsonl: one line per sentence with its index, text, speaker and voice.
        - characters.json: the characters with their name variations, genders, codes and voices.
    """
    yield "Identifying Characters. Progress 0%"

    async for update in llm_identify_characters_and_output_to_jsonl(text, service):
        if isinstance(update, str):
            yield update

    yield "Character Identification Completed. You can now move onto the next step (Audiobook generation)."

async def process_book_and_identify_characters(service: LLMVoiceService):
    is_llm_up, message = await check_if_llm_is_up(completion_client)

    if not is_llm_up:
        raise Exception(message)

    with open("converted_book.txt", "r", encoding="utf-8") as f:
        book_text = f.read()

    async for update in identify_characters_and_output_book_to_jsonl(book_text, service):
        yield update

async def main():
    service = LLMVoiceService(completion_client)

    # Start processing
    start_time = time.time()
    print("\n🔍 Identifying characters and processing the book...")
    try:
        async for update in process_book_and_identify_characters(service):
            print(update)
    except OperationCancelledError:
        print("\n🛑 Character identification was cancelled.")
        return
    end_time = time.time()

    # Calculate execution time
    execution_time = end_time - start_time
    print(f"\n⏱️ **Execution Time:** {execution_time:.6f} seconds")

    # Completion message
    print("\n✅ **Character identification complete!**")
    print("📄 Speaker attributions were written to speaker_attributed_book.jsonl")
    print("\n🚀 Happy audiobook creation!\n")

if __name__ == "__main__":
    asyncio.run(main())
