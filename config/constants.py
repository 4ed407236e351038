import os
from dotenv import load_dotenv

load_dotenv()

CHARACTER_IDENTIFICATION_LLM_BASE_URL = os.environ.get("CHARACTER_IDENTIFICATION_LLM_BASE_URL", "http://localhost:1234/v1")
CHARACTER_IDENTIFICATION_LLM_API_KEY = os.environ.get("CHARACTER_IDENTIFICATION_LLM_API_KEY", "lm-studio")
CHARACTER_IDENTIFICATION_LLM_MODEL_NAME = os.environ.get("CHARACTER_IDENTIFICATION_LLM_MODEL_NAME", "Qwen/Qwen3-30B-A3B-Instruct-2507")

LLM_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.0"))
LLM_TOP_P = float(os.environ.get("LLM_TOP_P", "0.95"))
LLM_REQUEST_TIMEOUT = float(os.environ.get("LLM_REQUEST_TIMEOUT", "180"))

# Block budgets in tokens
MAX_EXTRACT_BLOCK_TOKENS = int(os.environ.get("MAX_EXTRACT_BLOCK_TOKENS", "16000"))
MAX_ASSIGN_BLOCK_TOKENS = int(os.environ.get("MAX_ASSIGN_BLOCK_TOKENS", "8000"))

MAX_CONCURRENT_LLM_REQUESTS = int(os.environ.get("MAX_CONCURRENT_LLM_REQUESTS", "20"))

DEFAULT_LLM_RETRY_DELAYS = [1.0, 3.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]

def parse_retry_delays(value):
    """Comma-separated seconds, e.g. "1,3,5". An empty value gives the default sequence."""
    delays = [float(delay) for delay in (value or "").split(",") if delay.strip()]
    return delays or list(DEFAULT_LLM_RETRY_DELAYS)

# Seconds. Once exhausted, the last delay is reused forever.
LLM_RETRY_DELAYS = parse_retry_delays(os.environ.get("LLM_RETRY_DELAYS"))

# Characters speaking in fewer than this share of all sentences are left out of characters.json
MIN_SPEAKING_PERCENTAGE = float(os.environ.get("MIN_SPEAKING_PERCENTAGE", "0.0005"))

NARRATOR_VOICE = os.environ.get("NARRATOR_VOICE", "af_heart")

SPEAKER_ATTRIBUTED_BOOK_FILE = "speaker_attributed_book.jsonl"
CHARACTERS_FILE = "characters.json"

# Optional saved voice mapping (e.g. characters.json of an earlier run) applied on top of the default voices
VOICE_MAPPING_FILE = os.environ.get("VOICE_MAPPING_FILE", "")
