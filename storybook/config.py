import os
from dotenv import load_dotenv

load_dotenv()

# Text generation
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
TEXT_MODEL = os.getenv("TEXT_MODEL", "gemini-1.5-flash")
TEXT_TEMPERATURE = float(os.getenv("TEXT_TEMPERATURE", "0.7"))

# Image generation (Imagen over the Generative Language REST API)
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "imagen-3.0-generate-002")
IMAGE_API_URL = os.getenv(
    "IMAGE_API_URL",
    f"https://generativelanguage.googleapis.com/v1beta/models/{IMAGE_MODEL}:predict",
)
IMAGE_ASPECT_RATIO = os.getenv("IMAGE_ASPECT_RATIO", "16:9")

# Speech generation
GOOGLE_APPLICATION_CREDENTIALS = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
DEFAULT_NARRATION_VOICES = (
    "en-US-Chirp3-HD-Achernar",
    "en-US-Chirp3-HD-Gacrux",
    "en-US-Chirp3-HD-Leda",
    "en-US-Chirp3-HD-Sulafat",
)


def parse_voices(raw: str | None) -> list[str]:
    """Comma-separated voice names; blank values fall back to the defaults."""
    voices = [voice.strip() for voice in (raw or "").split(",") if voice.strip()]
    return voices or list(DEFAULT_NARRATION_VOICES)


NARRATION_VOICES = parse_voices(os.getenv("NARRATION_VOICES"))
SPEAKING_RATE = float(os.getenv("SPEAKING_RATE", "0.9"))
TTS_CHUNK_CHARS = 4500  # the API rejects requests over 5000 bytes

# Persistence
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:////var/data/storybook.db")

# Asset storage
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")
ASSET_ROOT = os.getenv("ASSET_ROOT", os.path.join(os.getcwd(), "public"))
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "storybook-assets")
FALLBACK_IMAGE_URL = os.getenv("FALLBACK_IMAGE_URL", "/assets/fallback-story-image.png")
MAX_IMAGE_MB = int(os.getenv("MAX_IMAGE_MB", "10"))
MAX_AUDIO_MB = int(os.getenv("MAX_AUDIO_MB", "25"))

# Illustration prompts
MAX_PROMPT_WORDS = int(os.getenv("MAX_PROMPT_WORDS", "200"))
MAX_PREFIX_WORDS = int(os.getenv("MAX_PREFIX_WORDS", "130"))

# Credits
STORY_CREDIT_COST = 1
FREE_CREDITS = 3
MIN_CREDITS_PURCHASE = 1
MAX_CREDITS_PURCHASE = 100

# Timeouts (seconds)
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "300"))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "60"))
