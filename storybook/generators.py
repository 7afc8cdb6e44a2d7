"""External generators used by the pipeline.

The pipeline only depends on the three small interfaces below; the Google
implementations are wired in ``services.build_default_pipeline``. All calls
are blocking and are run off the event loop by the caller.
"""

import base64
import io
import logging
import re
import threading
from dataclasses import dataclass
from typing import Protocol

import google.generativeai as genai
import requests
from google.cloud import texttospeech
from google.oauth2 import service_account
from pydub import AudioSegment

from . import config
from .errors import GeneratorError
from .models import ChatMessage

logger = logging.getLogger(__name__)


@dataclass
class GeneratedImage:
    """Image returned by a generator, either inline bytes or a temporary URL."""

    data: bytes | None = None
    url: str | None = None
    format: str = "png"


class TextGenerator(Protocol):
    def generate(self, messages: list[ChatMessage], json_output: bool = False) -> str: ...


class ImageGenerator(Protocol):
    def generate(self, prompt: str) -> GeneratedImage: ...


class SpeechGenerator(Protocol):
    def synthesize(self, text: str, voice: str) -> bytes: ...


class GeminiTextGenerator:
    def __init__(self, api_key: str | None = None, model_name: str = config.TEXT_MODEL,
                 temperature: float = config.TEXT_TEMPERATURE):
        genai.configure(api_key=api_key or config.GEMINI_API_KEY)
        self.model_name = model_name
        self.temperature = temperature

    def generate(self, messages: list[ChatMessage], json_output: bool = False) -> str:
        system = "\n".join(m.content for m in messages if m.role == "system")
        prompt = "\n\n".join(m.content for m in messages if m.role == "user")

        model = genai.GenerativeModel(self.model_name, system_instruction=system or None)
        generation_config = {"temperature": self.temperature}
        if json_output:
            generation_config["response_mime_type"] = "application/json"

        try:
            response = model.generate_content(
                prompt,
                generation_config=genai.types.GenerationConfig(**generation_config),
            )
            text = response.text
        except Exception as e:
            raise GeneratorError(f"Gemini request failed: {e}") from e

        if not text or not text.strip():
            raise GeneratorError("Gemini returned an empty response")
        return text


class ImagenImageGenerator:
    """Calls the Imagen ``predict`` endpoint and returns the inline image bytes."""

    def __init__(self, api_key: str | None = None, api_url: str = config.IMAGE_API_URL,
                 aspect_ratio: str = config.IMAGE_ASPECT_RATIO,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS):
        self.api_key = api_key or config.GEMINI_API_KEY
        self.api_url = api_url
        self.aspect_ratio = aspect_ratio
        self.timeout = timeout

    def generate(self, prompt: str) -> GeneratedImage:
        payload = {
            "instances": [{"prompt": prompt}],
            "parameters": {"sampleCount": 1, "aspectRatio": self.aspect_ratio},
        }
        try:
            response = requests.post(
                self.api_url,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            predictions = response.json().get("predictions") or []
        except requests.exceptions.RequestException as e:
            raise GeneratorError(f"Image request failed: {e}") from e
        except ValueError as e:
            raise GeneratorError(f"Image response was not JSON: {e}") from e

        if not predictions or not predictions[0].get("bytesBase64Encoded"):
            raise GeneratorError("Image response contained no image")

        prediction = predictions[0]
        mime_type = prediction.get("mimeType", "image/png")
        return GeneratedImage(
            data=base64.b64decode(prediction["bytesBase64Encoded"]),
            format=mime_type.split("/")[-1],
        )


def download_image(url: str, timeout: float = config.HTTP_TIMEOUT_SECONDS) -> bytes:
    """Fetches a generator-hosted image so it can be re-saved to our own storage."""
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise GeneratorError(f"Failed to download image: {e}") from e
    if not response.content:
        raise GeneratorError("Downloaded image is empty")
    return response.content


def split_into_chunks(text: str, limit: int = config.TTS_CHUNK_CHARS) -> list[str]:
    """Splits text on sentence boundaries into chunks shorter than ``limit``."""
    sentences = re.split(r"(?<=[.!?])\s+", text.strip())

    chunks = []
    current_chunk = ""
    for sentence in sentences:
        if len(current_chunk) + len(sentence) < limit:
            current_chunk += sentence + " "
        else:
            if current_chunk.strip():
                chunks.append(current_chunk.strip())
            current_chunk = sentence + " "
    if current_chunk.strip():
        chunks.append(current_chunk.strip())
    return chunks


class GoogleSpeechGenerator:
    def __init__(self, credentials_path: str | None = None,
                 speaking_rate: float = config.SPEAKING_RATE):
        self.credentials_path = credentials_path or config.GOOGLE_APPLICATION_CREDENTIALS
        self.speaking_rate = speaking_rate
        self._client = None
        self._lock = threading.Lock()

    def _get_client(self):
        with self._lock:
            if self._client is None:
                if not self.credentials_path:
                    raise GeneratorError("GOOGLE_APPLICATION_CREDENTIALS environment variable not set.")
                credentials = service_account.Credentials.from_service_account_file(self.credentials_path)
                self._client = texttospeech.TextToSpeechClient(credentials=credentials)
                logger.info("TTS client created.")
            return self._client

    def synthesize(self, text: str, voice: str) -> bytes:
        client = self._get_client()
        language_code = "-".join(voice.split("-")[:2])
        voice_params = texttospeech.VoiceSelectionParams(language_code=language_code, name=voice)
        audio_config = texttospeech.AudioConfig(
            audio_encoding=texttospeech.AudioEncoding.MP3,
            speaking_rate=self.speaking_rate,
        )

        chunks = split_into_chunks(text)
        if not chunks:
            raise GeneratorError("No narration text to synthesize")

        parts = []
        for i, chunk in enumerate(chunks):
            try:
                response = client.synthesize_speech(
                    input=texttospeech.SynthesisInput(text=chunk),
                    voice=voice_params,
                    audio_config=audio_config,
                )
            except Exception as e:
                logger.error("Failed to synthesize chunk %d/%d: %s", i + 1, len(chunks), chunk[:200])
                raise GeneratorError(f"TTS request failed: {e}") from e
            if not response.audio_content:
                raise GeneratorError(f"TTS returned no audio for chunk {i + 1}")
            parts.append(response.audio_content)

        if len(parts) == 1:
            return parts[0]
        return concatenate_mp3(parts)


def concatenate_mp3(parts: list[bytes]) -> bytes:
    combined = AudioSegment.empty()
    for part in parts:
        combined += AudioSegment.from_mp3(io.BytesIO(part))
    out = io.BytesIO()
    combined.export(out, format="mp3")
    return out.getvalue()
