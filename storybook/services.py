import asyncio
import logging
import random

from . import config, crud, database, stages
from .errors import BillingError, PipelineError, StoryNotFoundError, StorybookError
from .generators import (
    GeminiTextGenerator,
    GoogleSpeechGenerator,
    ImageGenerator,
    ImagenImageGenerator,
    SpeechGenerator,
    TextGenerator,
)
from .media import MediaRealizer
from .models import GenerationRequest, RealizedStory, StoryContent, StoryResult
from .storage import AssetStore, build_asset_store

logger = logging.getLogger(__name__)


class StoryPipeline:
    """Turns a story request into a persisted, illustrated and narrated story.

    The generators, asset store and session factory are injected so the
    whole pipeline can run against fakes.
    """

    def __init__(
        self,
        text: TextGenerator,
        images: ImageGenerator,
        speech: SpeechGenerator,
        store: AssetStore,
        session_factory=database.SessionLocal,
        voices: list[str] | None = None,
        rng: random.Random | None = None,
        timeout: float = config.GENERATION_TIMEOUT_SECONDS,
        fallback_image_url: str = config.FALLBACK_IMAGE_URL,
    ):
        self.text = text
        self.media = MediaRealizer(images, speech, store, fallback_image_url)
        self.session_factory = session_factory
        self.voices = [voice for voice in (voices or config.NARRATION_VOICES) if voice.strip()]
        if not self.voices:
            raise ValueError("At least one narration voice is required")
        self.rng = rng or random.Random()
        self.timeout = timeout

    async def generate_content(self, request: GenerationRequest) -> StoryContent:
        """Runs the text stages: outline, entities, story, key elements, prompts."""
        outline = await stages.generate_outline(self.text, request)
        catalog = await stages.define_entities(self.text, outline, request)
        draft = await stages.synthesize_story(self.text, outline, catalog, request)
        elements = await stages.extract_key_elements(self.text, draft)
        return stages.compile_illustration_prompts(draft, elements)

    async def realize(self, request: GenerationRequest) -> RealizedStory:
        content = await self.generate_content(request)
        voice = self.rng.choice(self.voices)
        logger.info("Narrating '%s' with voice %s.", content.title, voice)
        return await self.media.realize(content, voice)

    async def create_story(self, account_id: int, request: GenerationRequest) -> StoryResult:
        """Generates a story and, only if every scene is realized, bills and saves it."""
        await asyncio.to_thread(self._in_session, crud.ensure_credits, account_id)

        try:
            realized = await asyncio.wait_for(self.realize(request), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Story generation for account %d timed out.", account_id)
            raise PipelineError("generation", f"timed out after {self.timeout:.0f}s") from e
        except StorybookError as e:
            logger.error("Story generation for account %d failed: %s", account_id, e)
            raise

        try:
            return await asyncio.to_thread(
                self._in_session, crud.persist_story, account_id, request, realized
            )
        except BillingError:
            self.media.discard(realized)
            raise

    async def continue_story(self, account_id: int, story_id: int) -> StoryResult:
        """Creates a new story that carries on from one the account owns."""
        story = await asyncio.to_thread(self._in_session, crud.get_story, story_id)
        if story is None or story.user_id != account_id:
            raise StoryNotFoundError(f"Story {story_id} not found")
        return await self.create_story(account_id, build_continuation_request(story))

    def _in_session(self, fn, *args):
        db = self.session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()


def build_continuation_request(story) -> GenerationRequest:
    return GenerationRequest(
        child_name=story.child_name,
        child_age=story.child_age,
        main_character=story.main_character,
        theme=story.theme,
        previous_content=story.content,
    )


def build_default_pipeline() -> StoryPipeline:
    return StoryPipeline(
        text=GeminiTextGenerator(),
        images=ImagenImageGenerator(),
        speech=GoogleSpeechGenerator(),
        store=build_asset_store(),
    )
