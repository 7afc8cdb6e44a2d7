"""Text stages of the story pipeline.

Each stage takes the previous stage's value and returns a new one:

    GenerationRequest -> Outline -> EntityCatalog -> StoryDraft
        -> KeyElements -> StoryContent

Stages 1-4 ask the text generator for JSON and decode it strictly. Stage 5
(the illustration prompt compiler) is a pure function.
"""

import asyncio
import logging
import re

from . import config, prompts
from .errors import GeneratorError, MalformedGenerationError, MissingReferenceError, PipelineError
from .generators import TextGenerator
from .models import (
    DraftScene,
    Entity,
    EntityCatalog,
    EntityKind,
    EntityPayload,
    GenerationRequest,
    KeyElements,
    NamedDescription,
    Outline,
    PromptedScene,
    StoryContent,
    StoryDraft,
    StoryPayload,
    entity_key,
)
from .parsing import decode_stage_output

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 130
MIN_SCENE_WORDS = WORDS_PER_MINUTE // 2
MAX_SCENE_WORDS = WORDS_PER_MINUTE

STYLE_GUIDELINES = (
    "Style guidelines: children's storybook illustration, bright warm colors, "
    "cartoon-style characters with friendly expressions, soft lighting, whimsical atmosphere, "
    "age-appropriate, nothing scary or frightening. "
    "Keep every character and setting looking the same in every scene."
)

_FILLER_WORDS = {"a", "an", "the", "of", "and", "with", "who", "named", "called", "my", "little", "big"}


async def _ask(text_generator: TextGenerator, stage: str, messages) -> str:
    try:
        return await asyncio.to_thread(text_generator.generate, messages, True)
    except GeneratorError as e:
        logger.error("Text generation failed at stage '%s': %s", stage, e)
        raise PipelineError(stage, str(e)) from e


# --- Stage 1 ---

async def generate_outline(text_generator: TextGenerator, request: GenerationRequest) -> Outline:
    logger.info("Generating story outline for %s (age %d).", request.child_name, request.child_age)
    raw = await _ask(text_generator, "outline", prompts.outline_messages(request))
    outline = decode_stage_output("outline", raw, Outline)
    logger.info("Outline ready with characters %s.", outline.character_names())
    return outline


# --- Stage 2 ---

async def define_entities(
    text_generator: TextGenerator, outline: Outline, request: GenerationRequest
) -> EntityCatalog:
    logger.info("Defining story entities.")
    raw = await _ask(text_generator, "entities", prompts.entity_messages(outline, request))
    payload = decode_stage_output("entities", raw, EntityPayload)
    catalog = build_catalog(payload)
    verify_outline_references(outline, catalog)
    if not mentions_main_character(catalog, request.main_character):
        logger.warning("No character in the catalog matches the main character '%s'.", request.main_character)
    logger.info("Entity catalog ready with %d entries.", len(catalog.entities))
    return catalog


def build_catalog(payload: EntityPayload) -> EntityCatalog:
    """Flattens the generator's grouped entities. The first definition of a name wins."""
    entities = []
    seen = set()
    groups = (
        (EntityKind.CHARACTER, payload.characters),
        (EntityKind.OBJECT, payload.objects),
        (EntityKind.SETTING, payload.settings),
    )
    for kind, items in groups:
        for item in items:
            key = entity_key(item.name)
            if key in seen:
                logger.warning("Duplicate entity '%s' ignored.", item.name)
                continue
            seen.add(key)
            entities.append(Entity(name=item.name, kind=kind, description=item.description))
    return EntityCatalog(entities=tuple(entities))


def verify_outline_references(outline: Outline, catalog: EntityCatalog) -> None:
    for name in outline.character_names():
        if name not in catalog:
            raise MissingReferenceError("entities", name)


def _tokens(text: str) -> set[str]:
    return set(re.findall(r"[\w'-]+", text.casefold()))


def mentions_main_character(catalog: EntityCatalog, main_character: str) -> bool:
    """True when a catalog character's name or description shares a word with
    the requested main character, e.g. "a talking fox" and a fox named Rusty."""
    wanted = _tokens(main_character) - _FILLER_WORDS
    if not wanted:
        return True
    for entity in catalog.of_kind(EntityKind.CHARACTER):
        if wanted & (_tokens(entity.name) | _tokens(entity.description)):
            return True
    return False


# --- Stage 3 ---

async def synthesize_story(
    text_generator: TextGenerator,
    outline: Outline,
    catalog: EntityCatalog,
    request: GenerationRequest,
) -> StoryDraft:
    logger.info("Writing the full story.")
    raw = await _ask(text_generator, "story", prompts.story_messages(outline, catalog, request))
    payload = decode_stage_output("story", raw, StoryPayload)

    scenes = tuple(
        DraftScene(number=planned.scene_number, narration=written.text, description=written.description)
        for planned, written in zip(outline.scenes, payload.scenes)
    )
    for scene in scenes:
        word_count = len(scene.narration.split())
        if not MIN_SCENE_WORDS <= word_count <= MAX_SCENE_WORDS:
            logger.warning(
                "Scene %d word count (%d) is outside the desired range (%d-%d words).",
                scene.number, word_count, MIN_SCENE_WORDS, MAX_SCENE_WORDS,
            )

    draft = StoryDraft(
        title=payload.title,
        characters=merge_characters(payload.characters, catalog),
        settings=merge_settings(payload.settings, catalog),
        scenes=scenes,
    )
    logger.info("Story '%s' written.", draft.title)
    return draft


def merge_characters(written: tuple[NamedDescription, ...], catalog: EntityCatalog) -> tuple[Entity, ...]:
    """Returns the story's characters with catalog descriptions, plus every
    catalog character or object the story did not list itself."""
    merged = []
    keys = set()
    for item in written:
        entity = catalog.resolve(item.name)
        if entity is None:
            raise MissingReferenceError("story", item.name)
        if entity.kind == EntityKind.SETTING or entity_key(entity.name) in keys:
            continue
        keys.add(entity_key(entity.name))
        merged.append(entity)

    for entity in catalog.of_kind(EntityKind.CHARACTER) + catalog.of_kind(EntityKind.OBJECT):
        if entity_key(entity.name) not in keys:
            keys.add(entity_key(entity.name))
            merged.append(entity)
    return tuple(merged)


def merge_settings(written: tuple[NamedDescription, ...], catalog: EntityCatalog) -> tuple[Entity, ...]:
    merged = list(catalog.of_kind(EntityKind.SETTING))
    keys = {entity_key(e.name) for e in catalog.entities}
    for item in written:
        if entity_key(item.name) not in keys:
            keys.add(entity_key(item.name))
            merged.append(Entity(name=item.name, kind=EntityKind.SETTING, description=item.description))
    return tuple(merged)


# --- Stage 4 ---

async def extract_key_elements(text_generator: TextGenerator, draft: StoryDraft) -> KeyElements:
    logger.info("Extracting key visual elements.")
    raw = await _ask(text_generator, "key_elements", prompts.key_element_messages(draft))
    elements = decode_stage_output("key_elements", raw, KeyElements)

    numbers = sorted(scene.scene_number for scene in elements.scenes)
    expected = [scene.number for scene in draft.scenes]
    if numbers != expected:
        raise MalformedGenerationError(
            "key_elements", f"expected elements for scenes {expected}, got {numbers}", raw
        )
    return elements


# --- Stage 5 ---

def _words(text: str) -> int:
    return len(text.split())


def _clip(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words])


def _render_prefix(characters, settings, description_words: int | None) -> str:
    def line(entity: Entity) -> str:
        if description_words == 0:
            return f"- {entity.name}"
        description = entity.description
        if description_words is not None:
            description = _clip(description, description_words)
        return f"- {entity.name}: {description}"

    lines = [STYLE_GUIDELINES]
    if characters:
        lines.append("Characters:")
        lines.extend(line(e) for e in characters)
    if settings:
        lines.append("Settings:")
        lines.extend(line(e) for e in settings)
    return "\n".join(lines)


def build_prompt_prefix(
    characters: tuple[Entity, ...],
    settings: tuple[Entity, ...],
    max_words: int = config.MAX_PREFIX_WORDS,
) -> str:
    """Builds the style and entity block shared verbatim by every scene prompt.

    Entity descriptions are shortened evenly until the block fits in
    ``max_words``.
    """
    prefix = _render_prefix(characters, settings, None)
    if _words(prefix) <= max_words or not (characters or settings):
        return _clip(prefix, max_words)

    longest = max(_words(e.description) for e in characters + settings)
    for limit in range(longest - 1, -1, -1):
        prefix = _render_prefix(characters, settings, limit)
        if _words(prefix) <= max_words:
            return prefix
    return _clip(prefix, max_words)


def compile_scene_prompt(
    prefix: str,
    key_elements: tuple[str, ...],
    description: str,
    max_words: int = config.MAX_PROMPT_WORDS,
) -> str:
    """Combines the shared prefix with one scene's elements and description."""
    scene = f"Scene: {description.strip()}"
    if key_elements:
        scene = f"Key elements: {', '.join(key_elements)}. {scene}"
    scene = _clip(scene, max(max_words - _words(prefix), 0))
    return f"{prefix}\n\n{scene}" if scene else prefix


def compile_illustration_prompts(draft: StoryDraft, elements: KeyElements) -> StoryContent:
    prefix = build_prompt_prefix(draft.characters, draft.settings)
    scenes = tuple(
        PromptedScene(
            number=scene.number,
            narration=scene.narration,
            illustration_prompt=compile_scene_prompt(prefix, elements.for_scene(scene.number), scene.description),
        )
        for scene in draft.scenes
    )
    return StoryContent(
        title=draft.title,
        characters=draft.characters,
        settings=draft.settings,
        scenes=scenes,
    )
