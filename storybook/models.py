from datetime import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

SCENE_COUNT = 3

Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class Theme(str, Enum):
    ADVENTURE = "adventure"
    FANTASY = "fantasy"
    FRIENDSHIP = "friendship"
    NATURE = "nature"


class EntityKind(str, Enum):
    CHARACTER = "character"
    OBJECT = "object"
    SETTING = "setting"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ChatMessage(_Frozen):
    role: Literal["system", "user"]
    content: str


class GenerationRequest(_Frozen):
    """The story form, accepted once and never modified."""

    child_name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50)]
    child_age: int = Field(ge=1, le=12)
    main_character: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
    theme: Theme
    previous_content: str | None = None


# --- Stage 1: outline ---

class OutlineScene(_Frozen):
    scene_number: int
    key_events: tuple[Text, ...] = Field(min_length=1)
    setting: Text
    characters_involved: tuple[Text, ...] = Field(min_length=1)
    emotional_tone: Text


class Outline(_Frozen):
    scenes: tuple[OutlineScene, ...]

    @model_validator(mode="after")
    def _three_scenes_in_order(self):
        if len(self.scenes) != SCENE_COUNT:
            raise ValueError(f"expected {SCENE_COUNT} scenes, got {len(self.scenes)}")
        numbers = [scene.scene_number for scene in self.scenes]
        if numbers != list(range(1, SCENE_COUNT + 1)):
            raise ValueError(f"scene numbers must be 1..{SCENE_COUNT} in order, got {numbers}")
        return self

    def character_names(self) -> list[str]:
        """Every name in ``characters_involved``, first occurrence order."""
        seen = []
        for scene in self.scenes:
            for name in scene.characters_involved:
                if name not in seen:
                    seen.append(name)
        return seen


# --- Stage 2: entities ---

class NamedDescription(_Frozen):
    name: Text
    description: Text


class EntityPayload(_Frozen):
    characters: tuple[NamedDescription, ...] = Field(min_length=1)
    objects: tuple[NamedDescription, ...] = ()
    settings: tuple[NamedDescription, ...] = ()


class Entity(_Frozen):
    name: Text
    kind: EntityKind
    description: Text


def entity_key(name: str) -> str:
    return " ".join(name.casefold().split())


class EntityCatalog(_Frozen):
    entities: tuple[Entity, ...]

    def resolve(self, name: str) -> Entity | None:
        key = entity_key(name)
        for entity in self.entities:
            if entity_key(entity.name) == key:
                return entity
        return None

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None

    def of_kind(self, kind: EntityKind) -> list[Entity]:
        return [entity for entity in self.entities if entity.kind == kind]


# --- Stage 3: full story ---

class StoryScenePayload(_Frozen):
    text: Text
    description: Text


class StoryPayload(_Frozen):
    title: Text
    characters: tuple[NamedDescription, ...] = ()
    settings: tuple[NamedDescription, ...] = ()
    scenes: tuple[StoryScenePayload, ...] = Field(min_length=SCENE_COUNT, max_length=SCENE_COUNT)


class DraftScene(_Frozen):
    number: int
    narration: str
    description: str


class StoryDraft(_Frozen):
    title: str
    characters: tuple[Entity, ...]
    settings: tuple[Entity, ...]
    scenes: tuple[DraftScene, ...]


# --- Stage 4: key elements ---

class SceneElements(_Frozen):
    scene_number: int
    key_elements: tuple[Text, ...] = ()


class KeyElements(_Frozen):
    scenes: tuple[SceneElements, ...]

    def for_scene(self, number: int) -> tuple[str, ...]:
        for scene in self.scenes:
            if scene.scene_number == number:
                return scene.key_elements
        return ()


# --- Stage 5: compiled prompts ---

class PromptedScene(_Frozen):
    number: int
    narration: str
    illustration_prompt: str


class StoryContent(_Frozen):
    title: str
    characters: tuple[Entity, ...]
    settings: tuple[Entity, ...]
    scenes: tuple[PromptedScene, ...]

    @property
    def narration(self) -> str:
        return "\n\n".join(scene.narration for scene in self.scenes)


# --- Stage 6: media ---

class SceneMedia(_Frozen):
    sequence: int
    image_url: Text
    audio_url: Text
    image_fallback: bool = False


class RealizedStory(_Frozen):
    content: StoryContent
    media: tuple[SceneMedia, ...]

    @model_validator(mode="after")
    def _media_matches_scenes(self):
        expected = [scene.number for scene in self.content.scenes]
        if [item.sequence for item in self.media] != expected:
            raise ValueError("scene media must cover every scene in order")
        return self


# --- Stage 7: committed records ---

class SegmentRecord(BaseModel):
    id: int
    sequence: int
    content: str
    image_url: str
    audio_url: str

    model_config = ConfigDict(from_attributes=True)


class StoryRecord(BaseModel):
    id: int
    user_id: int
    title: str
    child_name: str
    child_age: int
    main_character: str
    theme: str
    content: str
    image_urls: list[str]
    parent_approved: bool
    created_at: datetime
    segments: list[SegmentRecord]

    model_config = ConfigDict(from_attributes=True)


class StoryResult(BaseModel):
    story: StoryRecord
    credits_remaining: int
