"""Shared fixtures: canned generators, a temporary database and asset store."""
import json
import threading

import pytest

from storybook import crud, database
from storybook.generators import GeneratedImage
from storybook.models import GenerationRequest, Theme
from storybook.services import StoryPipeline
from storybook.storage import LocalAssetStore

OUTLINE = {
    "scenes": [
        {
            "scene_number": 1,
            "key_events": ["Mira meets Rusty at the edge of the woods", "Rusty shows her a map"],
            "setting": "Whispering Woods",
            "characters_involved": ["Mira", "Rusty"],
            "emotional_tone": "curious",
        },
        {
            "scene_number": 2,
            "key_events": ["They cross the rickety bridge", "Rusty is scared and Mira helps"],
            "setting": "Sparkle River",
            "characters_involved": ["Mira", "Rusty"],
            "emotional_tone": "brave",
        },
        {
            "scene_number": 3,
            "key_events": ["They find the Golden Acorn", "They share it with the forest"],
            "setting": "Whispering Woods",
            "characters_involved": ["Mira", "Rusty", "Owl"],
            "emotional_tone": "joyful",
        },
    ]
}

ENTITIES = {
    "characters": [
        {"name": "Mira", "description": "A six-year-old girl with curly black hair, a yellow raincoat and red boots."},
        {"name": "Rusty", "description": "A talking fox with orange fur, a white-tipped tail and a green scarf."},
        {"name": "Owl", "description": "A wise grey owl with round spectacles."},
    ],
    "objects": [
        {"name": "Golden Acorn", "description": "A glowing acorn the size of an apple."},
    ],
    "settings": [
        {"name": "Whispering Woods", "description": "A sunny forest with tall birch trees and soft moss."},
        {"name": "Sparkle River", "description": "A shallow river with a wooden bridge."},
    ],
}

SCENE_TEXT = (
    "Mira skipped along the path with her red boots splashing in every puddle. "
    "At the edge of the Whispering Woods a fox with a green scarf sat waiting. "
    '"Hello, I am Rusty," said the fox. "Will you help me find the Golden Acorn?" '
    "Mira clapped her hands and said yes right away."
)

STORY = {
    "title": "Mira and Rusty's Golden Acorn Adventure",
    "characters": [
        {"name": "Mira", "description": "A brave girl."},
        {"name": "Rusty", "description": "A fox."},
    ],
    "settings": [
        {"name": "Whispering Woods", "description": "A forest."},
        {"name": "Acorn Hill", "description": "A grassy hill at the heart of the woods."},
    ],
    "scenes": [
        {"text": SCENE_TEXT, "description": "Mira meets Rusty under tall birch trees."},
        {"text": "Mira and Rusty cross the river together. " * 8, "description": "Mira and Rusty on the rickety bridge over the river."},
        {"text": "They find the Golden Acorn and share it. " * 8, "description": "Mira, Rusty and Owl around the glowing acorn."},
    ],
}

KEY_ELEMENTS = {
    "scenes": [
        {"scene_number": 1, "key_elements": ["yellow raincoat", "fox with green scarf", "birch trees"]},
        {"scene_number": 2, "key_elements": ["rickety bridge", "sparkling river"]},
        {"scene_number": 3, "key_elements": ["glowing Golden Acorn", "grey owl"]},
    ]
}

STAGE_MARKERS = {
    "outline": "story planner",
    "entities": "Define all entities",
    "story": "Create a full 3-scene story",
    "key_elements": "extracts key visual elements",
}


def canned_responses():
    return {
        "outline": json.dumps(OUTLINE),
        "entities": json.dumps(ENTITIES),
        "story": json.dumps(STORY),
        "key_elements": "```json\n" + json.dumps(KEY_ELEMENTS, indent=2) + "\n```",
    }


class FakeTextGenerator:
    def __init__(self, responses=None):
        self.responses = canned_responses()
        self.responses.update(responses or {})
        self.calls = []

    def generate(self, messages, json_output=False):
        system = messages[0].content
        stage = next(name for name, marker in STAGE_MARKERS.items() if marker in system)
        self.calls.append((stage, messages))
        response = self.responses[stage]
        if isinstance(response, Exception):
            raise response
        return response

    def stages_called(self):
        return [stage for stage, _ in self.calls]


class FakeImageGenerator:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.prompts = []
        self._lock = threading.Lock()

    def generate(self, prompt):
        with self._lock:
            self.prompts.append(prompt)
        if self.fail_on and self.fail_on in prompt:
            raise RuntimeError("image model unavailable")
        return GeneratedImage(data=b"\x89PNG\r\n fake image", format="png")


class FakeSpeechGenerator:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = []
        self._lock = threading.Lock()

    def synthesize(self, text, voice):
        with self._lock:
            self.calls.append((text, voice))
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("speech model unavailable")
        return b"ID3 fake mp3 " + text[:20].encode()


@pytest.fixture
def request_form():
    return GenerationRequest(
        child_name="Mira", child_age=6, main_character="a talking fox", theme=Theme.ADVENTURE
    )


@pytest.fixture
def session_factory(tmp_path):
    engine = database.make_engine(f"sqlite:///{tmp_path / 'storybook.db'}")
    database.init_db(engine)
    yield database.make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def account(db):
    return crud.create_account(db, "parent@example.com")


@pytest.fixture
def store(tmp_path):
    return LocalAssetStore(str(tmp_path / "public"))


@pytest.fixture
def make_pipeline(session_factory, store):
    def _make(text=None, images=None, speech=None, **kwargs):
        return StoryPipeline(
            text=text or FakeTextGenerator(),
            images=images or FakeImageGenerator(),
            speech=speech or FakeSpeechGenerator(),
            store=store,
            session_factory=session_factory,
            voices=["en-US-Chirp3-HD-Leda"],
            **kwargs,
        )
    return _make
