import json

from .models import ChatMessage, EntityCatalog, EntityKind, GenerationRequest, Outline, StoryDraft

RAW_JSON_ONLY = "Do not use Markdown code blocks in your response. Output ONLY raw JSON."


def outline_messages(request: GenerationRequest) -> list[ChatMessage]:
    user_prompt = f"""
I need a children's story outline for a {request.child_age}-year-old child named {request.child_name}.
The main character(s)/element(s): {request.main_character}.
Theme: {request.theme.value}

Requirements for the outline:
- Exactly 3 scenes: beginning, middle, end.
- Each scene is distinct and visually rich.
- Each scene has 2-4 key_events, a setting, characters_involved and an emotional_tone.
- characters_involved lists character names, and always includes the main character.
"""
    if request.previous_content:
        user_prompt += f"""
This story continues an earlier one. Keep the same characters and pick up where it ended:
{request.previous_content}
"""
    user_prompt += """
Format:
{
  "scenes": [
    {
      "scene_number": 1,
      "key_events": ["..."],
      "setting": "short description",
      "characters_involved": ["..."],
      "emotional_tone": "..."
    },
    {"scene_number": 2, ...},
    {"scene_number": 3, ...}
  ]
}
"""
    return [
        ChatMessage(role="system", content=f"You are a skilled children's story planner. {RAW_JSON_ONLY}"),
        ChatMessage(role="user", content=user_prompt),
    ]


def entity_messages(outline: Outline, request: GenerationRequest) -> list[ChatMessage]:
    user_prompt = f"""
Given the outline below, define in detail all characters, objects, and settings that appear in the story.
Include appearance, attire, colors, personality traits and relationships. These descriptions will be
reused word for word to keep every illustration consistent.

Outline:
{outline.model_dump_json(indent=2)}

Requirements:
- Include every name listed in characters_involved, spelled exactly as in the outline.
- Include the main character ({request.main_character}) if not already named.
- Include important objects and every setting.

Format:
{{
  "characters": [{{"name": "...", "description": "..."}}],
  "objects": [{{"name": "...", "description": "..."}}],
  "settings": [{{"name": "...", "description": "..."}}]
}}
"""
    return [
        ChatMessage(
            role="system",
            content=f"You are a skilled children's story writer. Define all entities in detail. {RAW_JSON_ONLY}",
        ),
        ChatMessage(role="user", content=user_prompt),
    ]


def _catalog_json(catalog: EntityCatalog) -> str:
    grouped = {
        kind.value + "s": [
            {"name": e.name, "description": e.description} for e in catalog.of_kind(kind)
        ]
        for kind in EntityKind
    }
    return json.dumps(grouped, indent=2)


def story_messages(
    outline: Outline, catalog: EntityCatalog, request: GenerationRequest
) -> list[ChatMessage]:
    if request.previous_content:
        intro = (
            "Continue the story below with the same style, theme and characters, "
            f"following the new outline.\nPrevious content:\n{request.previous_content}"
        )
    else:
        intro = (
            f"Using the outline and entities defined below, create the full children's story about "
            f"{request.child_name} (age {request.child_age}) with the main character(s)/elements "
            f"{request.main_character}.\nTheme: {request.theme.value}"
        )
    user_prompt = f"""
{intro}

Outline:
{outline.model_dump_json(indent=2)}

Entities:
{_catalog_json(catalog)}

Requirements:
- Age-appropriate language for a {request.child_age}-year-old.
- Exactly 3 scenes following the outline, each 30-60 seconds read time.
- Include dialogue, emotions and actions.
- Only use the characters and objects defined above, with the same names.
- Each scene description is a short visual summary for the illustrator.

Format:
{{
  "title": "...",
  "characters": [{{"name": "...", "description": "..."}}],
  "settings": [{{"name": "...", "description": "..."}}],
  "scenes": [
    {{"text": "...", "description": "..."}},
    {{"text": "...", "description": "..."}},
    {{"text": "...", "description": "..."}}
  ]
}}
"""
    return [
        ChatMessage(
            role="system",
            content=f"You are a skilled children's story writer. Create a full 3-scene story. {RAW_JSON_ONLY}",
        ),
        ChatMessage(role="user", content=user_prompt),
    ]


def key_element_messages(draft: StoryDraft) -> list[ChatMessage]:
    scenes = [
        {"scene_number": s.number, "text": s.narration, "description": s.description}
        for s in draft.scenes
    ]
    user_prompt = f"""
Given the following story scenes, list the key visual elements in each scene for illustration.
Use short phrases (2-6 words each), most important first.

Story Scenes:
{json.dumps(scenes, indent=2)}

Format:
{{
  "scenes": [
    {{"scene_number": 1, "key_elements": ["..."]}},
    {{"scene_number": 2, "key_elements": ["..."]}},
    {{"scene_number": 3, "key_elements": ["..."]}}
  ]
}}
"""
    return [
        ChatMessage(
            role="system",
            content=f"You are an assistant who extracts key visual elements from scenes. {RAW_JSON_ONLY}",
        ),
        ChatMessage(role="user", content=user_prompt),
    ]
