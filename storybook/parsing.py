"""Decoding of structured stage output from free-form generator text.

The text generator is asked for raw JSON but often wraps it in a Markdown
fence. Stripping the fence is the only repair applied; anything that is not
valid JSON matching the stage's model is a ``MalformedGenerationError``.
"""

import json
import logging
import re
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from .errors import MalformedGenerationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_LINE = re.compile(r"^\s*```[\w-]*[ \t]*$", re.MULTILINE)
_OPENING_FENCE = re.compile(r"\A\s*```[\w-]*")
_CLOSING_FENCE = re.compile(r"```\s*\Z")


def strip_code_fences(text: str) -> str:
    """Removes Markdown fences such as ```json and ``` from the text.

    Fences on their own line are dropped wherever they appear. An opening
    fence at the very start and a closing fence at the very end are dropped
    even when they share a line with the JSON.
    """
    text = _FENCE_LINE.sub("", text)
    text = _OPENING_FENCE.sub("", text)
    return _CLOSING_FENCE.sub("", text).strip()


def decode_stage_output(stage: str, text: str | None, model: type[ModelT]) -> ModelT:
    """Parses ``text`` as JSON and validates it against ``model``."""
    if not text or not text.strip():
        raise MalformedGenerationError(stage, "generator returned no text", text)

    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error("Stage '%s' returned invalid JSON: %s", stage, e)
        raise MalformedGenerationError(stage, f"invalid JSON: {e}", text) from e

    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error("Stage '%s' returned JSON of the wrong shape: %s", stage, e)
        raise MalformedGenerationError(
            stage, f"unexpected structure: {e.error_count()} validation error(s)", text
        ) from e
