"""Token estimation without calling the remote service.

Estimates are deliberately pessimistic: the scheduler charges them against
the per-minute budget before a request is sent.
"""

from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from coderelay.models.calls import ImagePart, Turn

# Word runs (apostrophes included) or single punctuation characters
_WORD_OR_PUNCT = re.compile(r"[\w']+|[^\s\w]", re.ASCII)

IMAGE_BASE_TOKENS = 258
IMAGE_PIXELS_PER_TOKEN = 700


def count_text_tokens(text: str | None) -> int:
    """Estimate the token count of ``text``.

    Takes the larger of a characters/4 heuristic and a word-and-punctuation
    count, which keeps both prose and dense code from being undercounted.
    """
    if not text:
        return 0
    char_tokens = math.ceil(len(text) / 4)
    word_tokens = len(_WORD_OR_PUNCT.findall(text))
    return max(char_tokens, word_tokens)


def count_image_tokens(width: int | None, height: int | None) -> int:
    """Estimate the token cost of an image.

    Unknown dimensions cost the fixed base only.
    """
    if not width or not height or width < 0 or height < 0:
        return IMAGE_BASE_TOKENS
    return IMAGE_BASE_TOKENS + math.ceil(width * height / IMAGE_PIXELS_PER_TOKEN)


def _count_image_part(image: ImagePart) -> int:
    if not image.mime_type.startswith("image/") or not image.data:
        return 0
    return count_image_tokens(image.width, image.height)


def count_turn_tokens(turn: Turn) -> int:
    return count_text_tokens(turn.text) + sum(_count_image_part(i) for i in turn.images)


def estimate_request_tokens(turns: Iterable[Turn], system_instruction: str | None = None) -> int:
    """Estimate the input cost of a request.

    Args:
        turns: Conversation turns that will be sent.
        system_instruction: Optional system prompt sent alongside.

    Returns:
        Estimated input tokens.
    """
    return sum(count_turn_tokens(t) for t in turns) + count_text_tokens(system_instruction)
