"""
Canonical topic names.

A canonical name is "<emoji> <stream>-<title-slug>". normalize() is pure and
a fixed point: feeding a canonical name back in returns it unchanged, because
the emoji is dropped by slugification and exactly one leading "<stream>-" is
stripped from the slug before the prefix is added back.
"""

import re
import unicodedata

from steward.lib.constants import DEFAULT_MAX_NAME_LENGTH, DEFAULT_MAX_TITLE_SLUG_LENGTH
from steward.lib.errors import ValidationError

_NON_ALNUM = re.compile(r'[^a-z0-9]+')

EMPTY_TITLE_SLUG = "untitled"


def slugify(text: str) -> str:
    """Lowercase ASCII slug: non-alphanumeric runs collapse to a single '-'."""
    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return _NON_ALNUM.sub("-", ascii_text.lower()).strip("-")


def name_prefix(emoji: str, category: str) -> str:
    return f"{emoji} {category}-"


def title_slug_budget(
    emoji: str,
    category: str,
    max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
    max_title_slug_length: int = DEFAULT_MAX_TITLE_SLUG_LENGTH,
) -> int:
    """Characters left for the title slug once the prefix is reserved."""
    if slugify(emoji):
        # An emoji that slugifies to text would leak into the slug on re-normalization
        raise ValidationError(category, f"Stream emoji '{emoji}' must not contain letters or digits")
    budget = min(max_title_slug_length, max_name_length - len(name_prefix(emoji, category)))
    if budget < 1:
        raise ValidationError(
            category,
            f"Prefix '{name_prefix(emoji, category)}' leaves no room within {max_name_length} characters",
        )
    return budget


def normalize(
    category: str,
    raw_title: str,
    emoji: str,
    max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
    max_title_slug_length: int = DEFAULT_MAX_TITLE_SLUG_LENGTH,
) -> str:
    """Map any title in a stream to its canonical compliant name."""
    budget = title_slug_budget(emoji, category, max_name_length, max_title_slug_length)

    slug = slugify(raw_title)
    stream_prefix = f"{category}-"
    if slug.startswith(stream_prefix):
        slug = slug[len(stream_prefix):]

    slug = slug[:budget].strip("-") or EMPTY_TITLE_SLUG[:budget]
    return f"{name_prefix(emoji, category)}{slug}"


class Normalizer:
    """normalize() bound to the configured streams and length limits."""

    def __init__(self, streams: dict, max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
                 max_title_slug_length: int = DEFAULT_MAX_TITLE_SLUG_LENGTH):
        self.streams = streams
        self.max_name_length = max_name_length
        self.max_title_slug_length = max_title_slug_length

    @classmethod
    def from_config(cls, config) -> "Normalizer":
        return cls(config.streams, config.naming.max_name_length, config.naming.max_title_slug_length)

    def __call__(self, category: str, raw_title: str) -> str:
        stream = self.streams.get(category)
        if stream is None:
            raise ValidationError(category, f"Unknown stream '{category}'")
        return normalize(
            category, raw_title, stream.emoji,
            self.max_name_length, self.max_title_slug_length,
        )
