"""String helpers for type names, labels and filesystem slugs."""

import re

_TAG_RE = re.compile(r"<[^>]+>")
_UPPER_RE = re.compile(r"[A-Z]")
_SLUG_RE = re.compile(r"[^a-z0-9_-]", re.IGNORECASE)


def to_snake(name: str) -> str:
    """camelCase or PascalCase -> snake_case. Already-snake names pass through unchanged."""
    name = name[:1].lower() + name[1:]
    return _UPPER_RE.sub(lambda m: f"_{m.group(0).lower()}", name)


def humanize(name: str) -> str:
    """Make snake/camel case names readable: 'survey_seasons' -> 'Survey Seasons'."""
    return " ".join(frag[:1].upper() + frag[1:] for frag in to_snake(name).split("_") if frag)


def strip_tags(value: str) -> str:
    """Remove HTML tags, keeping the text between them."""
    return _TAG_RE.sub("", value)


def slugify(label: str) -> str:
    """Filesystem-safe segment: spaces become underscores, then only [A-Za-z0-9_-] survive."""
    return _SLUG_RE.sub("", label.strip().replace(" ", "_"))
