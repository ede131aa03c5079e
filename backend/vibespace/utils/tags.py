# backend/vibespace/utils/tags.py
"""
Container tag helpers.

Proxmox tags are semicolon separated and limited to
``[a-z0-9_][a-z0-9_+.-]*``. Tags make vibespace containers easy to filter in
the hypervisor UI.
"""
import re
from typing import Iterable, List, Optional

TAG_PREFIX = "vibespace"
MAX_TAG_LENGTH = 50

_INVALID_CHARS = re.compile(r"[^a-z0-9_+.\-]")
_INVALID_LEADING = re.compile(r"^[^a-z0-9_]+")
_HYPHEN_RUNS = re.compile(r"-+")


def sanitize_tag(value: str) -> str:
    """Normalize an arbitrary string into a valid tag. Idempotent; may return ''."""
    tag = value.lower()
    tag = _INVALID_CHARS.sub("-", tag)
    tag = _INVALID_LEADING.sub("", tag)
    tag = _HYPHEN_RUNS.sub("-", tag)
    tag = tag[:MAX_TAG_LENGTH]
    return tag.rstrip("-")


def _join(tags: Iterable[str]) -> str:
    unique: List[str] = []
    for tag in tags:
        if tag and tag not in unique:
            unique.append(tag)
    return ";".join(unique)


def build_template_tags(tech_stack_ids: Optional[Iterable[str]] = None) -> str:
    return _join([TAG_PREFIX, "template", *(sanitize_tag(s) for s in tech_stack_ids or [])])


def build_workspace_tags(repo_name: Optional[str] = None, tech_stack_ids: Optional[Iterable[str]] = None) -> str:
    tags = [TAG_PREFIX]
    if repo_name:
        tags.append(sanitize_tag(repo_name))
    tags.extend(sanitize_tag(s) for s in tech_stack_ids or [])
    return _join(tags)


def parse_tags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t for t in re.split(r"[;,\s]+", value) if t]


def merge_tags(existing: Optional[str], new: Optional[str]) -> str:
    """Existing tags first, then new ones, deduplicated."""
    return _join(parse_tags(existing) + parse_tags(new))
