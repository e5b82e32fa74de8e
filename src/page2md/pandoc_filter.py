"""Pandoc JSON filter applied while converting help pages to Markdown.

Pandoc runs this module as a separate process (``--filter``) and streams the
document tree through it. Each rule below inspects one node at a time and
either edits it in place or returns a replacement list.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from pandocfilters import toJSONFilter

LOG = logging.getLogger("page2md.filter")

CODEBLOCK_LANGUAGE_ENV = "PAGE2MD_CODEBLOCK_LANGUAGE"

# Pandoc only indents code blocks that carry no attributes at all.
INDENTATION_PREVENTION_ID = "code-block-indentation-prevention"
LANGUAGE_CLASS_PREFIX = "language-"
LEGACY_CONTAINER_CLASS = "body_text"
LINK_EXTENSIONS = ("md", "php")

Action = Callable[[str, Any, str, Dict[str, Any]], Optional[List[Dict[str, Any]]]]


@dataclass
class FilterConfig:
    codeblock_language: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "FilterConfig":
        env = os.environ if environ is None else environ
        language = (env.get(CODEBLOCK_LANGUAGE_ENV) or "").strip()
        return cls(codeblock_language=language or None)


def _empty_attr() -> List[Any]:
    return ["", [], []]


def force_fenced_code_block(key: str, value: Any) -> None:
    if key == "CodeBlock" and not value[0][0]:
        value[0][0] = INDENTATION_PREVENTION_ID


def clean_code_block_language(key: str, value: Any, config: FilterConfig) -> None:
    if key != "CodeBlock":
        return
    classes = value[0][1]
    if classes:
        value[0][1] = [
            entry[len(LANGUAGE_CLASS_PREFIX) :] if entry.startswith(LANGUAGE_CLASS_PREFIX) else entry
            for entry in classes
        ]
    elif config.codeblock_language:
        value[0][1] = [config.codeblock_language]


def suppress_header_attributes(key: str, value: Any) -> None:
    # Disabling auto_identifiers on the writer has no effect on HTML input.
    if key == "Header":
        value[1] = _empty_attr()


def suppress_image_attributes(key: str, value: Any) -> None:
    if key == "Image":
        value[0] = _empty_attr()


def _is_external(target: str) -> bool:
    parts = urlsplit(target)
    return bool(parts.scheme or parts.netloc)


def strip_link_extension(target: str) -> str:
    """Drop a ``.md``/``.php`` extension from the last path segment of a site link.

    Query strings and fragments are kept; absolute URLs are returned as-is.
    """
    if not target or _is_external(target):
        return target
    path, hash_mark, fragment = target.partition("#")
    path, query_mark, query = path.partition("?")
    head, slash, segment = path.rpartition("/")
    stem, dot, extension = segment.rpartition(".")
    if dot and stem and extension.lower() in LINK_EXTENSIONS:
        path = f"{head}{slash}{stem}"
    return f"{path}{query_mark}{query}{hash_mark}{fragment}"


def clean_link(key: str, value: Any) -> None:
    if key != "Link":
        return
    target = value[2]
    if len(target) > 1 and target[1]:
        value[2] = [target[0], ""]
    rewritten = strip_link_extension(value[2][0])
    if rewritten != value[2][0]:
        LOG.debug("Link target %s -> %s", value[2][0], rewritten)
        value[2][0] = rewritten


def is_legacy_container(key: str, value: Any) -> bool:
    return key == "Div" and LEGACY_CONTAINER_CLASS in value[0][1]


def make_action(config: FilterConfig) -> Action:
    """Build the per-node callback handed to the pandocfilters walker."""

    def _rewrite_spliced(blocks: List[Dict[str, Any]], fmt: str, meta: Dict[str, Any]) -> List[Dict[str, Any]]:
        # The walker only descends into the children of returned nodes, so the
        # spliced nodes themselves have to go through the rules here.
        spliced: List[Dict[str, Any]] = []
        for block in blocks:
            replacement = action(block["t"], block.get("c"), fmt, meta)
            spliced.extend([block] if replacement is None else replacement)
        return spliced

    def action(key: str, value: Any, fmt: str, meta: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        force_fenced_code_block(key, value)
        clean_code_block_language(key, value, config)
        suppress_header_attributes(key, value)
        clean_link(key, value)
        suppress_image_attributes(key, value)
        if is_legacy_container(key, value):
            return _rewrite_spliced(value[1], fmt, meta)
        # No pandoc node maps to <key>; see core.restore_key_markup.
        return None

    return action


def main() -> None:
    config = FilterConfig.from_env()
    toJSONFilter(make_action(config))


if __name__ == "__main__":
    main()
