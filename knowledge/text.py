"""Helpers for turning stored page markup into plain text."""

from __future__ import annotations

import re

from bs4 import BeautifulSoup, NavigableString
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

NON_TEXT_TAGS = ("script", "style", "noscript", "template")
_NON_TEXT_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)

_SPACES = re.compile(r"\s+")


def _soup(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html or "", "html.parser")
    for element in soup(list(NON_TEXT_TAGS)):
        element.decompose()
    return soup


def html_to_text(html: str) -> str:
    """Extract readable text from ``html`` removing scripts/styles."""

    text = _soup(html).get_text(" ")
    return _SPACES.sub(" ", text).strip()


def page_title(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    if soup.title is None or soup.title.string is None:
        return ""
    return soup.title.string.strip()


def text_segments(html: str) -> list[str]:
    """Return the own text of every element under ``<body>``.

    Each element contributes only the strings that are its direct children, so
    nested blocks are not repeated. Elements without text are skipped.
    """

    soup = _soup(html)
    root = soup.body or soup
    segments: list[str] = []
    for node in [root, *root.find_all(True)]:
        if node.name == "title":
            continue
        own = " ".join(
            str(child)
            for child in node.children
            if isinstance(child, NavigableString) and not isinstance(child, _NON_TEXT_STRINGS)
        )
        own = _SPACES.sub(" ", own).strip()
        if own:
            segments.append(own)
    return segments
