#!/usr/bin/env python3
"""Arabic text clean-up applied to segments after segmentation.

  - html_to_markdown: Shamela page body HTML -> plain text with "## " headings
  - preformat_arabic_text: punctuation spacing and whitespace normalization
    for display (never changes the author's letters)
  - sanitize_arabic: aggressive reduction (no diacritics, tatweel, invisible
    marks) used only to measure whether a segment has real content
"""

from __future__ import annotations

import html as htmlmod
import re


# ─── Character classes ──────────────────────────────────────────────────────

# Tashkeel, Quranic annotation marks, superscript alef
DIACRITICS_RE = re.compile("[\u0610-\u061A\u064B-\u065F\u0670\u06D6-\u06ED]")
TATWEEL = "\u0640"
# Zero-width characters, bidi marks/embeddings/isolates, BOM
INVISIBLE_RE = re.compile("[\u200B-\u200F\u202A-\u202E\u2066-\u2069\uFEFF]")

ARABIC_PUNCT = "،؛؟"
SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,!?:;،؛؟])")
MISSING_SPACE_AFTER_RE = re.compile(r"([،؛؟])(?=[^\s\d.,!?:;،؛؟)\]»])")


# ─── Shamela HTML ───────────────────────────────────────────────────────────

# Text between a line start and a title span belongs to the title
TITLE_PREFIX_RE = re.compile(
    r"(^|\n)([^\n]*?)<span[^>]*data-type=[\"']title[\"'][^>]*>", re.IGNORECASE
)
TITLE_SPAN_RE = re.compile(
    r"<span[^>]*data-type=[\"']title[\"'][^>]*>(.*?)</span>", re.IGNORECASE
)
# Narrator links: <a href="inr://...">name</a>
NARRATOR_LINK_RE = re.compile(r"<a[^>]*href=[\"']inr://[^\"']*[\"'][^>]*>(.*?)</a>", re.IGNORECASE)
TAG_RE = re.compile(r"<[^>]*>")


def html_to_markdown(body: str) -> str:
    """Convert a Shamela page body to text, turning title spans into "## " lines."""
    s = body.replace("\r\n", "\n").replace("\r", "\n")
    s = TITLE_PREFIX_RE.sub(r'\1<span data-type="title">\2', s)
    s = TITLE_SPAN_RE.sub(r"## \1", s)
    s = NARRATOR_LINK_RE.sub(r"\1", s)
    s = TAG_RE.sub("", s)
    return htmlmod.unescape(s)


# ─── Formatting ─────────────────────────────────────────────────────────────

def preformat_arabic_text(text: str) -> str:
    """Normalize punctuation spacing and whitespace, line by line."""
    s = text.replace("\r\n", "\n").replace("\r", "\n")
    s = s.replace("\u00a0", " ")
    s = SPACE_BEFORE_PUNCT_RE.sub(r"\1", s)
    s = MISSING_SPACE_AFTER_RE.sub(r"\1 ", s)

    lines = []
    for line in s.split("\n"):
        line = re.sub(r"[ \t]{2,}", " ", line).strip()
        lines.append(line)
    s = "\n".join(lines)

    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def sanitize_arabic(text: str) -> str:
    """Strip diacritics, tatweel and invisible marks; collapse whitespace."""
    s = DIACRITICS_RE.sub("", text)
    s = s.replace(TATWEEL, "")
    s = INVISIBLE_RE.sub("", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def word_count(text: str) -> int:
    return len(text.split())
