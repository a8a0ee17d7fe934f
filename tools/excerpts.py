#!/usr/bin/env python3
"""Turn segmented pages into the excerpts contract used by the editor.

Segments from segment_pages.py are formatted (preformat_arabic_text),
filtered (segments with almost no Arabic content after sanitize_arabic are
dropped), optionally merged when too short, and given human-facing IDs:

  P12    first plain excerpt starting on page 12
  P12a   second one on the same page, P12b third, ... P12z
  N12a   27th plain excerpt on page 12 (letters roll over to N, then F)
  C12    chapter (meta.type == "chapter"), C12a, ...
  B12    book (meta.type == "book"), B12a, ...

Counters are kept per (page, meta.type), so a chapter and a plain excerpt on
the same page both get an unsuffixed ID.

Usage:
  python tools/excerpts.py \\
    --pages pages.jsonl \\
    --options options.json \\
    --out excerpts.json \\
    [--headings headings.json] [--min-words 5] [--shamela]
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional

import yaml

from arabic_text import html_to_markdown, preformat_arabic_text, sanitize_arabic, word_count
from search_tokens import load_token_table
from segment_pages import (
    OptionsArg,
    PageInput,
    PagesArg,
    Segment,
    abort,
    coerce_options,
    info,
    load_pages_jsonl,
    resolve_options,
    segment_pages,
)
from segment_rules import RuleConfigError, options_to_dict

logger = logging.getLogger(__name__)


# ─── Constants ──────────────────────────────────────────────────────────────

CONTRACT_VERSION = "v4.0"
MAX_LETTERS = 26
# Prefixes for plain excerpts as the per-page count passes each 26 letters
PLAIN_PREFIXES = ("P", "N", "F")
TYPE_PREFIXES = {"book": "B", "chapter": "C"}
# Sanitized text this short (or shorter) is not an excerpt
MIN_SANITIZED_LENGTH = 2


# ─── Data classes ────────────────────────────────────────────────────────────

@dataclass
class Excerpt:
    id: str
    from_id: int
    nass: str
    vol: int = 0
    vp: int = 0
    to_id: Optional[int] = None
    meta: Optional[dict] = None


@dataclass
class Heading:
    id: str
    from_id: int
    nass: str
    parent: Optional[str] = None


@dataclass
class TitleInput:
    """A table-of-contents entry. ``page`` defaults to ``id`` when absent."""
    id: int
    content: str
    page: Optional[int] = None
    parent: Optional[int] = None


@dataclass
class ShamelaPage:
    id: int
    body: str
    page: Optional[int] = None
    part: Optional[str] = None
    footnote: Optional[str] = None


@dataclass
class Excerpts:
    contract_version: str
    created_at: float
    last_updated_at: float
    excerpts: list[Excerpt] = field(default_factory=list)
    footnotes: list[Excerpt] = field(default_factory=list)
    headings: list[Heading] = field(default_factory=list)
    options: dict = field(default_factory=dict)


# ─── IDs ─────────────────────────────────────────────────────────────────────

def _letters(n: int) -> str:
    """1 -> a, 26 -> z, 27 -> aa (bijective base 26)."""
    out = ""
    while n > 0:
        n, rem = divmod(n - 1, MAX_LETTERS)
        out = chr(ord("a") + rem) + out
    return out


def get_segment_id(segment: Segment, count: int) -> str:
    """Build the excerpt ID for the ``count``-th (0-based) segment of its kind on a page."""
    seg_type = (segment.meta or {}).get("type")

    if seg_type in TYPE_PREFIXES:
        return f"{TYPE_PREFIXES[seg_type]}{segment.from_id}{_letters(count)}"

    band = 0
    while count > MAX_LETTERS and band < len(PLAIN_PREFIXES) - 1:
        count -= MAX_LETTERS
        band += 1
    return f"{PLAIN_PREFIXES[band]}{segment.from_id}{_letters(count)}"


class IdGenerator:
    """Assigns IDs using a running count per (page, meta.type)."""

    def __init__(self):
        self._counts: dict[str, int] = {}

    @staticmethod
    def segment_key(segment: Segment) -> str:
        return f"{segment.from_id}{(segment.meta or {}).get('type') or ''}"

    def next_id(self, segment: Segment) -> str:
        key = self.segment_key(segment)
        count = self._counts.get(key, 0)
        self._counts[key] = count + 1
        return get_segment_id(segment, count)


# ─── Segment post-processing ────────────────────────────────────────────────

def merge_short_segments(segments: list[Segment], min_words: int) -> list[Segment]:
    """Fold segments under ``min_words`` words into the segment before them.

    Segments carrying meta (chapters, books, ...) are never folded, and the
    first segment has nothing to fold into. ``min_words <= 0`` disables this.
    """
    if min_words <= 0:
        return list(segments)

    merged: list[Segment] = []
    for seg in segments:
        if merged and seg.meta is None and word_count(seg.content) < min_words:
            prev = merged[-1]
            last_id = seg.to_id if seg.to_id is not None else seg.from_id
            merged[-1] = replace(
                prev,
                content=f"{prev.content} {seg.content.lstrip()}",
                to_id=last_id if last_id != prev.from_id else prev.to_id,
                html=f"{prev.html} {seg.html.lstrip()}" if prev.html is not None and seg.html is not None else prev.html,
            )
            continue
        merged.append(seg)

    if len(merged) != len(segments):
        logger.debug("Merged %d short segment(s)", len(segments) - len(merged))
    return merged


def format_segments(segments: Iterable[Segment]) -> list[Segment]:
    """Preformat content and drop segments with no real text left."""
    kept = []
    for seg in segments:
        text = preformat_arabic_text(seg.content)
        if len(sanitize_arabic(text)) <= MIN_SANITIZED_LENGTH:
            continue
        kept.append(replace(seg, content=text))
    return kept


def _excerpt_from_segment(seg: Segment, excerpt_id: str, vol: int = 0, vp: int = 0) -> Excerpt:
    return Excerpt(
        id=excerpt_id,
        from_id=seg.from_id,
        nass=seg.content,
        vol=vol,
        vp=vp,
        to_id=seg.to_id,
        meta=seg.meta,
    )


def _heading_from_title(t: TitleInput) -> Heading:
    return Heading(
        id=f"T{t.id}",
        from_id=t.page if t.page is not None else t.id,
        nass=t.content,
        parent=f"T{t.parent}" if t.parent else None,
    )


def _coerce_titles(titles: Iterable[TitleInput | Mapping[str, Any]]) -> list[TitleInput]:
    out = []
    for t in titles:
        if isinstance(t, TitleInput):
            out.append(t)
        else:
            out.append(TitleInput(
                id=t["id"],
                content=t["content"],
                page=t.get("page"),
                parent=t.get("parent"),
            ))
    return out


def _new_excerpts(excerpts: list[Excerpt], headings: list[Heading], options: dict) -> Excerpts:
    now = time.time()
    return Excerpts(
        contract_version=CONTRACT_VERSION,
        created_at=now,
        last_updated_at=now,
        excerpts=excerpts,
        footnotes=[],
        headings=headings,
        options=options,
    )


# ─── Transforms ──────────────────────────────────────────────────────────────

def map_pages_to_excerpts(
    pages: PagesArg,
    headings: Iterable[TitleInput | Mapping[str, Any]],
    options: OptionsArg,
    min_words_per_segment: int = 0,
    tokens: Optional[Mapping[str, str]] = None,
) -> Excerpts:
    """Segment generic pages and build the excerpts contract (vol/vp are 0)."""
    opts = coerce_options(options)
    segments = segment_pages(pages, opts, tokens)
    segments = format_segments(merge_short_segments(segments, min_words_per_segment))

    ids = IdGenerator()
    excerpts = [_excerpt_from_segment(s, ids.next_id(s)) for s in segments]
    return _new_excerpts(
        excerpts,
        [_heading_from_title(t) for t in _coerce_titles(headings)],
        options_to_dict(opts),
    )


def _volume_from_part(part: Optional[str]) -> int:
    try:
        return int(part) if part else 0
    except ValueError:
        return 0


def segment_shamela_pages_to_excerpts(
    shamela_pages: Iterable[ShamelaPage],
    titles: Iterable[TitleInput | Mapping[str, Any]],
    options: OptionsArg,
    min_words_per_segment: int = 0,
    tokens: Optional[Mapping[str, str]] = None,
) -> Excerpts:
    """Segment Shamela page bodies (HTML) and build the excerpts contract."""
    opts = coerce_options(options)
    id_to_page: dict[int, ShamelaPage] = {}
    pages: list[PageInput] = []
    for page in shamela_pages:
        id_to_page[page.id] = page
        pages.append(PageInput(id=page.id, content=html_to_markdown(page.body)))

    segments = segment_pages(pages, opts, tokens)
    segments = format_segments(merge_short_segments(segments, min_words_per_segment))

    ids = IdGenerator()
    excerpts = []
    for s in segments:
        page = id_to_page[s.from_id]
        excerpts.append(_excerpt_from_segment(
            s,
            ids.next_id(s),
            vol=_volume_from_part(page.part),
            vp=page.page or 0,
        ))

    return _new_excerpts(
        excerpts,
        [_heading_from_title(t) for t in _coerce_titles(titles)],
        options_to_dict(opts),
    )


# ─── Serialization ──────────────────────────────────────────────────────────

def excerpt_to_dict(e: Excerpt) -> dict:
    d: dict[str, Any] = {"id": e.id, "from": e.from_id}
    if e.to_id is not None:
        d["to"] = e.to_id
    if e.meta is not None:
        d["meta"] = e.meta
    d["nass"] = e.nass
    d["vol"] = e.vol
    d["vp"] = e.vp
    return d


def heading_to_dict(h: Heading) -> dict:
    d: dict[str, Any] = {"id": h.id, "from": h.from_id, "nass": h.nass}
    if h.parent:
        d["parent"] = h.parent
    return d


def excerpts_to_dict(result: Excerpts) -> dict:
    return {
        "contractVersion": result.contract_version,
        "createdAt": result.created_at,
        "lastUpdatedAt": result.last_updated_at,
        "excerpts": [excerpt_to_dict(e) for e in result.excerpts],
        "footnotes": [excerpt_to_dict(e) for e in result.footnotes],
        "headings": [heading_to_dict(h) for h in result.headings],
        "options": result.options,
    }


def load_shamela_pages_jsonl(path: str) -> list[ShamelaPage]:
    pages = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            rec = json.loads(line)
            try:
                pages.append(ShamelaPage(
                    id=int(rec["id"]),
                    body=rec["body"],
                    page=rec.get("page"),
                    part=rec.get("part"),
                    footnote=rec.get("footnote"),
                ))
            except KeyError as e:
                raise ValueError(f"{path}:{lineno}: missing field {e}") from e
    return pages


# ─── CLI ─────────────────────────────────────────────────────────────────────

def main():
    ap = argparse.ArgumentParser(description="Segment pages and build the excerpts JSON contract.")
    ap.add_argument("--pages", required=True, help="Pages JSONL file")
    ap.add_argument("--shamela", action="store_true",
                    help="Pages are Shamela records ({id, body, page, part}) with HTML bodies")
    ap.add_argument("--options", default=None, help="Options file (.json or .yaml)")
    ap.add_argument("--preset", default=None, help="Named preset (instead of --options)")
    ap.add_argument("--tokens", default=None, help="YAML file with extra search tokens")
    ap.add_argument("--headings", default=None, help="JSON list of {id, content, page?, parent?}")
    ap.add_argument("--min-words", type=int, default=0, help="Merge segments shorter than this")
    ap.add_argument("--strip-html", action="store_true", help="Strip HTML tags before matching")
    ap.add_argument("--out", required=True, help="Output excerpts JSON path")
    ap.add_argument("--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        opts = resolve_options(args.options, args.preset, args.strip_html)
        tokens = load_token_table(args.tokens) if args.tokens else None
        headings = []
        if args.headings:
            with open(args.headings, encoding="utf-8") as f:
                headings = json.load(f)

        if args.shamela:
            result = segment_shamela_pages_to_excerpts(
                load_shamela_pages_jsonl(args.pages), headings, opts, args.min_words, tokens,
            )
        else:
            result = map_pages_to_excerpts(
                load_pages_jsonl(args.pages), headings, opts, args.min_words, tokens,
            )
    except RuleConfigError as e:
        abort(f"Invalid segmentation options: {e}")
    except (OSError, ValueError, yaml.YAMLError) as e:
        abort(str(e))

    os.makedirs(os.path.dirname(os.path.abspath(args.out)) or ".", exist_ok=True)
    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(excerpts_to_dict(result), f, ensure_ascii=False, indent=2)
        f.write("\n")

    info(f"Excerpts: {len(result.excerpts)}")
    chapters = sum(1 for e in result.excerpts if (e.meta or {}).get("type") == "chapter")
    if chapters:
        info(f"  Chapters: {chapters}")
    info(f"Headings: {len(result.headings)}")
    info(f"\nWrote: {args.out}")


if __name__ == "__main__":
    main()
