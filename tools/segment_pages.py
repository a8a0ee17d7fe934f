#!/usr/bin/env python3
"""Page segmentation engine.

Takes a sequence of pages (opaque numeric ID + text, possibly HTML) and a
rule set, and re-chunks the concatenated text into segments (chapters,
hadith entries, paragraphs) that remember which page(s) they came from.

Algorithm:
  1. Optionally strip HTML tags from each page, remembering where each
     kept character sat in the original markup.
  2. Flatten: join all pages with a single synthetic "\\n", recording each
     page's [start, end) offsets and the offsets of the synthetic joins.
  3. For every rule: find all matches over the flattened text, drop those
     outside the rule's [min, max] page-ID range, keep first/last/all
     (globally, or per maxSpan page-ID group), and turn each survivor into
     a split offset (match start for split=before, match end for after).
  4. Merge all rules' split offsets: sort, drop duplicates (first wins).
  5. Cut the text between consecutive split offsets, trim trailing
     whitespace, turn synthetic joins back into spaces and resolve the
     from/to page IDs. Each segment carries the capture groups of the match
     that opened it and, when tags were stripped, its original markup.

Working on one flattened stream (not page by page) is what lets a segment
run across a page boundary.

Usage:
  python tools/segment_pages.py \\
    --pages pages.jsonl \\
    --options options.json \\
    --out segments.jsonl \\
    [--preset hadith] [--tokens patterns/extra_tokens.yaml] [--strip-html]

Pages JSONL: one {"id", "content"} object per line. Stage 1
normalized_page records ({"page_number_int", "matn_text"}) are also read.
"""

from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import re
import sys
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional, Union

import regex
import yaml

from search_tokens import load_token_table
from segment_rules import (
    JS_WHITESPACE,
    RuleConfigError,
    SegmentationOptions,
    SplitRule,
    compile_rule,
    load_options,
    load_preset,
    parse_options,
)

logger = logging.getLogger(__name__)


HTML_TAG_RE = re.compile(r"<[^>]*>")
PAGE_JOIN = "\n"


# ─── Data classes ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PageInput:
    id: int
    content: str


@dataclass(frozen=True)
class Segment:
    """One output chunk. ``to_id`` is set only when the chunk crosses pages.

    ``captures`` holds the capture-group values of the match that opened the
    chunk. ``html`` is the chunk's original markup, kept when tags were
    stripped before matching.
    """
    content: str
    from_id: int
    to_id: Optional[int] = None
    meta: Optional[dict] = None
    captures: Optional[list[str]] = None
    html: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"content": self.content, "from": self.from_id}
        if self.to_id is not None:
            d["to"] = self.to_id
        if self.meta is not None:
            d["meta"] = self.meta
        if self.captures is not None:
            d["captures"] = self.captures
        if self.html is not None:
            d["html"] = self.html
        return d


@dataclass(frozen=True)
class PageBoundary:
    start: int
    end: int          # exclusive, does not include the join character
    id: int


@dataclass(frozen=True)
class MatchSpan:
    start: int
    end: int
    groups: tuple[str, ...] = ()   # participating capture groups, in order


@dataclass(frozen=True)
class SplitPoint:
    offset: int
    meta: Optional[dict] = None
    captures: tuple[str, ...] = ()


class PageMap:
    """Offset -> page ID lookup over the flattened content."""

    def __init__(self, boundaries: list[PageBoundary], page_breaks: Iterable[int]):
        self.boundaries = boundaries
        self.page_breaks = sorted(page_breaks)
        self._break_set = frozenset(self.page_breaks)
        self._starts = [b.start for b in boundaries]

    def get_id(self, offset: int) -> int:
        """ID of the page containing ``offset``.

        A synthetic join belongs to the page after it; offsets past the end
        belong to the last page.
        """
        idx = max(bisect_right(self._starts, offset) - 1, 0)
        boundary = self.boundaries[idx]
        if offset >= boundary.end and idx + 1 < len(self.boundaries):
            return self.boundaries[idx + 1].id
        return boundary.id

    def is_page_break(self, offset: int) -> bool:
        return offset in self._break_set

    def breaks_between(self, start: int, end: int) -> list[int]:
        """Synthetic join offsets in [start, end)."""
        return _breaks_in(self.page_breaks, start, end)


def _breaks_in(page_breaks: list[int], start: int, end: int) -> list[int]:
    lo = bisect_left(page_breaks, start)
    hi = bisect_left(page_breaks, end)
    return page_breaks[lo:hi]


def replace_joins(text: str, base: int, joins: Iterable[int]) -> str:
    """Turn the synthetic joins at absolute ``joins`` into spaces (``text`` starts at ``base``)."""
    chars = list(text)
    for offset in joins:
        if chars[offset - base] == PAGE_JOIN:
            chars[offset - base] = " "
    return "".join(chars)


@dataclass(frozen=True)
class MarkupSource:
    """The flattened pages before tag stripping.

    ``after[i]`` is the offset in ``content`` just past stripped character
    ``i``, so any tags sitting between two kept characters fall to the later
    one.
    """
    content: str
    after: list[int]
    page_breaks: list[int]

    def html_between(self, start: int, end: int) -> str:
        """Original markup for stripped offsets [start, end), trimmed on the right."""
        lo = self.after[start - 1] if start > 0 else 0
        hi = self.after[end - 1] if end < len(self.after) else len(self.content)
        html = self.content[lo:hi].rstrip(JS_WHITESPACE)
        return replace_joins(html, lo, _breaks_in(self.page_breaks, lo, lo + len(html)))


@dataclass(frozen=True)
class FlattenedPages:
    content: str
    page_map: PageMap
    markup: Optional[MarkupSource] = None    # set when tags were stripped


# ─── Flattening ─────────────────────────────────────────────────────────────

def strip_html_tags(content: str) -> str:
    return HTML_TAG_RE.sub("", content)


def strip_html_with_offsets(content: str) -> tuple[str, list[int]]:
    """Strip tags; also return, per kept character, the offset just past it in ``content``."""
    kept: list[str] = []
    after: list[int] = []
    pos = 0
    for m in HTML_TAG_RE.finditer(content):
        kept.append(content[pos:m.start()])
        after.extend(range(pos + 1, m.start() + 1))
        pos = m.end()
    kept.append(content[pos:])
    after.extend(range(pos + 1, len(content) + 1))
    return "".join(kept), after


def normalize_line_endings(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\r", "\n")


def flatten_pages(pages: list[PageInput], strip_html: bool = False) -> FlattenedPages:
    """Concatenate page contents with synthetic single-newline joins.

    With ``strip_html`` the tags are removed from the text that rules match
    against, and the original markup is kept alongside in ``markup``.
    """
    parts: list[str] = []
    boundaries: list[PageBoundary] = []
    page_breaks: list[int] = []
    offset = 0

    raw_parts: list[str] = []
    raw_after: list[int] = []
    raw_breaks: list[int] = []
    raw_offset = 0

    for i, page in enumerate(pages):
        if i > 0:
            page_breaks.append(offset)
            parts.append(PAGE_JOIN)
            offset += len(PAGE_JOIN)
            if strip_html:
                raw_breaks.append(raw_offset)
                raw_parts.append(PAGE_JOIN)
                raw_offset += len(PAGE_JOIN)
                raw_after.append(raw_offset)

        text = normalize_line_endings(page.content)
        if strip_html:
            raw = text
            text, after = strip_html_with_offsets(raw)
            raw_after.extend(raw_offset + a for a in after)
            raw_parts.append(raw)
            raw_offset += len(raw)

        boundaries.append(PageBoundary(start=offset, end=offset + len(text), id=page.id))
        parts.append(text)
        offset += len(text)

    markup = MarkupSource("".join(raw_parts), raw_after, raw_breaks) if strip_html else None
    return FlattenedPages(
        content="".join(parts),
        page_map=PageMap(boundaries, page_breaks),
        markup=markup,
    )


# ─── Matching and filtering ─────────────────────────────────────────────────

def find_matches(pattern: regex.Pattern, content: str) -> list[MatchSpan]:
    """All non-overlapping matches, scanning left to right.

    After a zero-length match the scan resumes one character further on.
    """
    matches: list[MatchSpan] = []
    pos = 0
    while pos <= len(content):
        m = pattern.search(content, pos)
        if m is None:
            break
        groups = tuple(g for g in m.groups() if g is not None)
        matches.append(MatchSpan(m.start(), m.end(), groups))
        pos = m.end() + 1 if m.end() == m.start() else m.end()
    return matches


def apply_occurrence(matches: list[MatchSpan], occurrence: str) -> list[MatchSpan]:
    if not matches:
        return []
    if occurrence == "first":
        return [matches[0]]
    if occurrence == "last":
        return [matches[-1]]
    return list(matches)


def filter_matches(matches: list[MatchSpan], rule: SplitRule, page_map: PageMap) -> list[MatchSpan]:
    """Apply the rule's page-ID range, then its occurrence policy."""
    in_range = [m for m in matches if rule.admits(page_map.get_id(m.start))]

    if not rule.grouped:
        return apply_occurrence(in_range, rule.effective_occurrence)

    groups: dict[int, list[MatchSpan]] = {}
    for m in in_range:
        key = page_map.get_id(m.start) // rule.max_span
        groups.setdefault(key, []).append(m)

    kept: list[MatchSpan] = []
    for group in groups.values():
        kept.extend(apply_occurrence(group, rule.effective_occurrence))
    return kept


def rule_split_points(
    rule: SplitRule,
    pattern: regex.Pattern,
    content: str,
    page_map: PageMap,
) -> list[SplitPoint]:
    matches = find_matches(pattern, content)
    kept = filter_matches(matches, rule, page_map)
    logger.debug("Rule /%s/: %d match(es), %d kept", pattern.pattern, len(matches), len(kept))
    return [
        SplitPoint(m.start if rule.split == "before" else m.end, rule.meta, m.groups)
        for m in kept
    ]


def merge_split_points(points: list[SplitPoint]) -> list[SplitPoint]:
    """Sort by offset and drop same-offset duplicates, keeping the first seen."""
    merged: list[SplitPoint] = []
    for point in sorted(points, key=lambda p: p.offset):
        if merged and merged[-1].offset == point.offset:
            continue
        merged.append(point)
    return merged


# ─── Segment construction ───────────────────────────────────────────────────

def materialize_segment(
    content: str,
    start: int,
    end: int,
    page_map: PageMap,
    point: Optional[SplitPoint] = None,
    markup: Optional[MarkupSource] = None,
) -> Optional[Segment]:
    """Turn content[start:end] into a Segment, or None if it is blank.

    Only trailing whitespace is trimmed; leading whitespace is kept. ``point``
    is the split point that opened the segment (None for leading text).
    """
    text = content[start:end].rstrip(JS_WHITESPACE)
    if not text:
        return None
    text = replace_joins(text, start, page_map.breaks_between(start, start + len(text)))

    from_id = page_map.get_id(start)
    to_id = page_map.get_id(start + len(text) - 1)
    return Segment(
        content=text,
        from_id=from_id,
        to_id=to_id if to_id != from_id else None,
        meta=copy.deepcopy(point.meta) if point and point.meta is not None else None,
        captures=list(point.captures) if point and point.captures else None,
        html=markup.html_between(start, end) if markup is not None else None,
    )


def build_segments(
    flat: FlattenedPages,
    points: list[SplitPoint],
    rules: list[SplitRule],
) -> list[Segment]:
    content, page_map = flat.content, flat.page_map
    first_id = page_map.get_id(0)
    leading_allowed = any(rule.admits(first_id) for rule in rules)

    spans: list[tuple[int, int, Optional[SplitPoint]]] = []
    if not points:
        if leading_allowed:
            spans.append((0, len(content), None))
    else:
        if points[0].offset > 0 and leading_allowed:
            spans.append((0, points[0].offset, None))
        for i, point in enumerate(points):
            end = points[i + 1].offset if i + 1 < len(points) else len(content)
            spans.append((point.offset, end, point))

    segments = []
    for start, end, point in spans:
        segment = materialize_segment(content, start, end, page_map, point, flat.markup)
        if segment is not None:
            segments.append(segment)
    return segments


# ─── Entry point ─────────────────────────────────────────────────────────────

PagesArg = Iterable[Union[PageInput, Mapping[str, Any]]]
OptionsArg = Union[SegmentationOptions, Mapping[str, Any], None]


def coerce_pages(pages: PagesArg) -> list[PageInput]:
    out = []
    for p in pages:
        if isinstance(p, PageInput):
            out.append(p)
        else:
            out.append(PageInput(id=p["id"], content=p["content"]))
    return out


def coerce_options(options: OptionsArg) -> SegmentationOptions:
    if isinstance(options, SegmentationOptions):
        return options
    return parse_options(options)


def segment_pages(
    pages: PagesArg,
    options: OptionsArg,
    tokens: Optional[Mapping[str, str]] = None,
) -> list[Segment]:
    """Segment ``pages`` according to ``options``.

    ``pages`` may be PageInput objects or {"id", "content"} dicts; ``options``
    may be SegmentationOptions or the wire-format dict. Invalid rules raise
    RuleConfigError. No pages or no rules give an empty list.
    """
    opts = coerce_options(options)
    page_list = coerce_pages(pages)
    compiled = [compile_rule(rule, tokens) for rule in opts.rules]
    if not page_list or not compiled:
        return []

    flat = flatten_pages(page_list, strip_html=opts.strip_html)

    points: list[SplitPoint] = []
    for rule, pattern in zip(opts.rules, compiled):
        points.extend(rule_split_points(rule, pattern, flat.content, flat.page_map))
    merged = merge_split_points(points)
    logger.debug("%d split point(s) from %d rule(s), %d after dedup",
                 len(points), len(opts.rules), len(merged))

    return build_segments(flat, merged, opts.rules)


# ─── I/O ─────────────────────────────────────────────────────────────────────

def page_from_record(rec: Mapping[str, Any]) -> PageInput:
    """Read a page from a JSONL record ({"id","content"} or a normalized_page)."""
    if "id" in rec and "content" in rec:
        return PageInput(id=int(rec["id"]), content=rec["content"])
    if "page_number_int" in rec and "matn_text" in rec:
        return PageInput(id=int(rec["page_number_int"]), content=rec["matn_text"])
    raise ValueError(f"Unrecognized page record (keys: {sorted(rec)})")


def load_pages_jsonl(path: str) -> list[PageInput]:
    pages = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                pages.append(page_from_record(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as e:
                raise ValueError(f"{path}:{lineno}: {e}") from e
    return pages


def write_segments_jsonl(segments: list[Segment], path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for s in segments:
            f.write(json.dumps(s.to_dict(), ensure_ascii=False) + "\n")


def abort(msg):
    """Print error and exit."""
    print(f"ERROR: {msg}", file=sys.stderr)
    sys.exit(1)


def warn(msg):
    print(f"WARNING: {msg}", file=sys.stderr)


def info(msg):
    print(msg)


def resolve_options(options_path: Optional[str], preset: Optional[str], strip_html: bool) -> SegmentationOptions:
    """Options from a file or preset, with --strip-html layered on top."""
    if options_path:
        opts = load_options(options_path)
    elif preset:
        opts = load_preset(preset)
    else:
        raise RuleConfigError("Either --options or --preset is required")
    if strip_html and not opts.strip_html:
        opts = replace(opts, strip_html=True)
    return opts


# ─── CLI ─────────────────────────────────────────────────────────────────────

def main():
    ap = argparse.ArgumentParser(description="Segment pages into chunks using split rules.")
    ap.add_argument("--pages", required=True, help="Pages JSONL file")
    ap.add_argument("--options", default=None, help="Options file (.json or .yaml)")
    ap.add_argument("--preset", default=None, help="Named preset (instead of --options)")
    ap.add_argument("--tokens", default=None, help="YAML file with extra search tokens")
    ap.add_argument("--strip-html", action="store_true", help="Strip HTML tags before matching")
    ap.add_argument("--out", required=True, help="Output segments JSONL path")
    ap.add_argument("--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        opts = resolve_options(args.options, args.preset, args.strip_html)
        tokens = load_token_table(args.tokens) if args.tokens else None
        pages = load_pages_jsonl(args.pages)
        segments = segment_pages(pages, opts, tokens)
    except RuleConfigError as e:
        abort(f"Invalid segmentation options: {e}")
    except (OSError, ValueError, yaml.YAMLError) as e:
        abort(str(e))

    if not opts.rules:
        warn("No rules configured; nothing to segment.")

    write_segments_jsonl(segments, args.out)

    spanning = sum(1 for s in segments if s.to_id is not None)
    info(f"Pages: {len(pages)}")
    info(f"Rules: {len(opts.rules)}")
    info(f"Segments: {len(segments)}")
    if spanning:
        info(f"  Spanning pages: {spanning}")
    info(f"\nWrote: {args.out}")


if __name__ == "__main__":
    main()
