#!/usr/bin/env python3
"""Token-based search templates for Arabic text patterns.

Maps human-readable ``{{token}}`` placeholders to regex fragments so that
segmentation rules can be written as, e.g., ``^{{raqms}} {{dash}} `` instead
of spelling out the Arabic-Indic digit and dash classes by hand.

Unknown tokens are left verbatim (braces included). Callers can detect them
afterwards with ``find_unknown_tokens`` instead of failing at expansion time.

Usage:
  python tools/search_tokens.py                      # list the default table
  python tools/search_tokens.py --expand '^{{raqms}} {{dash}} '
  python tools/search_tokens.py --tokens patterns/extra_tokens.yaml --expand ...
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path
from typing import Mapping, Optional

import yaml


# ─── Token table ────────────────────────────────────────────────────────────

TOKEN_PATTERNS: dict[str, str] = {
    # Character classes
    "dash": "[-–—ـ]",                       # hyphen, en-dash, em-dash, tatweel
    "harf": "[أ-ي]",
    "harfs": "[أ-ي]+",
    "raqm": "[٠-٩]",
    "raqms": "[٠-٩]+",
    # Structural markers
    "bab": "باب",
    "kitab": "كتاب",
    "fasl": "(?:فصل:?)",
    "basmalah": "(?:بسم الله|﷽)",
    "title": "<span[^>]*data-type=[\"']title[\"'][^>]*>",
    "tarqim": "[.!?؟؛]",
}

# {{tokenName}}
TOKEN_RE = re.compile(r"\{\{(\w+)\}\}")


# ─── Expansion ──────────────────────────────────────────────────────────────

def contains_tokens(query: str) -> bool:
    """Return True if the query has at least one ``{{token}}`` placeholder."""
    return TOKEN_RE.search(query) is not None


def expand_tokens(query: str, tokens: Optional[Mapping[str, str]] = None) -> str:
    """Expand ``{{token}}`` placeholders into their regex fragments.

    ``tokens`` replaces the default table when given (use ``merge_tokens`` to
    extend the defaults instead). Surrounding literal text is not escaped.

    >>> expand_tokens('، {{raqms}}')
    '، [٠-٩]+'
    """
    table = TOKEN_PATTERNS if tokens is None else tokens

    def replace(m: re.Match) -> str:
        name = m.group(1)
        if name in table:
            return table[name]
        return m.group(0)

    return TOKEN_RE.sub(replace, query)


def find_unknown_tokens(query: str, tokens: Optional[Mapping[str, str]] = None) -> list[str]:
    """List placeholder names in ``query`` that have no table entry, in order."""
    table = TOKEN_PATTERNS if tokens is None else tokens
    unknown = []
    for m in TOKEN_RE.finditer(query):
        name = m.group(1)
        if name not in table and name not in unknown:
            unknown.append(name)
    return unknown


def get_available_tokens(tokens: Optional[Mapping[str, str]] = None) -> list[str]:
    table = TOKEN_PATTERNS if tokens is None else tokens
    return list(table.keys())


def get_token_pattern(name: str, tokens: Optional[Mapping[str, str]] = None) -> Optional[str]:
    table = TOKEN_PATTERNS if tokens is None else tokens
    return table.get(name)


def merge_tokens(extra: Mapping[str, str]) -> dict[str, str]:
    """Return the default table with ``extra`` entries layered on top."""
    merged = dict(TOKEN_PATTERNS)
    merged.update(extra)
    return merged


def load_token_table(path: str | Path) -> dict[str, str]:
    """Load additional tokens from YAML and merge them over the defaults.

    Expected shape::

        tokens:
          hadith: "حديث"
          qala: "(?:قال|وقال)"
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    raw = data.get("tokens", {}) if isinstance(data, dict) else None
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a 'tokens' mapping")

    extra: dict[str, str] = {}
    for name, fragment in raw.items():
        if not re.fullmatch(r"\w+", str(name)):
            raise ValueError(f"{path}: invalid token name {name!r}")
        if not isinstance(fragment, str):
            raise ValueError(f"{path}: token {name!r} must map to a string")
        extra[str(name)] = fragment
    return merge_tokens(extra)


# ─── CLI ─────────────────────────────────────────────────────────────────────

def main():
    ap = argparse.ArgumentParser(description="List or expand segmentation search tokens.")
    ap.add_argument("--tokens", default=None, help="YAML file with extra tokens")
    ap.add_argument("--expand", default=None, help="Template to expand")
    args = ap.parse_args()

    try:
        table = load_token_table(args.tokens) if args.tokens else TOKEN_PATTERNS
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    if args.expand is None:
        width = max(len(name) for name in table)
        for name, fragment in table.items():
            print(f"  {{{{{name}}}}}".ljust(width + 6) + fragment)
        return

    print(expand_tokens(args.expand, table))
    unknown = find_unknown_tokens(args.expand, table)
    if unknown:
        print(f"WARNING: unknown tokens left verbatim: {', '.join(unknown)}", file=sys.stderr)


if __name__ == "__main__":
    main()
