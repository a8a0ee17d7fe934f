#!/usr/bin/env python3
"""Split-rule model, wire-format parsing and rule compilation.

A segmentation configuration is a JSON (or YAML) object:

    {
      "stripHtml": true,
      "rules": [
        {"lineStartsWith": ["{{bab}} "], "split": "before", "meta": {"type": "chapter"}},
        {"template": "{{tarqim}}\\\\s*", "split": "after", "occurrence": "last", "maxSpan": 1}
      ]
    }

Each rule carries exactly one pattern field (regex | template |
lineStartsWith | lineEndsWith). On load the pattern field becomes one of the
pattern classes below, so the rest of the engine never sees the
optional-fields shape. Rules with zero or several pattern fields are
rejected with RuleConfigError.

Usage:
  python tools/segment_rules.py --options options.json      # validate + show regexes
  python tools/segment_rules.py --preset hadith
  python tools/segment_rules.py --list-presets
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import jsonschema
import regex
import yaml

from search_tokens import expand_tokens

logger = logging.getLogger(__name__)


# ─── Constants ──────────────────────────────────────────────────────────────

REPO_ROOT = Path(__file__).resolve().parent.parent
PRESETS_PATH = REPO_ROOT / "patterns" / "segmentation_presets.yaml"

DEFAULT_OCCURRENCE = "all"

PATTERN_FIELDS = ("regex", "template", "lineStartsWith", "lineEndsWith")

SCHEMA_PATH = REPO_ROOT / "schemas" / "segmentation_options_schema.json"
with open(SCHEMA_PATH, "r", encoding="utf-8") as _f:
    OPTIONS_SCHEMA: dict = json.load(_f)
# A single rule, validated with the options schema's definitions in scope
RULE_SCHEMA: dict = {
    "$schema": OPTIONS_SCHEMA["$schema"],
    "$ref": "#/definitions/rule",
    "definitions": OPTIONS_SCHEMA["definitions"],
}


class RuleConfigError(ValueError):
    """A segmentation configuration that cannot be turned into rules."""


# ─── Pattern shapes ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RegexPattern:
    """Raw regex, used as-is (no token expansion)."""
    pattern: str

    def to_regex(self, tokens: Optional[Mapping[str, str]] = None) -> str:
        return self.pattern


@dataclass(frozen=True)
class TemplatePattern:
    """Pattern with {{token}} placeholders."""
    template: str

    def to_regex(self, tokens: Optional[Mapping[str, str]] = None) -> str:
        return expand_tokens(self.template, tokens)


@dataclass(frozen=True)
class LineStartsWith:
    """Any of the alternatives, anchored at a line start."""
    alternatives: tuple[str, ...]

    def to_regex(self, tokens: Optional[Mapping[str, str]] = None) -> str:
        return expand_tokens("^(?:" + "|".join(self.alternatives) + ")", tokens)


@dataclass(frozen=True)
class LineEndsWith:
    """Any of the alternatives, anchored at a line end."""
    alternatives: tuple[str, ...]

    def to_regex(self, tokens: Optional[Mapping[str, str]] = None) -> str:
        return expand_tokens("(?:" + "|".join(self.alternatives) + ")$", tokens)


RulePattern = Union[RegexPattern, TemplatePattern, LineStartsWith, LineEndsWith]


# ─── Rules and options ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class SplitRule:
    pattern: RulePattern
    split: str                              # before | after
    occurrence: Optional[str] = None        # first | last | all (None = all)
    max_span: Optional[int] = None          # group width in page-ID units
    min_id: Optional[int] = None            # inclusive
    max_id: Optional[int] = None            # inclusive
    meta: Optional[dict] = None

    @property
    def effective_occurrence(self) -> str:
        return self.occurrence or DEFAULT_OCCURRENCE

    @property
    def grouped(self) -> bool:
        return self.max_span is not None and self.max_span > 0

    def admits(self, page_id: int) -> bool:
        """True if ``page_id`` lies within the rule's [min, max] bounds."""
        if self.min_id is not None and page_id < self.min_id:
            return False
        if self.max_id is not None and page_id > self.max_id:
            return False
        return True


@dataclass(frozen=True)
class SegmentationOptions:
    rules: list[SplitRule] = field(default_factory=list)
    strip_html: bool = False


# ─── Wire format ─────────────────────────────────────────────────────────────

def _schema_error_message(e: jsonschema.ValidationError) -> str:
    location = "/".join(str(p) for p in e.absolute_path)
    return f"{location}: {e.message}" if location else e.message


def _pattern_from_dict(data: Mapping[str, Any], label: str) -> RulePattern:
    present = [name for name in PATTERN_FIELDS if name in data]
    if not present:
        raise RuleConfigError(
            f"{label}: needs one of {', '.join(PATTERN_FIELDS)}"
        )
    if len(present) > 1:
        raise RuleConfigError(
            f"{label}: ambiguous pattern, found {', '.join(present)} (use exactly one)"
        )

    name = present[0]
    if name == "regex":
        return RegexPattern(data["regex"])
    if name == "template":
        return TemplatePattern(data["template"])
    if name == "lineStartsWith":
        return LineStartsWith(tuple(data["lineStartsWith"]))
    return LineEndsWith(tuple(data["lineEndsWith"]))


def parse_rule(data: Mapping[str, Any], index: Optional[int] = None) -> SplitRule:
    """Convert one wire-format rule dict into a SplitRule."""
    label = f"rules/{index}" if index is not None else "rule"
    try:
        jsonschema.validate(data, RULE_SCHEMA)
    except jsonschema.ValidationError as e:
        raise RuleConfigError(f"{label}: {_schema_error_message(e)}") from e

    return SplitRule(
        pattern=_pattern_from_dict(data, label),
        split=data["split"],
        occurrence=data.get("occurrence"),
        max_span=data.get("maxSpan"),
        min_id=data.get("min"),
        max_id=data.get("max"),
        meta=dict(data["meta"]) if "meta" in data else None,
    )


def parse_options(data: Optional[Mapping[str, Any]]) -> SegmentationOptions:
    """Validate and convert a wire-format options dict.

    ``None`` or a dict without ``rules`` yields empty options; the engine
    then produces no segments.
    """
    if data is None:
        return SegmentationOptions()
    try:
        jsonschema.validate(data, OPTIONS_SCHEMA)
    except jsonschema.ValidationError as e:
        raise RuleConfigError(_schema_error_message(e)) from e

    rules = [parse_rule(r, i) for i, r in enumerate(data.get("rules", []))]
    return SegmentationOptions(rules=rules, strip_html=bool(data.get("stripHtml", False)))


def rule_to_dict(rule: SplitRule) -> dict:
    """Serialize a SplitRule back to the wire shape (absent fields stay absent)."""
    p = rule.pattern
    if isinstance(p, RegexPattern):
        d: dict[str, Any] = {"regex": p.pattern}
    elif isinstance(p, TemplatePattern):
        d = {"template": p.template}
    elif isinstance(p, LineStartsWith):
        d = {"lineStartsWith": list(p.alternatives)}
    else:
        d = {"lineEndsWith": list(p.alternatives)}

    d["split"] = rule.split
    if rule.occurrence is not None:
        d["occurrence"] = rule.occurrence
    if rule.max_span is not None:
        d["maxSpan"] = rule.max_span
    if rule.min_id is not None:
        d["min"] = rule.min_id
    if rule.max_id is not None:
        d["max"] = rule.max_id
    if rule.meta is not None:
        d["meta"] = dict(rule.meta)
    return d


def options_to_dict(options: SegmentationOptions) -> dict:
    d: dict[str, Any] = {"rules": [rule_to_dict(r) for r in options.rules]}
    if options.strip_html:
        d["stripHtml"] = True
    return d


def load_options(path: str | Path) -> SegmentationOptions:
    """Load options from a .json or .yaml/.yml file."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    logger.debug("Loaded options from %s", path)
    return parse_options(data)


# ─── Presets ─────────────────────────────────────────────────────────────────

def _load_presets(path: str | Path = PRESETS_PATH) -> dict:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data.get("presets", {})


def list_presets(path: str | Path = PRESETS_PATH) -> dict[str, str]:
    """Map preset name -> description."""
    return {name: p.get("description", "") for name, p in _load_presets(path).items()}


def load_preset(name: str, path: str | Path = PRESETS_PATH) -> SegmentationOptions:
    presets = _load_presets(path)
    if name not in presets:
        raise RuleConfigError(
            f"Unknown preset '{name}'. Available: {', '.join(sorted(presets))}"
        )
    return parse_options(presets[name].get("options"))


# ─── Compilation ─────────────────────────────────────────────────────────────

# Rule patterns are written in the editor's dialect (JavaScript, ``u`` flag).
# Whitespace as its \s and trimEnd() see it:
JS_WHITESPACE = "".join(chr(c) for c in (
    0x09, 0x0A, 0x0B, 0x0C, 0x0D, 0x20, 0xA0, 0x1680, *range(0x2000, 0x200B),
    0x2028, 0x2029, 0x202F, 0x205F, 0x3000, 0xFEFF,
))
# Characters its "." does not match
JS_LINE_TERMINATORS = "\n\r" + chr(0x2028) + chr(0x2029)
# \d, \w and \b are ASCII-only there; \s and "." are rewritten by translate_pattern
PATTERN_FLAGS = regex.MULTILINE | regex.ASCII

_CODE_POINT_ESCAPE_RE = regex.compile(r"u\{([0-9A-Fa-f]+)\}")
_NAMED_BACKREF_RE = regex.compile(r"k<(\w+)>")


def translate_pattern(source: str) -> str:
    """Rewrite the parts of the editor's regex dialect that ``regex`` reads differently.

    ``\\s`` / ``\\S`` and ``.`` get the editor's whitespace and line-terminator
    sets, ``\\u{...}`` code points become literals and ``\\k<name>`` becomes
    ``(?P=name)``. ``\\p{...}`` properties and ``(?<name>...)`` groups are
    understood by ``regex`` as written.
    """
    out: list[str] = []
    in_class = False
    i = 0
    while i < len(source):
        c = source[i]
        if c == "\\" and i + 1 < len(source):
            code_point = _CODE_POINT_ESCAPE_RE.match(source, i + 1)
            backref = _NAMED_BACKREF_RE.match(source, i + 1)
            if code_point:
                out.append(regex.escape(chr(int(code_point.group(1), 16))))
                i = code_point.end()
                continue
            if backref and not in_class:
                out.append(f"(?P={backref.group(1)})")
                i = backref.end()
                continue

            nxt = source[i + 1]
            if nxt == "s":
                out.append(JS_WHITESPACE if in_class else f"[{JS_WHITESPACE}]")
            elif nxt == "S" and not in_class:
                out.append(f"[^{JS_WHITESPACE}]")
            else:
                out.append(source[i:i + 2])
            i += 2
            continue

        if c == "[" and not in_class:
            in_class = True
        elif c == "]" and in_class:
            in_class = False
        elif c == "." and not in_class:
            c = f"[^{JS_LINE_TERMINATORS}]"
        out.append(c)
        i += 1
    return "".join(out)


def compile_rule(rule: SplitRule, tokens: Optional[Mapping[str, str]] = None) -> regex.Pattern:
    """Compile a rule into a multiline pattern.

    Invalid patterns (including templates whose expansion is not valid regex)
    raise RuleConfigError.
    """
    source = rule.pattern.to_regex(tokens)
    try:
        return regex.compile(translate_pattern(source), PATTERN_FLAGS)
    except (regex.error, ValueError) as e:
        raise RuleConfigError(f"Invalid pattern {source!r}: {e}") from e


# ─── CLI ─────────────────────────────────────────────────────────────────────

def main():
    ap = argparse.ArgumentParser(description="Validate segmentation options and show compiled patterns.")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--options", help="Options file (.json or .yaml)")
    src.add_argument("--preset", help="Named preset from patterns/segmentation_presets.yaml")
    src.add_argument("--list-presets", action="store_true", help="List available presets")
    args = ap.parse_args()

    if args.list_presets:
        for name, description in list_presets().items():
            print(f"  {name}: {description}")
        return

    try:
        options = load_options(args.options) if args.options else load_preset(args.preset)
        compiled = [compile_rule(r) for r in options.rules]
    except (OSError, json.JSONDecodeError, yaml.YAMLError, RuleConfigError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"{len(options.rules)} rule(s), stripHtml={options.strip_html}")
    for i, (rule, pattern) in enumerate(zip(options.rules, compiled)):
        meta = f" meta={json.dumps(rule.meta, ensure_ascii=False)}" if rule.meta else ""
        print(f"  [{i}] split={rule.split} occurrence={rule.effective_occurrence}{meta}")
        print(f"      /{pattern.pattern}/")


if __name__ == "__main__":
    main()
