#!/usr/bin/env python3
"""
Tests for the split-rule model and compiler (tools/segment_rules.py)

Run: python -m pytest tests/test_segment_rules.py -q
"""

import json
import sys
from pathlib import Path

import jsonschema
import pytest
import regex

# Ensure tools/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "tools"))

from search_tokens import TOKEN_PATTERNS
from segment_rules import (
    JS_WHITESPACE,
    LineEndsWith,
    LineStartsWith,
    OPTIONS_SCHEMA,
    RegexPattern,
    RuleConfigError,
    SegmentationOptions,
    SplitRule,
    TemplatePattern,
    compile_rule,
    list_presets,
    load_options,
    load_preset,
    options_to_dict,
    parse_options,
    parse_rule,
    rule_to_dict,
    translate_pattern,
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseRule:
    def test_regex_shape(self):
        rule = parse_rule({"regex": "^[٠-٩]+ - ", "split": "before"})
        assert rule.pattern == RegexPattern("^[٠-٩]+ - ")
        assert rule.split == "before"
        assert rule.effective_occurrence == "all"
        assert not rule.grouped

    def test_template_shape(self):
        rule = parse_rule({"template": "^{{raqms}}", "split": "after"})
        assert isinstance(rule.pattern, TemplatePattern)

    def test_line_starts_with_shape(self):
        rule = parse_rule({"lineStartsWith": ["{{bab}}", "فصل"], "split": "before"})
        assert rule.pattern == LineStartsWith(("{{bab}}", "فصل"))

    def test_line_ends_with_shape(self):
        rule = parse_rule({"lineEndsWith": ["\\."], "split": "after"})
        assert rule.pattern == LineEndsWith(("\\.",))

    def test_all_fields(self):
        rule = parse_rule({
            "regex": "x", "split": "after", "occurrence": "last",
            "maxSpan": 1, "min": 5, "max": 10, "meta": {"type": "chapter"},
        })
        assert rule.occurrence == "last"
        assert rule.max_span == 1 and rule.grouped
        assert (rule.min_id, rule.max_id) == (5, 10)
        assert rule.meta == {"type": "chapter"}

    def test_max_span_zero_is_ungrouped(self):
        assert not parse_rule({"regex": "x", "split": "before", "maxSpan": 0}).grouped

    def test_ambiguous_pattern_rejected(self):
        with pytest.raises(RuleConfigError, match="ambiguous"):
            parse_rule({"regex": "x", "lineStartsWith": ["y"], "split": "before"})

    def test_missing_pattern_rejected(self):
        with pytest.raises(RuleConfigError, match="needs one of"):
            parse_rule({"split": "before"})

    def test_missing_split_rejected(self):
        with pytest.raises(RuleConfigError):
            parse_rule({"regex": "x"})

    def test_bad_split_rejected(self):
        with pytest.raises(RuleConfigError):
            parse_rule({"regex": "x", "split": "at"})

    def test_bad_occurrence_rejected(self):
        with pytest.raises(RuleConfigError):
            parse_rule({"regex": "x", "split": "before", "occurrence": "middle"})

    def test_negative_max_span_is_ungrouped(self):
        rule = parse_rule({"regex": "x", "split": "before", "maxSpan": -1})
        assert rule.max_span == -1
        assert not rule.grouped

    def test_unknown_key_rejected(self):
        with pytest.raises(RuleConfigError):
            parse_rule({"regex": "x", "split": "before", "fuzzy": True})

    def test_empty_alternatives_rejected(self):
        with pytest.raises(RuleConfigError):
            parse_rule({"lineStartsWith": [], "split": "before"})

    def test_error_names_rule_index(self):
        with pytest.raises(RuleConfigError, match="rules/1"):
            parse_options({"rules": [
                {"regex": "x", "split": "before"},
                {"split": "before"},
            ]})


class TestRuleBounds:
    def test_open_bounds(self):
        rule = SplitRule(RegexPattern("x"), "before")
        assert rule.admits(-5) and rule.admits(10**9)

    def test_inclusive_bounds(self):
        rule = SplitRule(RegexPattern("x"), "before", min_id=5, max_id=10)
        assert not rule.admits(4)
        assert rule.admits(5)
        assert rule.admits(10)
        assert not rule.admits(11)


class TestParseOptions:
    def test_none_and_empty(self):
        assert parse_options(None) == SegmentationOptions()
        assert parse_options({}).rules == []

    def test_strip_html(self):
        opts = parse_options({"rules": [], "stripHtml": True})
        assert opts.strip_html

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(RuleConfigError):
            parse_options({"slices": []})

    def test_round_trip(self):
        data = {
            "rules": [
                {"lineStartsWith": ["{{bab}} "], "split": "before", "meta": {"type": "chapter"}},
                {"template": "{{tarqim}}\\s*", "split": "after", "occurrence": "last", "maxSpan": 1},
                {"regex": "^x", "split": "before", "min": 2, "max": 9},
                {"lineEndsWith": ["\\."], "split": "after", "occurrence": "all"},
            ],
            "stripHtml": True,
        }
        assert options_to_dict(parse_options(data)) == data

    def test_shipped_schema_is_valid_draft7(self):
        jsonschema.Draft7Validator.check_schema(OPTIONS_SCHEMA)

    def test_rule_to_dict_omits_absent_fields(self):
        assert rule_to_dict(SplitRule(RegexPattern("x"), "before")) == {"regex": "x", "split": "before"}


class TestLoadOptions:
    OPTIONS = {"rules": [{"regex": "^[٠-٩]+ - ", "split": "before"}]}

    def test_json(self, tmp_path):
        path = tmp_path / "opts.json"
        path.write_text(json.dumps(self.OPTIONS, ensure_ascii=False), encoding="utf-8")
        opts = load_options(path)
        assert opts.rules[0].pattern == RegexPattern("^[٠-٩]+ - ")

    def test_yaml(self, tmp_path):
        path = tmp_path / "opts.yaml"
        path.write_text(
            "stripHtml: true\nrules:\n  - lineStartsWith: ['{{kitab}}']\n    split: before\n",
            encoding="utf-8",
        )
        opts = load_options(path)
        assert opts.strip_html
        assert opts.rules[0].pattern == LineStartsWith(("{{kitab}}",))

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "opts.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            load_options(path)


class TestPresets:
    def test_list(self):
        names = list_presets()
        assert {"hadith", "fiqh", "general"} <= set(names)

    def test_every_preset_compiles(self):
        for name in list_presets():
            opts = load_preset(name)
            assert opts.rules
            for rule in opts.rules:
                compile_rule(rule)

    def test_hadith_preset(self):
        opts = load_preset("hadith")
        assert len(opts.rules) == 5
        assert opts.rules[0].effective_occurrence == "last"
        assert opts.rules[0].max_span == 1

    def test_unknown_preset(self):
        with pytest.raises(RuleConfigError, match="Unknown preset"):
            load_preset("poetry")


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

class TestCompileRule:
    def test_regex_not_expanded(self):
        compiled = compile_rule(SplitRule(RegexPattern("{{raqm}}"), "before"))
        assert compiled.pattern == "{{raqm}}"

    def test_template_expanded(self):
        compiled = compile_rule(SplitRule(TemplatePattern("^{{raqms}}"), "before"))
        assert compiled.pattern == "^" + TOKEN_PATTERNS["raqms"]

    def test_line_starts_with(self):
        rule = SplitRule(LineStartsWith(("باب", "{{raqms}}")), "before")
        assert compile_rule(rule).pattern == "^(?:باب|" + TOKEN_PATTERNS["raqms"] + ")"

    def test_line_ends_with(self):
        rule = SplitRule(LineEndsWith(("\\.", "{{tarqim}}")), "after")
        assert compile_rule(rule).pattern == "(?:\\.|" + TOKEN_PATTERNS["tarqim"] + ")$"

    def test_multiline_flag(self):
        compiled = compile_rule(SplitRule(LineStartsWith(("ب",)), "before"))
        assert compiled.flags & regex.MULTILINE
        assert [m.start() for m in compiled.finditer("أ\nب\nب")] == [2, 4]

    def test_custom_tokens(self):
        rule = SplitRule(TemplatePattern("{{qala}}"), "before")
        assert compile_rule(rule, {"qala": "قال"}).pattern == "قال"

    def test_invalid_regex_raises(self):
        with pytest.raises(RuleConfigError) as exc_info:
            compile_rule(SplitRule(RegexPattern("(["), "before"))
        assert isinstance(exc_info.value.__cause__, regex.error)

    def test_invalid_template_expansion_raises(self):
        with pytest.raises(RuleConfigError):
            compile_rule(SplitRule(TemplatePattern("{{raqm}}("), "before"))


class TestEditorDialect:
    """Patterns authored in the editor (JavaScript regex, unicode mode)."""

    @staticmethod
    def compiled(source):
        return compile_rule(SplitRule(RegexPattern(source), "before"))

    def test_unicode_property_escape(self):
        compiled = self.compiled("^\\p{Script=Arabic}")
        assert [m.start() for m in compiled.finditer("أ\nb\nب")] == [0, 4]

    def test_named_group(self):
        compiled = self.compiled("^(?<num>[٠-٩]+) - ")
        assert compiled.groupindex == {"num": 1}
        assert compiled.match("١٢ - نص").group("num") == "١٢"

    def test_named_backreference(self):
        compiled = self.compiled("(?<q>[أب])\\k<q>")
        assert compiled.fullmatch("أأ")
        assert not compiled.fullmatch("أب")

    def test_digit_class_is_ascii_only(self):
        compiled = self.compiled("^\\d+")
        assert compiled.match("12")
        assert not compiled.match("١٢")

    def test_word_class_is_ascii_only(self):
        assert not self.compiled("\\w").search("باب")

    def test_whitespace_class_is_unicode(self):
        compiled = self.compiled("^x\\s$")
        for ws in (" ", "\t", chr(0xA0), chr(0x3000), chr(0xFEFF)):
            assert compiled.match("x" + ws), hex(ord(ws))
        assert not compiled.match("x" + chr(0x85))

    def test_non_whitespace_class(self):
        compiled = self.compiled("^\\S+")
        assert compiled.match("ab" + chr(0xA0) + "c").group() == "ab"

    def test_dot_excludes_line_terminators(self):
        compiled = self.compiled("a.b")
        assert compiled.search("a b")
        assert not compiled.search("a" + chr(0x2028) + "b")
        assert not compiled.search("a\rb")

    def test_code_point_escape(self):
        assert self.compiled("^\\u{628}").match("ب")

    def test_escapes_inside_class(self):
        assert translate_pattern("[^\\s.]") == "[^" + JS_WHITESPACE + ".]"
        assert translate_pattern("\\.") == "\\."
        assert translate_pattern("\\\\s") == "\\\\s"
