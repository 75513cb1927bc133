"""Tests for extracting and validating model code output."""

import json

import pytest
from pydantic import ValidationError

from forgeloop.core.models import FileAction
from forgeloop.core.output_parser import (
    CodeOutput,
    EditPayload,
    extract_json_object,
    parse_code_output,
)

pytestmark = pytest.mark.v2


def output_json(files, **extra):
    payload = {"description": "Fix greeting", "risk": 2, "rollback": "revert", "files": files}
    payload.update(extra)
    return json.dumps(payload)


class TestExtractJsonObject:
    def test_object_inside_prose_and_fences(self):
        text = 'Here you go:\n```json\n{"a": {"b": 1}}\n```\nDone.'
        assert extract_json_object(text) == {"a": {"b": 1}}

    def test_braces_inside_strings(self):
        text = '{"code": "function f() { return \\"}\\"; }"}'
        assert extract_json_object(text) == {"code": 'function f() { return "}"; }'}

    def test_skips_undecodable_candidates(self):
        text = "use {placeholder} then {\"ok\": true}"
        assert extract_json_object(text) == {"ok": True}

    def test_none_without_object(self):
        assert extract_json_object("no json here") is None
        assert extract_json_object("{ unterminated") is None


class TestEditPayload:
    def test_end_line_alias(self):
        edit = EditPayload.model_validate({"replace": "x", "line": 2, "endLine": 4}).to_edit()
        assert (edit.line, edit.end_line) == (2, 4)

    def test_usable_requires_search_or_range(self):
        assert EditPayload(replace="x", search="a").is_usable
        assert not EditPayload(replace="x").is_usable


class TestParseCodeOutput:
    def test_valid_modify_and_create(self):
        text = output_json([
            {"path": "src/a.ts", "action": "modify", "edits": [{"search": "a", "replace": "b"}]},
            {"path": "src/b.ts", "action": "create", "content": "export {};\n"},
        ])
        output = parse_code_output(f"Sure!\n{text}")

        assert output is not None
        assert output.description == "Fix greeting"
        assert [f.path for f in output.files] == ["src/a.ts", "src/b.ts"]
        assert output.files[0].edits[0].search == "a"
        assert output.files[1].action == FileAction.CREATE

    def test_invalid_entries_are_skipped(self):
        text = output_json([
            {"path": "src/a.ts", "action": "create"},
            {"path": "src/b.ts", "action": "delete", "content": "x"},
            {"path": "src/c.ts", "action": "modify", "content": "full"},
        ])
        output = parse_code_output(text)

        assert [f.path for f in output.files] == ["src/c.ts"]

    def test_unusable_edits_dropped_then_entry_rejected(self):
        text = output_json([
            {"path": "src/a.ts", "action": "modify", "edits": [{"search": "", "replace": "x"}]},
            {"path": "src/b.ts", "action": "modify", "edits": [
                {"search": "", "replace": "x"},
                {"search": "keep", "replace": "y"},
            ]},
        ])
        output = parse_code_output(text)

        assert [f.path for f in output.files] == ["src/b.ts"]
        assert len(output.files[0].edits) == 1

    def test_all_entries_invalid_is_unusable(self):
        assert parse_code_output(output_json([{"path": "", "action": "create", "content": "x"}])) is None

    def test_empty_files_is_valid(self):
        output = parse_code_output(output_json([]))
        assert output is not None
        assert output.files == []

    def test_description_truncated(self):
        output = parse_code_output(output_json([], description="d" * 500))
        assert len(output.description) == 200

    @pytest.mark.parametrize("risk", [0, 6])
    def test_risk_out_of_range(self, risk):
        assert parse_code_output(output_json([], risk=risk)) is None

    def test_no_json(self):
        assert parse_code_output("I could not do it.") is None
        assert parse_code_output("") is None

    def test_code_output_requires_list(self):
        with pytest.raises(ValidationError):
            CodeOutput.model_validate({"description": "x", "risk": 1, "files": "nope"})
