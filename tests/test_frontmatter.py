from __future__ import annotations

import pytest

from reviewgate.errors import DocumentFormatError
from reviewgate.frontmatter import (
    TOML_DELIMITER,
    Document,
    extract_metadata,
    needs_quotes,
    parse_document,
    render_document,
    serialize_metadata,
)

TRACE = "550e8400-e29b-41d4-a716-446655440000"


class TestParse:
    def test_yaml_header_and_body(self) -> None:
        doc = parse_document("---\nstatus: review\nagent_id: coder\n---\n\n# Title\nBody\n")
        assert doc.metadata == {"status": "review", "agent_id": "coder"}
        assert doc.body == "# Title\nBody"
        assert doc.delimiter == "---"

    def test_missing_header_is_empty_metadata(self) -> None:
        doc = parse_document("# Just a body\n")
        assert doc.metadata == {}
        assert doc.body == "# Just a body\n"

    def test_empty_header(self) -> None:
        doc = parse_document("---\n---\nbody")
        assert doc.metadata == {}
        assert doc.body == "body"

    def test_unclosed_fence_is_body(self) -> None:
        text = "---\nstatus: review\nno closing fence"
        doc = parse_document(text)
        assert doc.metadata == {}
        assert doc.body == text

    def test_quoted_values(self) -> None:
        meta = extract_metadata(
            f'---\ntrace_id: "{TRACE}"\ntitle: \'it\'\'s\'\nurl: "http://x"\n---\n'
        )
        assert meta == {"trace_id": TRACE, "title": "it's", "url": "http://x"}

    def test_value_with_colon_unquoted(self) -> None:
        # Only the first colon separates key and value.
        assert extract_metadata("---\ncreated_at: 2024-05-01T12:30:00\n---\n") == {
            "created_at": "2024-05-01T12:30:00"
        }

    def test_comments_and_blank_lines_skipped(self) -> None:
        assert extract_metadata("---\n# note\n\nstatus: review\n---\n") == {"status": "review"}

    def test_toml_header(self) -> None:
        doc = parse_document('+++\nname = "senior-coder"\nmodel = "default"\n+++\nprompt\n')
        assert doc.metadata == {"name": "senior-coder", "model": "default"}
        assert doc.delimiter == TOML_DELIMITER
        assert doc.body == "prompt"

    def test_crlf_line_endings(self) -> None:
        assert extract_metadata("---\r\nstatus: review\r\n---\r\nbody") == {"status": "review"}

    def test_yaml_scalars_stay_strings(self) -> None:
        meta = extract_metadata("---\nattempts: 3\nurgent: yes\ncreated_at: 2024-05-01\n---\n")
        assert meta == {"attempts": "3", "urgent": "yes", "created_at": "2024-05-01"}

    def test_nested_value_rejected(self) -> None:
        with pytest.raises(DocumentFormatError):
            extract_metadata("---\ntags:\n  - a\n  - b\n---\nbody")

    def test_malformed_header_rejected(self) -> None:
        with pytest.raises(DocumentFormatError):
            extract_metadata("---\nstatus: [review\n---\nbody")

    def test_malformed_toml_header_rejected(self) -> None:
        with pytest.raises(DocumentFormatError):
            extract_metadata("+++\nname = senior-coder\n+++\nbody")


class TestSerialize:
    def test_uuid_and_colon_values_are_quoted(self) -> None:
        header = serialize_metadata(
            {"trace_id": TRACE, "approved_at": "2024-05-01T12:30:00+00:00", "status": "review"}
        )
        assert f'trace_id: "{TRACE}"' in header
        assert 'approved_at: "2024-05-01T12:30:00+00:00"' in header
        assert "status: review" in header
        assert header.startswith("---\n") and header.endswith("\n---")

    def test_needs_quotes(self) -> None:
        assert needs_quotes(TRACE)
        assert needs_quotes("a: b")
        assert needs_quotes(" padded")
        assert needs_quotes('"already"')
        assert not needs_quotes("review")

    @pytest.mark.parametrize(
        "metadata",
        [
            {"status": "review", "trace_id": TRACE},
            {"reason": 'says "no": twice', "path": "C:\\temp\\x"},
            {"empty": "", "spaced": "  lead and trail  ", "hash": "#tag"},
            {"quote": "'", "dquote": '"'},
        ],
    )
    def test_round_trip(self, metadata: dict[str, str]) -> None:
        assert extract_metadata(serialize_metadata(metadata)) == metadata

    def test_toml_round_trip(self) -> None:
        metadata = {"name": "senior-coder", "note": 'a "quoted" word'}
        assert extract_metadata(serialize_metadata(metadata, TOML_DELIMITER)) == metadata

    def test_render_then_parse_keeps_body(self) -> None:
        doc = Document({"status": "approved"}, "# Title\n\nText\n")
        parsed = parse_document(render_document(doc))
        assert parsed.metadata == doc.metadata
        assert parsed.body == doc.body.strip()

    def test_multiline_value_rejected(self) -> None:
        with pytest.raises(DocumentFormatError):
            serialize_metadata({"reason": "line one\nline two"})

    def test_invalid_key_rejected(self) -> None:
        with pytest.raises(DocumentFormatError):
            serialize_metadata({"bad:key": "x"})

    def test_unknown_delimiter_rejected(self) -> None:
        with pytest.raises(DocumentFormatError):
            serialize_metadata({"a": "b"}, "===")

    def test_keys_keep_their_order(self) -> None:
        header = serialize_metadata({"trace_id": TRACE, "status": "review", "agent_id": "coder"})
        keys = [line.split(":", 1)[0] for line in header.splitlines()[1:-1]]
        assert keys == ["trace_id", "status", "agent_id"]

    def test_toml_non_ascii_round_trip(self) -> None:
        metadata = {"title": "Überblick ⚠️", "dotted.key": "x"}
        assert extract_metadata(serialize_metadata(metadata, TOML_DELIMITER)) == metadata

    def test_rendered_document_ends_with_newline(self) -> None:
        text = render_document(Document({"status": "review"}, "# Plan\n\nBody"))
        assert text == "---\nstatus: review\n---\n\n# Plan\n\nBody\n"
