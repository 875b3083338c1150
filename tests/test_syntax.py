from __future__ import annotations

import pytest

from pipecheck.syntax import (
    Assignment,
    CallValue,
    Name,
    ParseError,
    Statement,
    read_statements,
    tokenize,
)


class TestTokenize:
    def test_token_types(self) -> None:
        tokens = tokenize("sh 'make' // build\n")
        assert [(t.type, t.value) for t in tokens] == [
            ("IDENT", "sh"),
            ("STRING", "make"),
            ("NEWLINE", "\n"),
            ("EOF", ""),
        ]

    def test_tracks_line_numbers(self) -> None:
        tokens = tokenize("a\n\nb")
        idents = [t for t in tokens if t.type == "IDENT"]
        assert [t.line for t in idents] == [1, 3]

    def test_block_comment_spanning_lines_advances_line(self) -> None:
        tokens = tokenize("/* one\ntwo */ x")
        assert tokens[0].value == "x"
        assert tokens[0].line == 2

    def test_newlines_inside_parentheses_are_dropped(self) -> None:
        tokens = tokenize("f(a: 1,\n  b: 2)\n")
        assert [t.type for t in tokens].count("NEWLINE") == 1

    def test_escapes_in_strings(self) -> None:
        tokens = tokenize(r"'it\'s' " + r'"a\tb"')
        assert tokens[0].value == "it's"
        assert tokens[1].value == "a\tb"

    def test_triple_quoted_string_keeps_newlines(self) -> None:
        tokens = tokenize("sh '''\nmake\nmake test\n'''")
        assert tokens[1].type == "STRING"
        assert tokens[1].value == "\nmake\nmake test\n"

    def test_url_inside_string_is_not_a_comment(self) -> None:
        tokens = tokenize("git url: 'https://example.com/repo.git'")
        assert tokens[-2].value == "https://example.com/repo.git"

    def test_unterminated_string(self) -> None:
        with pytest.raises(ParseError, match="unterminated string") as exc_info:
            tokenize("\nsh 'oops\n")
        assert exc_info.value.line == 2

    def test_unexpected_character(self) -> None:
        with pytest.raises(ParseError, match="unexpected character"):
            tokenize("sh #")


class TestReadStatements:
    def test_statement_with_block(self) -> None:
        nodes = read_statements("stage('Build') {\n  steps { sh 'make' }\n}")
        assert len(nodes) == 1
        stage = nodes[0]
        assert isinstance(stage, Statement)
        assert stage.name == "stage"
        assert stage.positional == ["Build"]
        assert stage.block is not None
        steps = stage.block[0]
        assert isinstance(steps, Statement)
        assert steps.name == "steps"
        assert steps.line == 2

    def test_named_and_positional_arguments(self) -> None:
        (node,) = read_statements("timeout(time: 5, unit: 'MINUTES')")
        assert isinstance(node, Statement)
        assert node.named == {"time": 5, "unit": "MINUTES"}
        assert node.positional == []

    def test_bare_argument_list(self) -> None:
        (node,) = read_statements("values 'linux', 'windows'")
        assert isinstance(node, Statement)
        assert node.positional == ["linux", "windows"]

    def test_value_forms(self) -> None:
        (node,) = read_statements("f(true, 1.5, [1, 'a'], any, credentials('tok'))")
        assert isinstance(node, Statement)
        flag, number, items, name, call = node.positional
        assert flag is True
        assert number == 1.5
        assert items == [1, "a"]
        assert name == Name("any")
        assert isinstance(call, CallValue)
        assert call.name == "credentials"
        assert call.arguments[0].value == "tok"

    def test_assignment(self) -> None:
        (node,) = read_statements("environment { TOKEN = credentials('deploy') }")
        assert isinstance(node, Statement)
        assert node.block is not None
        assignment = node.block[0]
        assert isinstance(assignment, Assignment)
        assert assignment.name == "TOKEN"

    def test_semicolons_separate_statements(self) -> None:
        (node,) = read_statements("steps { sh 'a'; sh 'b' }")
        assert isinstance(node, Statement)
        assert node.block is not None
        assert len(node.block) == 2

    def test_annotation_with_throwaway_binding(self) -> None:
        nodes = read_statements("@Library('shared-utils@main') _\npipeline { }")
        annotation, pipeline = nodes
        assert isinstance(annotation, Statement)
        assert annotation.name == "@Library"
        assert annotation.positional == ["shared-utils@main"]
        assert isinstance(pipeline, Statement)
        assert pipeline.block == []

    def test_unclosed_block(self) -> None:
        with pytest.raises(ParseError, match="unclosed block"):
            read_statements("pipeline {\n  stages {\n")

    def test_trailing_garbage_after_statement(self) -> None:
        with pytest.raises(ParseError, match="unexpected") as exc_info:
            read_statements("sh('a') 'b'")
        assert exc_info.value.line == 1

    def test_error_message_includes_line(self) -> None:
        with pytest.raises(ParseError) as exc_info:
            read_statements("a {\n\n  = 1\n}")
        assert str(exc_info.value).startswith("line 3: ")
