"""Tests for the transformation engine."""

import pytest

from dataimport.errors import CompilationError, TransformError
from dataimport.models.mapping import FieldDataType, FieldTransform, TransformType
from dataimport.services.transformer import TransformEngine, coerce


def compile_steps(engine, *declared, field_name="field"):
    return engine.compile_pipeline([FieldTransform.from_value(d) for d in declared], field_name)


class TestCompilePipeline:
    """Compile-time resolution of transform declarations."""

    def test_resolves_names_in_order(self):
        pipeline = compile_steps(TransformEngine(), "trim", "lowercase")

        assert [step.type for step in pipeline.steps] == [TransformType.TRIM, TransformType.LOWERCASE]

    def test_accepts_hyphenated_names(self):
        assert TransformType.parse("regex-replace") == TransformType.REGEX_REPLACE
        assert TransformType.parse("Parse_JSON") == TransformType.PARSE_JSON
        assert TransformType.parse("shout") is None

    def test_collects_every_problem(self):
        engine = TransformEngine()

        with pytest.raises(CompilationError) as exc_info:
            compile_steps(
                engine,
                "shout",
                {"type": "regex_replace", "pattern": "("},
                {"type": "lookup", "table": "missing"},
                field_name="email",
            )

        problems = exc_info.value.problems
        assert len(problems) == 3
        assert "Unknown transform 'shout' on field 'email'" in problems
        assert any("Invalid regex" in p for p in problems)
        assert any("Unknown lookup table 'missing'" in p for p in problems)

    def test_split_must_be_last(self):
        with pytest.raises(CompilationError) as exc_info:
            compile_steps(TransformEngine(), "split", "trim")

        assert any("must be the last step" in p for p in exc_info.value.problems)

    def test_replace_requires_search(self):
        with pytest.raises(CompilationError):
            compile_steps(TransformEngine(), {"type": "replace", "replacement": "x"})

    def test_unknown_timezone_is_rejected(self):
        with pytest.raises(CompilationError) as exc_info:
            compile_steps(TransformEngine(), {"type": "format_date", "timezone": "Mars/Olympus"})

        assert any("Unknown timezone 'Mars/Olympus'" in p for p in exc_info.value.problems)

    def test_unknown_regex_flag_is_rejected(self):
        with pytest.raises(CompilationError):
            compile_steps(TransformEngine(), {"type": "regex_extract", "pattern": "a", "flags": "q"})


class TestBuiltinTransforms:
    """Runtime behavior of each transform."""

    def test_string_cleanup(self):
        engine = TransformEngine()

        assert compile_steps(engine, "trim", "lowercase").apply("  Jane@Example.COM ") == "jane@example.com"
        assert compile_steps(engine, "uppercase").apply("abc") == "ABC"
        assert compile_steps(engine, "capitalize").apply("hELLO") == "Hello"

    def test_none_passes_through(self):
        pipeline = compile_steps(TransformEngine(), "trim", "lowercase", "uppercase")

        assert pipeline.apply(None) is None

    def test_replace(self):
        pipeline = compile_steps(TransformEngine(), {"type": "replace", "search": "-", "replacement": ""})

        assert pipeline.apply("555-123-4567") == "5551234567"

    def test_regex_replace_and_extract(self):
        engine = TransformEngine()
        digits_only = compile_steps(engine, {"type": "regex_replace", "pattern": r"\D", "replacement": ""})
        order_number = compile_steps(engine, {"type": "regex_extract", "pattern": r"#(\d+)"})

        assert digits_only.apply("(555) 123") == "555123"
        assert order_number.apply("Order #42 shipped") == "42"
        assert order_number.apply("no number") is None

    def test_regex_flags(self):
        pipeline = compile_steps(TransformEngine(), {"type": "regex_extract", "pattern": "vip", "flags": "i"})

        assert pipeline.apply("Customer VIP") == "VIP"

    def test_split_and_join(self):
        engine = TransformEngine()

        assert compile_steps(engine, "split").apply("a, b,,c") == ["a", "b", "c"]
        assert compile_steps(engine, {"type": "split", "delimiter": ";"}).apply("x;y") == ["x", "y"]
        assert compile_steps(engine, {"type": "join", "separator": "|"}).apply(["a", "b"]) == "a|b"

    def test_format_date_with_input_format(self):
        pipeline = compile_steps(
            TransformEngine(),
            {"type": "format_date", "input_format": "%m/%d/%Y", "output_format": "%Y-%m-%d"},
        )

        assert pipeline.apply("03/15/2024") == "2024-03-15"

    def test_format_date_converts_timezone(self):
        pipeline = compile_steps(
            TransformEngine(),
            {"type": "format_date", "timezone": "America/New_York", "output_format": "%Y-%m-%d %H:%M"},
        )

        # Naive input is read as UTC; New York is on daylight time in mid-March
        assert pipeline.apply("2024-03-15T10:00:00") == "2024-03-15 06:00"

    def test_format_date_uses_engine_defaults(self):
        engine = TransformEngine(default_timezone="UTC", default_date_format="%d.%m.%Y")

        assert compile_steps(engine, "format_date").apply("2024-03-15") == "15.03.2024"

    def test_unparseable_date_raises_transform_error(self):
        pipeline = compile_steps(TransformEngine(), "format_date")

        with pytest.raises(TransformError):
            pipeline.apply("not a date")

    def test_wrong_input_format_raises_transform_error(self):
        pipeline = compile_steps(TransformEngine(), {"type": "format_date", "input_format": "%Y-%m-%d"})

        with pytest.raises(TransformError):
            pipeline.apply("15/03/2024")

    def test_parse_json(self):
        pipeline = compile_steps(TransformEngine(), "parse_json")

        assert pipeline.apply('{"tier": "gold"}') == {"tier": "gold"}
        assert pipeline.apply("   ") is None
        with pytest.raises(TransformError):
            pipeline.apply("{broken")

    def test_lookup(self):
        engine = TransformEngine(lookup_tables={"status": {"open": "active", "closed": "archived"}})

        plain = compile_steps(engine, {"type": "lookup", "table": "status", "default": "unknown"})
        folded = compile_steps(engine, {"type": "lookup", "table": "status", "case_insensitive": True})
        keep = compile_steps(engine, {"type": "lookup", "table": "status", "keep_unmatched": True})

        assert plain.apply("open") == "active"
        assert plain.apply("pending") == "unknown"
        assert folded.apply("CLOSED") == "archived"
        assert keep.apply("pending") == "pending"


class TestCoerce:
    """Post-validation type conversion."""

    def test_numbers(self):
        assert coerce("1,234", FieldDataType.NUMBER) == 1234
        assert coerce("3.5", FieldDataType.NUMBER) == 3.5
        assert coerce(7, FieldDataType.NUMBER) == 7

    def test_rejects_boolean_as_number(self):
        with pytest.raises(TransformError):
            coerce(True, FieldDataType.NUMBER)

    def test_booleans(self):
        assert coerce("Yes", FieldDataType.BOOLEAN) is True
        assert coerce("0", FieldDataType.BOOLEAN) is False
        with pytest.raises(TransformError):
            coerce("maybe", FieldDataType.BOOLEAN)

    def test_json_and_array(self):
        assert coerce('[1, 2]', FieldDataType.JSON) == [1, 2]
        assert coerce(("a", "b"), FieldDataType.ARRAY) == ["a", "b"]

    def test_other_types_are_unchanged(self):
        assert coerce("jane@example.com", FieldDataType.EMAIL) == "jane@example.com"
        assert coerce(None, FieldDataType.NUMBER) is None
