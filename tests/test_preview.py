"""Tests for the preview generator."""

from dataimport.errors import ErrorCode
from dataimport.models.mapping import FieldMapping
from dataimport.services.preview import PreviewGenerator


class TestInference:

    def test_headers_in_first_seen_order(self):
        rows = [{"b": 1, "a": 2}, {"c": 3, "a": 4}]

        result = PreviewGenerator().generate(rows)

        assert result.headers == ["b", "a", "c"]

    def test_detected_types(self):
        rows = [
            {"email": "jane@example.com", "seats": "12", "active": "true", "site": "https://a.io", "joined": "2024-01-05"},
            {"email": "john@example.com", "seats": 7, "active": False, "site": "https://b.io", "joined": "03/15/2024"},
        ]

        types = PreviewGenerator().generate(rows).detected_types

        assert types == {
            "email": "email",
            "seats": "number",
            "active": "boolean",
            "site": "url",
            "joined": "date",
        }

    def test_mixed_column_falls_back_to_string(self):
        rows = [{"value": "12"}, {"value": "twelve"}]

        result = PreviewGenerator().generate(rows)

        assert result.detected_types["value"] == "string"
        assert result.statistics.column_stats["value"].issues == ["Mixed value types: number, string"]

    def test_column_statistics(self):
        rows = [{"tier": "gold"}, {"tier": ""}, {"tier": "gold"}, {"tier": "silver"}]

        stats = PreviewGenerator().generate(rows).statistics.column_stats["tier"]

        assert stats.null_count == 1
        assert stats.unique_count == 2
        assert stats.sample_values == ["gold", "silver"]


class TestSampling:

    def test_reads_only_sample_size_rows(self, customer_rows):
        result = PreviewGenerator(sample_size=2).generate(iter(customer_rows))

        assert result.statistics.total_rows == 2
        assert len(result.sample_rows) == 2

    def test_call_sample_size_overrides_default(self, customer_rows):
        result = PreviewGenerator(sample_size=2).generate(customer_rows, sample_size=4)

        assert result.statistics.total_rows == 4

    def test_same_input_gives_identical_json(self, customer_rows, customer_mapping):
        generator = PreviewGenerator()

        first = generator.generate(customer_rows, customer_mapping).to_json()
        second = generator.generate(customer_rows, customer_mapping).to_json()

        assert first == second


class TestMappedPreview:

    def test_mapped_sample_rows_and_counts(self, customer_rows, customer_mapping):
        rows = customer_rows + [{"Email": "", "Full Name": "Nobody"}]

        result = PreviewGenerator().generate(rows, customer_mapping)

        assert result.sample_rows[0] == {"email": "jane@example.com", "name": "Jane Doe"}
        assert result.statistics.valid_rows == 5
        assert result.statistics.invalid_rows == 1
        assert result.has_errors
        assert result.issue_counts == {ErrorCode.MISSING_REQUIRED_FIELD.value: 1}

    def test_compile_problems_become_issues(self, customer_rows):
        mapping = FieldMapping.from_dict({"Email": {"targetField": "email", "transform": ["shout"]}})

        result = PreviewGenerator().generate(customer_rows, mapping)

        assert result.has_errors
        assert result.issues[0].message == "Unknown transform 'shout' on field 'email'"
        assert result.sample_rows == customer_rows

    def test_missing_source_column_warns(self, customer_rows):
        mapping = FieldMapping.from_dict({
            "Email": {"targetField": "email"},
            "Phone": {"targetField": "phone"},
        })

        result = PreviewGenerator().generate(customer_rows, mapping)

        warnings = [i for i in result.issues if i.column == "Phone"]
        assert len(warnings) == 1
        assert warnings[0].type == "warning"
        assert not result.has_errors

    def test_duplicates_by_natural_key(self, customer_rows, customer_mapping):
        rows = customer_rows + [{"Email": "Jane@Example.com", "Full Name": "Jane D."}]

        result = PreviewGenerator().generate(rows, customer_mapping, natural_key="email")

        assert result.statistics.duplicate_rows == 1
        duplicate = [i for i in result.issues if i.code == ErrorCode.DUPLICATE_RECORD.value]
        assert duplicate[0].row == 5
        assert duplicate[0].message == "Row duplicates row 0"

    def test_duplicates_by_whole_row_without_mapping(self):
        rows = [{"a": 1, "b": 2}, {"b": 2, "a": 1}, {"a": 1, "b": 3}]

        result = PreviewGenerator().generate(rows)

        assert result.statistics.duplicate_rows == 1

    def test_empty_rows_are_counted(self, customer_mapping):
        rows = [{"Email": "jane@example.com", "Full Name": "Jane"}, {"Email": "", "Full Name": None}]

        result = PreviewGenerator().generate(rows, customer_mapping)

        assert result.statistics.empty_rows == 1
        assert result.statistics.invalid_rows == 0
        assert [i.message for i in result.issues] == ["Row is empty"]
