"""Tests for mapping compilation and per-record processing."""

import pytest

from dataimport.errors import CompilationError, ErrorCode
from dataimport.models.mapping import FieldMapping, ValidationRuleSet
from dataimport.services.resolver import FieldMappingResolver, get_source_value
from dataimport.services.transformer import TransformEngine


def compile_mapping(data, rules=None, **engine_options):
    resolver = FieldMappingResolver(transform_engine=TransformEngine(**engine_options))
    return resolver.compile(FieldMapping.from_dict(data), ValidationRuleSet.from_dict(rules))


class TestGetSourceValue:

    def test_exact_key_wins_over_dot_path(self):
        row = {"a.b": "flat", "a": {"b": "nested"}}

        assert get_source_value(row, "a.b") == "flat"

    def test_dot_path_and_index(self):
        row = {"customer": {"email": "jane@example.com", "tags": ["vip", "beta"]}}

        assert get_source_value(row, "customer.email") == "jane@example.com"
        assert get_source_value(row, "customer.tags[1]") == "beta"
        assert get_source_value(row, "customer.tags.0") == "vip"

    def test_missing_paths_return_none(self):
        row = {"customer": {"tags": ["vip"]}}

        assert get_source_value(row, "customer.phone") is None
        assert get_source_value(row, "customer.tags[3]") is None
        assert get_source_value(row, "order.id") is None


class TestCompile:

    def test_aggregates_every_problem(self):
        with pytest.raises(CompilationError) as exc_info:
            compile_mapping(
                {
                    "Email": {"targetField": "email", "transform": ["shout"]},
                    "E-mail": {"targetField": "email"},
                    "Age": {"targetField": "age", "dataType": "integer"},
                    "Score": {"targetField": "score", "dataType": "number", "defaultValue": "high"},
                    "Tier": {"targetField": "tier", "condition": {"field": "Plan", "operator": "like"}},
                },
                rules={"required": ["phone"]},
            )

        problems = exc_info.value.problems
        assert "Unknown transform 'shout' on field 'email'" in problems
        assert "Duplicate target field 'email' (from 'Email' and 'E-mail')" in problems
        assert "Unknown data type 'integer' on field 'age'" in problems
        assert any("is not a valid number" in p for p in problems)
        assert any("Unknown condition operator 'like'" in p for p in problems)
        assert "Validation rule references unmapped field 'phone'" in problems

    def test_empty_mapping(self):
        with pytest.raises(CompilationError) as exc_info:
            compile_mapping({})

        assert exc_info.value.problems == ["Field mapping has no fields"]

    def test_target_fields_in_declaration_order(self, customer_mapping):
        compiled = FieldMappingResolver().compile(customer_mapping)

        assert compiled.target_fields == ["email", "name"]


class TestProcess:

    def test_customer_row(self, customer_mapping):
        compiled = FieldMappingResolver().compile(customer_mapping)

        result = compiled.process({"Email": "  JANE@EXAMPLE.COM ", "Full Name": "Jane Doe"})

        assert result.ok
        assert result.fields == {"email": "jane@example.com", "name": "Jane Doe"}

    def test_missing_required_email(self, customer_mapping):
        compiled = FieldMappingResolver().compile(customer_mapping)

        result = compiled.process({"Full Name": "No Email"})

        assert [e.code for e in result.errors] == [ErrorCode.MISSING_REQUIRED_FIELD]
        assert result.errors[0].field == "email"

    def test_default_fills_empty_value(self):
        compiled = compile_mapping({
            "Status": {"targetField": "status", "defaultValue": "active", "transform": ["trim"]},
        })

        assert compiled.process({"Status": "   "}).fields == {"status": "active"}
        assert compiled.process({}).fields == {"status": "active"}
        assert compiled.process({"Status": "closed"}).fields == {"status": "closed"}

    def test_condition_excludes_field(self):
        compiled = compile_mapping({
            "Company": {
                "targetField": "company",
                "condition": {"field": "Type", "operator": "equals", "value": "business"},
            },
        })

        assert compiled.process({"Type": "business", "Company": "Acme"}).fields == {"company": "Acme"}
        assert compiled.process({"Type": "person", "Company": "Acme"}).fields == {}

    def test_condition_excluding_a_required_field_fails_validation(self):
        compiled = compile_mapping({
            "Company": {
                "targetField": "company",
                "required": True,
                "condition": {"field": "Type", "operator": "equals", "value": "business"},
            },
        })

        result = compiled.process({"Type": "person", "Company": "Acme"})

        assert not result.ok
        assert [e.code for e in result.errors] == [ErrorCode.MISSING_REQUIRED_FIELD]
        assert result.errors[0].field == "company"
        assert "company" not in result.fields

    def test_transform_error_suppresses_validation_of_same_field(self):
        compiled = compile_mapping(
            {"Joined": {"targetField": "joined", "transform": ["format_date"]}},
            rules={"required": ["joined"]},
        )

        result = compiled.process({"Joined": "not a date"})

        assert len(result.errors) == 1
        assert result.errors[0].code == ErrorCode.TRANSFORMATION_FAILED

    def test_number_coercion_after_validation(self):
        compiled = compile_mapping({
            "Seats": {"targetField": "seats", "dataType": "number"},
        })

        assert compiled.process({"Seats": "1,250"}).fields == {"seats": 1250}

        invalid = compiled.process({"Seats": "many"})
        assert [e.code for e in invalid.errors] == [ErrorCode.INVALID_DATA_TYPE]

    def test_warnings_do_not_fail_record(self):
        compiled = compile_mapping(
            {"Notes": {"targetField": "notes"}},
            rules={"fields": {"notes": {"maxLength": 5, "severity": "warning"}}},
        )

        result = compiled.process({"Notes": "longer than five"})

        assert result.ok
        assert len(result.warnings) == 1
        assert result.fields == {"notes": "longer than five"}
