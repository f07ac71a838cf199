"""Tests for the command line interface."""

import json

import pytest

from dataimport.cli import main

CSV_ROWS = (
    "Email,Full Name\n"
    "  JANE@EXAMPLE.COM ,Jane Doe\n"
    "john@example.com, John Smith \n"
    "not-an-email,Nobody\n"
)


@pytest.fixture
def files(tmp_path, customer_mapping_data):
    source = tmp_path / "customers.csv"
    source.write_text(CSV_ROWS)
    mapping = tmp_path / "mapping.json"
    mapping.write_text(json.dumps(customer_mapping_data))
    job = tmp_path / "job.json"
    job.write_text(json.dumps({
        "name": "Customer import",
        "importType": "customers",
        "fieldMapping": customer_mapping_data,
    }))
    return {"source": source, "mapping": mapping, "job": job, "dir": tmp_path}


class TestCheckMapping:

    def test_valid_mapping(self, files, capsys):
        assert main(["check-mapping", "--mapping", str(files["mapping"])]) == 0
        assert "Mapping is valid! (2 target fields)" in capsys.readouterr().out

    def test_job_document_is_accepted(self, files, capsys):
        assert main(["check-mapping", "--mapping", str(files["job"])]) == 0

    def test_problems_are_listed(self, files, capsys):
        bad = files["dir"] / "bad.json"
        bad.write_text(json.dumps({
            "Email": {"targetField": "email", "transform": "shout"},
            "Age": {"targetField": "age", "dataType": "decimal"},
        }))

        assert main(["check-mapping", "--mapping", str(bad)]) == 1

        out = capsys.readouterr().out
        assert "  - Unknown transform 'shout' on field 'email'" in out
        assert "Found 2 problems" in out

    def test_missing_file(self, files, capsys):
        assert main(["check-mapping", "--mapping", str(files["dir"] / "nope.json")]) == 1
        assert capsys.readouterr().out.startswith("Error:")


class TestPreview:

    def test_preview_with_mapping(self, files, capsys):
        code = main(["preview", "--input", str(files["source"]), "--mapping", str(files["mapping"])])

        result = json.loads(capsys.readouterr().out)
        assert code == 1
        assert result["statistics"]["validRows"] == 2
        assert result["statistics"]["invalidRows"] == 1
        assert result["sampleRows"][0]["email"] == "jane@example.com"

    def test_preview_without_mapping(self, files, capsys):
        code = main(["preview", "--input", str(files["source"]), "--sample-size", "2"])

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert result["headers"] == ["Email", "Full Name"]
        assert result["statistics"]["totalRows"] == 2


class TestRun:

    def test_run_writes_entities(self, files, capsys):
        output = files["dir"] / "out.json"

        code = main([
            "run", "--input", str(files["source"]), "--job", str(files["job"]),
            "--output", str(output),
        ])

        out = capsys.readouterr().out
        assert code == 0
        assert "IMPORT COMPLETE" in out
        assert "Status: completed" in out
        assert "Failed: 1" in out
        entities = json.loads(output.read_text())
        assert sorted(e["email"] for e in entities.values()) == ["jane@example.com", "john@example.com"]

    def test_run_plan_rejects_bad_source(self, files, capsys):
        plan = files["dir"] / "plan.json"
        plan.write_text(json.dumps({"name": "Plan", "steps": []}))

        assert main(["run-plan", "--plan", str(plan), "--source", "customers"]) == 2

    def test_run_plan(self, files, capsys, customer_mapping_data):
        plan = files["dir"] / "plan.json"
        plan.write_text(json.dumps({
            "name": "Move customers",
            "steps": [{"id": "customers", "type": "import_batch", "configuration": {
                "job": {"importType": "customers", "fieldMapping": customer_mapping_data},
            }}],
        }))

        code = main(["run-plan", "--plan", str(plan), "--source", f"customers={files['source']}"])

        out = capsys.readouterr().out
        assert code == 0
        assert "MIGRATION PLAN COMPLETE" in out
        assert "customers (import_batch): completed" in out

    def test_no_command(self, capsys):
        assert main([]) == 2
