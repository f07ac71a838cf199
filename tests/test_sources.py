"""Tests for row sources."""

import json
import threading

import pytest

from dataimport.errors import UnsupportedFormatError
from dataimport.sources.base import ListRowSource
from dataimport.sources.files import CSVRowSource, JSONRowSource, open_file_source


async def collect(source, batch_size, start=0, stop=None):
    return [batch async for batch in source.stream(batch_size, start, stop)]


class ThreadRecordingSource(ListRowSource):
    """Records the thread each row is read on."""

    def __init__(self, rows):
        super().__init__(rows)
        self.threads = []

    def rows(self):
        for row in super().rows():
            self.threads.append(threading.current_thread())
            yield row


class TestListRowSource:

    def test_count_and_sample(self, customer_rows):
        source = ListRowSource(customer_rows)

        assert source.count() == 5
        assert source.sample(2) == customer_rows[:2]

    @pytest.mark.asyncio
    async def test_stream_batches(self, customer_rows):
        batches = await collect(ListRowSource(customer_rows), batch_size=2)

        assert [[index for index, _ in batch] for batch in batches] == [[0, 1], [2, 3], [4]]

    @pytest.mark.asyncio
    async def test_stream_from_offset(self, customer_rows):
        batches = await collect(ListRowSource(customer_rows), batch_size=2, start=3)

        assert [[index for index, _ in batch] for batch in batches] == [[3, 4]]

    @pytest.mark.asyncio
    async def test_stream_stops_at_limit(self, customer_rows):
        batches = await collect(ListRowSource(customer_rows), batch_size=2, stop=3)

        assert [[index for index, _ in batch] for batch in batches] == [[0, 1], [2]]

    @pytest.mark.asyncio
    async def test_rows_are_read_off_the_event_loop(self, customer_rows):
        source = ThreadRecordingSource(customer_rows)

        batches = await collect(source, batch_size=2)

        assert len(batches) == 3
        assert source.threads
        assert threading.main_thread() not in source.threads


class TestCSVRowSource:

    def test_reads_and_strips_values(self, tmp_path):
        path = tmp_path / "customers.csv"
        path.write_text("Email,Full Name\n jane@example.com ,Jane Doe\njohn@example.com,John\n")

        rows = list(CSVRowSource(path).rows())

        assert rows == [
            {"Email": "jane@example.com", "Full Name": "Jane Doe"},
            {"Email": "john@example.com", "Full Name": "John"},
        ]

    def test_sniffs_semicolon_delimiter(self, tmp_path):
        path = tmp_path / "customers.csv"
        path.write_text("email;name;plan\njane@example.com;Jane;gold\njohn@example.com;John;silver\n")

        rows = list(CSVRowSource(path).rows())

        assert rows[1] == {"email": "john@example.com", "name": "John", "plan": "silver"}

    def test_explicit_delimiter(self, tmp_path):
        path = tmp_path / "customers.txt"
        path.write_text("email|name\njane@example.com|Jane\n")

        source = open_file_source(path, delimiter="|")

        assert source.sample(1) == [{"email": "jane@example.com", "name": "Jane"}]

    def test_short_rows_get_empty_values(self, tmp_path):
        path = tmp_path / "customers.csv"
        path.write_text("email,name\njane@example.com\n")

        rows = list(CSVRowSource(path, delimiter=",").rows())

        assert rows == [{"email": "jane@example.com", "name": ""}]

    def test_falls_back_to_latin1(self, tmp_path):
        path = tmp_path / "customers.csv"
        path.write_bytes("name,city\nJos\xe9,S\xe3o Paulo\n".encode("latin-1"))

        rows = list(CSVRowSource(path, delimiter=",").rows())

        assert rows == [{"name": "Jos\xe9", "city": "S\xe3o Paulo"}]

    def test_bad_bytes_past_the_sniffed_prefix_fail_on_read(self, tmp_path):
        path = tmp_path / "customers.csv"
        path.write_bytes(b"name\n" + b"ana\n" * 20000 + "Jos\xe9\n".encode("latin-1"))
        source = CSVRowSource(path, delimiter=",")

        with pytest.raises(UnicodeDecodeError):
            source.count()


class TestJSONRowSource:

    def test_plain_array(self, tmp_path):
        path = tmp_path / "rows.json"
        path.write_text(json.dumps([{"id": 1}, {"id": 2}]))

        assert JSONRowSource(path).count() == 2

    def test_wrapped_records(self, tmp_path):
        path = tmp_path / "rows.json"
        path.write_text(json.dumps({"meta": {"page": 1}, "records": [{"id": 1}, {"id": 2}, {"id": 3}]}))

        assert [row["id"] for row in JSONRowSource(path).rows()] == [1, 2, 3]

    def test_single_object(self, tmp_path):
        path = tmp_path / "row.json"
        path.write_text(json.dumps({"id": 7, "name": "Solo"}))

        assert list(JSONRowSource(path).rows()) == [{"id": 7, "name": "Solo"}]

    def test_json_lines_skip_blank_lines(self, tmp_path):
        path = tmp_path / "rows.jsonl"
        path.write_text('{"id": 1}\n\n{"id": 2}\n')

        assert list(open_file_source(path).rows()) == [{"id": 1}, {"id": 2}]

    def test_non_object_items_raise(self, tmp_path):
        path = tmp_path / "rows.json"
        path.write_text(json.dumps([{"id": 1}, "oops"]))

        with pytest.raises(UnsupportedFormatError):
            list(JSONRowSource(path).rows())

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "rows.json"
        path.write_text("{broken")

        with pytest.raises(UnsupportedFormatError):
            list(JSONRowSource(path).rows())


class TestOpenFileSource:

    def test_picks_source_by_extension(self, tmp_path):
        assert isinstance(open_file_source(tmp_path / "a.csv"), CSVRowSource)
        assert isinstance(open_file_source(tmp_path / "a.tsv"), CSVRowSource)
        assert isinstance(open_file_source(tmp_path / "a.ndjson"), JSONRowSource)

    def test_unsupported_extension(self, tmp_path):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            open_file_source(tmp_path / "customers.xml")

        assert exc_info.value.message == "Unsupported file format: .xml"
