"""
Test per il row-count prober (richieste Range su S3 finto).
"""
import io
import random
import zipfile

import pytest
from openpyxl import Workbook

from core.errors import ProbeFailed
from ingest.prober import first_worksheet, parse_dimension, probe_row_count, read_prefix
from tests.mocks import BUCKET, build_xlsx, numbered_rows


def _zip(entries) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return buffer.getvalue()


class TestParseDimension:
    def test_range_reference(self):
        assert parse_dimension(b'<worksheet><dimension ref="A1:F10524"/><sheetViews>') == 10524

    def test_single_cell_reference(self):
        assert parse_dimension(b'<dimension ref="A1"/>') == 1

    def test_missing_tag(self):
        assert parse_dimension(b'<worksheet><sheetData><row r="1">') is None

    def test_first_worksheet_uses_lowest_sheet_number(self):
        names = ["xl/workbook.xml", "xl/worksheets/sheet10.xml", "xl/worksheets/sheet2.xml"]
        assert first_worksheet(names) == "xl/worksheets/sheet2.xml"

    def test_read_prefix_loops_until_limit(self):
        class Trickle(io.RawIOBase):
            """Restituisce al massimo 7 byte per read."""
            def __init__(self, data):
                self._data = io.BytesIO(data)

            def read(self, n=-1):
                return self._data.read(min(n, 7))

        assert read_prefix(Trickle(b"x" * 100), 50) == b"x" * 50
        assert read_prefix(Trickle(b"x" * 20), 50) == b"x" * 20


class TestProbeRowCount:
    def test_declared_dimension_gives_exact_count(self, s3_client, storage):
        """<dimension ref="A1:F10524"/> → 10523 righe dati, nessun fallback."""
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(["A", "B", "C", "D", "E", "F"])
        sheet["F10524"] = "last"
        buffer = io.BytesIO()
        workbook.save(buffer)
        s3_client.put(BUCKET, "big.xlsx", buffer.getvalue())

        estimate = probe_row_count(storage, BUCKET, "big.xlsx", "xlsx")

        assert estimate.rows == 10523
        assert estimate.exact is True
        assert estimate.method == "dimension"

    def test_probe_reads_ranges_not_whole_object(self, s3_client, storage):
        data = build_xlsx(numbered_rows(50), header=["id", "a", "b"])
        # Entry incomprimibile da 1MB in coda: non deve essere letta
        buffer = io.BytesIO(data)
        with zipfile.ZipFile(buffer, "a", zipfile.ZIP_STORED) as archive:
            archive.writestr("xl/media/blob.bin", random.Random(0).randbytes(1_000_000))
        data = buffer.getvalue()
        s3_client.put(BUCKET, "padded.xlsx", data)

        estimate = probe_row_count(storage, BUCKET, "padded.xlsx", "xlsx")

        assert estimate.rows == 50
        assert estimate.exact is True
        assert s3_client.full_downloads == 0
        assert s3_client.range_requests
        assert s3_client.bytes_ranged < len(data) // 2

    def test_not_a_zip_falls_back_to_size(self, s3_client, storage):
        """Nessuna dichiarazione leggibile, 10485760 byte → 52428 righe stimate."""
        s3_client.put(BUCKET, "broken.xlsx", b"\0" * 10_485_760)

        estimate = probe_row_count(storage, BUCKET, "broken.xlsx", "xlsx")

        assert estimate.rows == 52428
        assert estimate.exact is False
        assert estimate.method == "size"

    def test_sheet_without_dimension_falls_back(self, s3_client, storage):
        sheet_xml = b'<worksheet><sheetData><row r="1"><c r="A1"><v>1</v></c></row></sheetData></worksheet>'
        data = _zip([("xl/workbook.xml", b"<workbook/>"), ("xl/worksheets/sheet1.xml", sheet_xml)])
        s3_client.put(BUCKET, "nodim.xlsx", data)

        estimate = probe_row_count(storage, BUCKET, "nodim.xlsx", "xlsx", bytes_per_row=200)

        assert estimate.exact is False
        assert estimate.rows == max(len(data) // 200, 1)

    def test_dimension_beyond_prefix_is_ignored(self, s3_client, storage):
        sheet_xml = b"<worksheet>" + b"<!--" + b"x" * 3000 + b"-->" + b'<dimension ref="A1:C999"/></worksheet>'
        data = _zip([("xl/worksheets/sheet1.xml", sheet_xml)])
        s3_client.put(BUCKET, "late.xlsx", data)

        estimate = probe_row_count(storage, BUCKET, "late.xlsx", "xlsx", prefix_bytes=2048)

        assert estimate.method == "size"

    def test_header_only_sheet_has_zero_rows(self, s3_client, storage):
        s3_client.put(BUCKET, "empty.xlsx", build_xlsx([], header=["id", "a"]))

        estimate = probe_row_count(storage, BUCKET, "empty.xlsx", "xlsx")

        assert estimate.rows == 0
        assert estimate.exact is True

    def test_csv_uses_size_estimate_without_ranges(self, s3_client, storage):
        data = b"id,name\n" + b"".join(f"{i},row-{i:0190d}\n".encode() for i in range(100))
        s3_client.put(BUCKET, "data.csv", data)

        estimate = probe_row_count(storage, BUCKET, "data.csv", "csv")

        assert estimate.rows == len(data) // 200
        assert estimate.exact is False
        assert s3_client.range_requests == []

    def test_tiny_file_estimates_at_least_one_row(self, s3_client, storage):
        s3_client.put(BUCKET, "tiny.csv", b"id\n1\n2\n")

        estimate = probe_row_count(storage, BUCKET, "tiny.csv", "csv")

        assert estimate.rows == 1
        assert estimate.exact is False

    def test_empty_xlsx_object_estimates_zero_rows(self, s3_client, storage):
        s3_client.put(BUCKET, "empty-upload.xlsx", b"")

        estimate = probe_row_count(storage, BUCKET, "empty-upload.xlsx", "xlsx")

        assert estimate.rows == 0
        assert estimate.exact is False
        assert estimate.method == "size"

    def test_truncated_zip_header_estimates_one_row(self, s3_client, storage):
        s3_client.put(BUCKET, "stub.xlsx", b"PK\x03\x04tiny")

        estimate = probe_row_count(storage, BUCKET, "stub.xlsx", "xlsx")

        assert estimate.rows == 1
        assert estimate.method == "size"

    def test_missing_object_raises_probe_failed(self, storage):
        with pytest.raises(ProbeFailed) as exc_info:
            probe_row_count(storage, BUCKET, "missing.xlsx", "xlsx")

        assert exc_info.value.object_key == "missing.xlsx"
