"""
Tests for CSV/JSON analysis exports.
"""

import csv
import io
import json
import re

import pytest

from scan_analysis.models.database import AnalysisStatus, ScanStatus, ScanType
from scan_analysis.services.report_generator import EXPORT_COLUMNS, ReportGenerator, format_confidence


@pytest.fixture
def reports():
    return ReportGenerator()


@pytest.fixture
def analyzed_scans(pipeline, store, make_scan, inference_session):
    """One completed brain scan, one failed chest scan and one scan never analyzed."""
    inference_session.route("/predict2", {"detected_case": "Glioma", "overall_confidence": 0.912,
                                          "medical_note": "Refer to neuro-oncology"})
    inference_session.route("/lunganalysis", {"detail": "bad image"}, status_code=422)

    brain = make_scan(notes="Follow-up, left \"temporal\" lobe")
    chest = make_scan(scan_type=ScanType.CT, body_part="Chest", image_keys=["scans/chest.png"])
    untouched = make_scan()

    pipeline.orchestrator.analyze(brain.id)
    pipeline.orchestrator.analyze(chest.id)
    pipeline.dispatcher.run_pending()

    return [store.get_scan(scan.id) for scan in (brain, chest, untouched)]


def read_csv(text):
    return list(csv.DictReader(io.StringIO(text)))


class TestFormatting:

    def test_format_confidence(self):
        assert format_confidence(0.912) == "91.2"
        assert format_confidence(0.0) == "0.0"
        assert format_confidence(None) == "N/A"

    def test_export_filename(self, reports):
        assert re.fullmatch(r"analysis-reports-\d{4}-\d{2}-\d{2}\.csv", reports.export_filename("csv"))


class TestBuildRows:

    def test_one_row_per_analysis(self, reports, analyzed_scans):
        rows = reports.build_rows(analyzed_scans)

        assert [row["status"] for row in rows] == ["completed", "failed"]
        assert rows[0]["findings"] == "Glioma"
        assert rows[0]["model_version"] == "v2.1"
        assert rows[1]["findings"] is None

    def test_filter_by_analysis_status(self, reports, analyzed_scans):
        rows = reports.build_rows(analyzed_scans, analysis_status=AnalysisStatus.FAILED)

        assert len(rows) == 1
        assert rows[0]["body_part"] == "Chest"


class TestCsvExport:

    def test_headers_and_values(self, reports, analyzed_scans):
        text = reports.to_csv(reports.build_rows(analyzed_scans))

        header = next(csv.reader(io.StringIO(text)))
        assert header == EXPORT_COLUMNS

        rows = read_csv(text)
        assert rows[0]["Confidence (%)"] == "91.2"
        assert rows[0]["AI Findings"] == "Glioma"
        assert rows[0]["Recommendations"] == "Refer to neuro-oncology"
        assert rows[0]["Notes"] == "Follow-up, left \"temporal\" lobe"
        assert rows[1]["Confidence (%)"] == "N/A"
        assert rows[1]["AI Findings"] == "N/A"
        assert rows[1]["Notes"] == "N/A"

    def test_every_cell_is_quoted(self, reports, analyzed_scans):
        text = reports.to_csv(reports.build_rows(analyzed_scans))

        assert text.splitlines()[0].startswith('"Scan ID","Scan Type"')

    def test_empty_export_keeps_headers(self, reports):
        text = reports.to_csv([])

        assert next(csv.reader(io.StringIO(text))) == EXPORT_COLUMNS
        assert read_csv(text) == []


class TestJsonExport:

    def test_json_document(self, reports, analyzed_scans):
        document = json.loads(reports.to_json(reports.build_rows(analyzed_scans)))

        assert document["count"] == 2
        assert document["analyses"][0]["confidence"] == pytest.approx(0.912)
        assert document["analyses"][1]["confidence"] is None

    def test_archived_scans_are_still_exported(self, reports, analyzed_scans, pipeline, store, admin):
        pipeline.orchestrator.archive_scan(analyzed_scans[0].id, admin)
        archived = store.get_scan(analyzed_scans[0].id)
        assert archived.status == ScanStatus.ARCHIVED

        document = json.loads(reports.to_json(reports.build_rows([archived])))
        assert document["count"] == 1
