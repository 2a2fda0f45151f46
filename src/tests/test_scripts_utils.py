import json
import os

import pytest

from utils.scripts_utils import (
    generate_csv,
    generate_report_content,
    merge_severity_counts,
    render_report,
    save_full_scan_results,
)


def test_merge_severity_counts_keeps_reported_keys():
    total = {}
    merge_severity_counts(total, {"critical": 1})
    merge_severity_counts(total, {"high": 2, "critical": 0})
    merge_severity_counts(total, {"medium": 0})
    merge_severity_counts(total, None)
    assert total == {"critical": 1, "high": 2, "medium": 0}


def test_save_full_scan_results(tmp_path):
    path = save_full_scan_results({"findings": [1, 2]}, base_dir=str(tmp_path), job_id="job-9")

    assert os.path.basename(path).startswith("full_scan_")
    assert path.endswith("_job-9.json")
    with open(path) as f:
        assert json.load(f) == {"findings": [1, 2]}


def test_generate_csv():
    rows = [{"target": "h1", "severity": "high"}, {"target": "h2", "cve": "CVE-1", "tags": ["a"]}]
    lines = generate_csv(rows).splitlines()
    assert lines[0] == "target,severity,cve,tags"
    assert lines[1] == "h1,high,,"
    assert lines[2] == 'h2,,CVE-1,"[""a""]"'
    assert generate_csv([]) == "No data available"


def test_generate_report_content_formats():
    rows = [{"target": "h1", "title": "<script>"}]
    assert "&lt;script&gt;" in generate_report_content(rows, "VULNERABILITIES", "html")
    assert json.loads(generate_report_content(rows, "RISKS", "json"))["title"] == "Risks Report"
    with pytest.raises(ValueError):
        generate_report_content(rows, "ASSETS", "docx")


def test_render_report_writes_file(tmp_path):
    path, size = render_report([{"target": "h1"}], "COMPLIANCE", "excel", base_dir=str(tmp_path), job_id="r1")

    assert path.endswith("_r1.csv")
    assert os.path.basename(path).startswith("compliance_report_")
    assert size == os.path.getsize(path)


def test_pdf_report_is_a_real_pdf(tmp_path):
    rows = [{"target": "10.0.0.1", "severity": "high", "title": "SQL Injection"}]
    path, size = render_report(rows, "VULNERABILITIES", "pdf", base_dir=str(tmp_path), job_id="p1")

    assert path.endswith("_p1.pdf")
    with open(path, "rb") as f:
        data = f.read()
    assert data.startswith(b"%PDF")
    assert size == len(data)
    assert generate_report_content([], "RISKS", "pdf").startswith(b"%PDF")
