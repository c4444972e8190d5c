# utils.py
"""
Utility helpers: JSON loading, audit report generation, and console output.

- Uses Rich for colorful, wrapped tables in the terminal.
- Saves JSON, CSV, and HTML reports for audit and verify runs.
"""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import List, Dict, Optional
import csv
import html
import json
import os
from json import JSONDecodeError

from rich.console import Console
from rich.table import Table
from rich.text import Text

from models import Finding

_console = Console()


def load_json_file(path: str) -> dict:
    """
    Load JSON from a file and return a Python dict.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Input JSON file not found: {path}.")
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            return json.load(fh)
    except JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e.msg} (line {e.lineno} column {e.colno})") from e


def ensure_reports_dir(path: str = "reports") -> str:
    os.makedirs(path, exist_ok=True)
    return path


def max_severity(findings: List[Finding]) -> int:
    return max((f.severity for f in findings), default=0)


def findings_to_table_rows(findings: List[Finding]) -> List[List[str]]:
    rows: List[List[str]] = []
    for f in sorted(findings, key=lambda f: f.severity, reverse=True):
        rule_id = f.metadata.get("rule_id", "")
        rows.append([str(f.resource), str(f.issue), str(f.severity), rule_id, str(f.details or "")])
    return rows


def save_report(findings: List[Finding], mode: str, extra: Optional[dict] = None,
                out_dir: str = "reports") -> Dict[str, str]:
    """
    Save JSON, CSV, and HTML reports and return their paths.
    """
    out_dir = ensure_reports_dir(out_dir)
    now = datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"
    report = {
        "scan_time": now,
        "mode": mode,
        "summary": {
            "findings_count": len(findings),
            "max_severity": max_severity(findings),
        },
        "findings": [asdict(f) for f in findings],
    }
    if extra:
        report["extra"] = extra

    base_ts = now.replace(":", "-")
    json_path = os.path.join(out_dir, f"audit-{base_ts}-{mode}.json")
    csv_path = os.path.join(out_dir, f"audit-{base_ts}-{mode}.csv")
    html_path = os.path.join(out_dir, f"audit-{base_ts}-{mode}.html")

    # JSON
    with open(json_path, "w", encoding="utf-8") as fh:
        json.dump(report, fh, indent=2)

    # CSV
    fieldnames = ["resource", "issue", "severity", "rule_id", "details"]
    with open(csv_path, "w", encoding="utf-8", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for f in report["findings"]:
            row = {k: f.get(k, "") for k in fieldnames}
            row["rule_id"] = f.get("metadata", {}).get("rule_id", "")
            writer.writerow(row)

    # HTML
    html_rows: List[str] = []
    html_rows.append("<!doctype html>")
    html_rows.append("<html><head><meta charset='utf-8'><title>Git Scanning Infrastructure Audit</title>")
    html_rows.append("<style>body{font-family:Arial,Helvetica,sans-serif;margin:20px}table{border-collapse:collapse;width:100%}th,td{border:1px solid #ddd;padding:8px}th{background:#f2f2f2;text-align:left}tr:nth-child(even){background:#fafafa}pre{white-space:pre-wrap;word-wrap:break-word}</style>")
    html_rows.append("</head><body>")
    html_rows.append(f"<h2>Audit Report - {now} - mode: {html.escape(mode)}</h2>")
    html_rows.append(f"<p>Total findings: {len(report['findings'])}</p>")
    if extra:
        html_rows.append("<div><strong>Metadata:</strong><ul>")
        for k, v in extra.items():
            html_rows.append(f"<li>{html.escape(str(k))}: {html.escape(str(v))}</li>")
        html_rows.append("</ul></div>")
    html_rows.append("<table><thead><tr><th>Resource</th><th>Issue</th><th>Severity</th><th>Rule</th><th>Details</th></tr></thead><tbody>")
    for f in report["findings"]:
        cells = [
            html.escape(str(f.get("resource", ""))),
            html.escape(str(f.get("issue", ""))),
            html.escape(str(f.get("severity", ""))),
            html.escape(str(f.get("metadata", {}).get("rule_id", ""))),
        ]
        details = html.escape(str(f.get("details", "")))
        html_rows.append("<tr>" + "".join(f"<td>{c}</td>" for c in cells) + f"<td><pre>{details}</pre></td></tr>")
    html_rows.append("</tbody></table></body></html>")
    with open(html_path, "w", encoding="utf-8") as fh:
        fh.write("\n".join(html_rows))

    return {"json": json_path, "csv": csv_path, "html": html_path}

# --- Console printing with color/wrapping ---


def _rich_severity_text(sev: int) -> Text:
    """
    Return a Rich Text object styled by severity.
    """
    if sev >= 8:
        return Text(str(sev), style="bold red")
    if sev >= 5:
        return Text(str(sev), style="bold yellow")
    return Text(str(sev), style="green")


def print_summary_and_report_path(findings: List[Finding], report_paths: Dict[str, str],
                                  show_top: int = 5, print_full_table: bool = False,
                                  console: Optional[Console] = None):
    """
    Print a compact summary and a colorful table of findings.
    """
    console = console or _console
    total = len(findings)
    console.print("\n[bold]Audit summary:[/bold]")
    console.print(f"- Total findings: {total}")
    if total:
        console.print(f"- Highest severity: {max_severity(findings)}")
        rows = findings_to_table_rows(findings)
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Resource", style="cyan", overflow="fold")
        table.add_column("Issue", style="magenta")
        table.add_column("Severity", justify="right")
        table.add_column("Rule")
        table.add_column("Details", overflow="fold")
        for r in (rows if print_full_table else rows[:show_top]):
            table.add_row(r[0], r[1], _rich_severity_text(int(r[2])), r[3], r[4])
        console.print(table)
    if report_paths:
        console.print("\nSaved reports:")
        console.print(f"- JSON: {report_paths.get('json')}")
        console.print(f"- CSV:  {report_paths.get('csv')}")
        console.print(f"- HTML: {report_paths.get('html')}\n")
