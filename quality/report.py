"""JSON and HTML persistence of QA reports."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


def status_css_class(status: str) -> str:
    return "status-" + status.lower().replace(" ", "-")


class QAReportWriter:
    """Writes ``qa-report-<timestamp>.json`` and ``.html`` into a directory."""

    def __init__(self, reports_dir: Path):
        self.reports_dir = Path(reports_dir)
        self._env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(['html', 'xml']),
        )
        self._env.filters['status_class'] = status_css_class

    @staticmethod
    def _timestamp(report) -> str:
        stamp = report.generated_at.rstrip("Z")
        try:
            return datetime.fromisoformat(stamp).strftime("%Y-%m-%dT%H-%M-%S")
        except ValueError:
            return stamp.replace(":", "-").replace(".", "-")

    def render_html(self, report) -> str:
        template = self._env.get_template("qa_report.html")
        return template.render(report=report, summary=report.summary)

    def save(self, report, timestamp: Optional[str] = None) -> Dict[str, Path]:
        """Write both files and return their paths keyed ``json`` and ``html``."""
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        timestamp = timestamp or self._timestamp(report)

        json_path = self.reports_dir / f"qa-report-{timestamp}.json"
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(report.to_dict(), f, ensure_ascii=False, indent=2, default=str)

        html_path = self.reports_dir / f"qa-report-{timestamp}.html"
        html_path.write_text(self.render_html(report), encoding="utf-8")

        logger.info(f"QA report saved to {json_path} and {html_path}")
        return {"json": json_path, "html": html_path}
