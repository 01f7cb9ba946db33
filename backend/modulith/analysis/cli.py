"""
Boundary analysis command line.

    modulith-check PROJECT_ROOT [--descriptors PATH] [--format json|text]
                   [--output FILE] [--workers N]

Exit codes: 0 no violations, 1 violations found, 2 the analysis could not
complete (bad descriptors, unresolved module, unparsable source).
"""

import argparse
import json
import sys
from pathlib import Path

from modulith.core.config import AnalysisConfig, get_settings
from modulith.core.enums import ReportFormat
from modulith.core.errors import ModulithError
from modulith.core.logging import configure_logging, get_logger
from modulith.descriptors import DescriptorStore

from .models import AnalysisReport
from .runner import AnalysisRunner

logger = get_logger(__name__)

EXIT_ANALYSIS_ERROR = 2
DEFAULT_DESCRIPTOR_FILES = ("modules.yaml", "modules.yml", "modules.json")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modulith-check",
        description="Check module boundaries of a modular monolith",
    )
    parser.add_argument("project_root", help="Root directory of the analyzed project")
    parser.add_argument(
        "--descriptors",
        help="Descriptor file or directory (default: modules.yaml in the project "
        "root, else every module.yaml below it)",
    )
    parser.add_argument(
        "--format",
        choices=[f.value for f in ReportFormat],
        default=ReportFormat.JSON.value,
        help="Report format",
    )
    parser.add_argument("--output", help="Write the report to a file instead of stdout")
    parser.add_argument("--workers", type=int, help="Extraction worker threads")
    parser.add_argument(
        "--no-edges", action="store_true", help="Omit the edge list from JSON reports"
    )
    return parser


def resolve_descriptor_path(project_root: Path, explicit: str | None) -> Path:
    if explicit:
        return Path(explicit)

    configured = get_settings().analysis.descriptors_path
    if configured:
        return Path(configured)

    for name in DEFAULT_DESCRIPTOR_FILES:
        candidate = project_root / name
        if candidate.is_file():
            return candidate
    return project_root


def render_report(report: AnalysisReport, fmt: ReportFormat, include_edges: bool = True) -> str:
    if fmt == ReportFormat.JSON:
        return json.dumps(report.to_dict(include_edges=include_edges), indent=2)

    lines = [
        f"Verdict: {report.verdict.upper()}",
        f"Modules: {', '.join(report.modules)}",
        f"Units analyzed: {report.units_analyzed}",
        f"Edges: {len(report.edges)}",
        f"Violations: {len(report.violations)}",
    ]
    for violation in report.violations:
        lines.append(
            f"  [{violation.reason}] {violation.source_module} -> "
            f"{violation.target_module} in {violation.unit}: {violation.symbol}"
        )
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    """Run the analysis and return the process exit code."""
    args = build_parser().parse_args(argv)
    project_root = Path(args.project_root)

    try:
        configure_logging()
        store = DescriptorStore.from_path(
            resolve_descriptor_path(project_root, args.descriptors)
        )
        config = AnalysisConfig(
            max_workers=args.workers or get_settings().analysis.max_workers
        )
        report = AnalysisRunner(store, project_root, config).run()
    except ModulithError as e:
        logger.error("Boundary analysis failed", error_code=e.code, error_message=e.message)
        print(json.dumps({"verdict": "error", "error": e.to_dict()}), file=sys.stderr)
        return EXIT_ANALYSIS_ERROR

    rendered = render_report(report, ReportFormat(args.format), not args.no_edges)
    if args.output:
        Path(args.output).write_text(rendered + "\n", encoding="utf-8")
    else:
        print(rendered)

    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
