#!/usr/bin/env python3
"""
Main entry point for the VLM Analysis Orchestrator
Provides command-line interface for analyzing page images with Vision Language Models
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import textwrap
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Note: orchestrator imports are moved to function-level
# to improve CLI startup time (--help, argument validation, etc.)
if TYPE_CHECKING:
    from orchestrator import ComponentFactory, JobReport, OrchestratorConfig, PageItem

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tif", ".tiff"}


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration with timestamped log files."""
    from orchestrator.misc import tz_now  # noqa: PLC0415 - lazy import for startup performance

    logs_dir = Path(".logs")
    logs_dir.mkdir(exist_ok=True)

    timestamp = tz_now().strftime("%Y-%m-%d_%H-%M-%S")
    log_filename = logs_dir / f"{timestamp}_analysis.log"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler(log_filename, encoding="utf-8")],
    )


def load_pages(input_path: Path) -> list[PageItem]:
    """Read page images from a file or a directory (sorted by file name).

    Raises:
        FileNotFoundError: If the path does not exist
        ValueError: If no image files are found
    """
    from orchestrator.types.items import PageItem  # noqa: PLC0415

    if not input_path.exists():
        raise FileNotFoundError(f"Input not found: {input_path}")

    if input_path.is_dir():
        files = sorted(p for p in input_path.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)
    else:
        files = [input_path] if input_path.suffix.lower() in IMAGE_EXTENSIONS else []

    if not files:
        raise ValueError(f"No page images found in {input_path}")

    return [PageItem.from_bytes(path.name, path.read_bytes()) for path in files]


def main() -> int:
    """CLI entry point."""
    parser = _build_argument_parser()
    args = parser.parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    return _execute_command(args, parser, logger)


def _build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="VLM Analysis Orchestrator - Multi-stage analysis of page images with resilient VLM calls",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """
            Examples:
              # Basic usage (gemini first, openai as fallback)
              python main.py --input pages/

              # Provider order and thorough mode
              python main.py --input pages/ --providers gemini,anthropic
              python main.py --input pages/ --thorough --detail-level exhaustive

              # Only print the batch plan and cost estimate
              python main.py --input pages/ --plan-only

              # Resume an interrupted job
              python main.py --input pages/ --resume .checkpoints/volume-1

              # Settings file plus overrides
              python main.py --input pages/ --config settings/orchestrator.yaml --max-retries 1
            """
        ),
    )

    parser.add_argument(
        "--input",
        "-i",
        type=str,
        help="Page image file or directory of page images (processed in file name order)",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=str,
        default="output/analysis.json",
        help="JSON report path (default: ./output/analysis.json)",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="YAML settings file (e.g., settings/orchestrator.yaml); CLI options override it",
    )

    provider_group = parser.add_argument_group("Providers")
    provider_group.add_argument(
        "--providers",
        type=str,
        help="Comma-separated providers or model names in priority order (e.g., gemini,openai or gpt-4o)",
    )
    provider_group.add_argument("--max-retries", type=int, help="Retries per provider before failover")
    provider_group.add_argument("--max-switches", type=int, help="Maximum provider switches per request")

    analysis_group = parser.add_argument_group("Analysis")
    analysis_group.add_argument(
        "--stages",
        type=str,
        help="Comma-separated analysis stages (default: overview,characters,timeline,relationships,themes)",
    )
    analysis_group.add_argument("--thorough", action="store_true", help="Run multiple passes per stage")
    analysis_group.add_argument(
        "--detail-level",
        type=str,
        choices=["standard", "deep", "exhaustive"],
        help="Thorough-mode detail level (deep: 2 passes, exhaustive: 3 passes)",
    )
    analysis_group.add_argument("--continue-on-error", action="store_true", help="Keep running stages after a failure")

    batch_group = parser.add_argument_group("Batching")
    batch_group.add_argument("--max-batch-size", type=int, help="Upper bound on pages per request")
    batch_group.add_argument("--overlap-size", type=int, help="Pages repeated between consecutive batches")

    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Print the batch plan and cost estimate and exit",
    )
    parser.add_argument(
        "--resume",
        type=str,
        help="Checkpoint directory; completed stages found there are skipped",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    return parser


def _execute_command(args: argparse.Namespace, parser: argparse.ArgumentParser, logger: logging.Logger) -> int:
    if not args.input:
        parser.error("the following arguments are required: --input/-i")
        return 1  # pragma: no cover - parser.error raises SystemExit

    try:
        # Lazy import: only load the orchestrator when actually processing input
        from orchestrator import ComponentFactory, OrchestratorConfig  # noqa: PLC0415
        from orchestrator.exceptions import ConfigurationError  # noqa: PLC0415

        config = OrchestratorConfig.from_cli(args)
        try:
            config.validate()
        except ConfigurationError as exc:
            logger.error("Invalid configuration: %s", exc)
            return 1

        pages = load_pages(Path(args.input))
        factory = ComponentFactory(config)

        if args.plan_only:
            _print_plan(factory, config, pages)
            return 0

        report = asyncio.run(_run_job(factory, pages, logger))
        _save_report(report, Path(args.output), logger)
        return 0 if report.success else 2
    except (FileNotFoundError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Process interrupted by user")
        return 1
    except Exception as exc:  # noqa: BLE001 - retain broad logging for CLI
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return 1


def _print_plan(factory: ComponentFactory, config: OrchestratorConfig, pages: list[PageItem]) -> None:
    from orchestrator.batch.planner import estimate_cost  # noqa: PLC0415
    from orchestrator.providers.registry import provider_registry  # noqa: PLC0415

    provider_ids = list(dict.fromkeys(provider_registry.resolve_name(name)[0] for name in config.providers))
    planner = config.planner(factory.settings)
    average_kb = sum(page.size_kb for page in pages) / len(pages)
    thorough = config.thorough_config()

    print(f"Pages: {len(pages)} (average {average_kb:.0f} KB)")
    for provider_id in provider_ids:
        plan = planner.plan(
            len(pages),
            average_item_kb=average_kb,
            thorough=thorough.enabled,
            detail_level=thorough.detail_level,
            provider_id=provider_id,
        )
        cost = estimate_cost(len(pages), provider_id, thorough=thorough.enabled, rates=factory.settings.rates)
        print(
            f"  {provider_id:<10} batches={plan.total_batches:<4} size={plan.batch_size:<3} "
            f"overlap={plan.overlap_size:<2} ~{plan.estimated_minutes} min "
            f"~{cost['estimated_tokens']:,} tokens ~${cost['estimated_cost']:.4f}"
        )


async def _run_job(factory: ComponentFactory, pages: list[PageItem], logger: logging.Logger) -> JobReport:
    from orchestrator.cancellation import CancellationToken  # noqa: PLC0415

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    gateway = factory.create_gateway()
    job = factory.create_job(gateway, pages)
    try:
        return await job.run(pages, token=token)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def _save_report(report: JobReport, output_path: Path, logger: logging.Logger) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    data: dict[str, Any] = report.to_dict()
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)

    for failure in report.failures:
        logger.warning("Batch %d stage %s failed: %s", failure.batch_index, failure.stage_id, failure.error)
    if report.cancelled:
        logger.warning(
            "Job cancelled (%s); partial results usable: %s", report.cancel_reason, report.partial_results_usable
        )
    logger.info("Results saved to: %s", output_path)


if __name__ == "__main__":
    sys.exit(main())
