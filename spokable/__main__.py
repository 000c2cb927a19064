from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from typing import Iterable

from .cli import add_arguments, build_engine_config
from .config import load_engine_config
from .gemini_client import GeminiClient, GeminiError, GeminiSettings
from .pipeline import PlainTextExtractor, PlainTextRenderer, TransformJob, estimate_processing

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m spokable",
        description="Turn long documents into listenable, TTS-friendly text with Gemini.",
    )
    add_arguments(parser)
    return parser


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    try:
        config = build_engine_config(args, load_engine_config(args.config))
    except ValueError as exc:
        parser.error(str(exc))

    if args.list_models:
        if not config.api_key:
            parser.error("An API key is required (--api-key or SPOKABLE_API_KEY).")
        client = GeminiClient(GeminiSettings(base_url=config.base_url, timeout=config.timeout))
        try:
            models = client.list_models(config.api_key)
        except GeminiError as exc:
            _console_log("error", f"Could not list models: {exc}")
            return 1
        for entry in models:
            print(entry.get("name", "").replace("models/", "", 1))
        return 0

    if args.input is None:
        parser.error("--input is required.")
    if not args.input.is_file():
        parser.error(f"Input file not found: {args.input}")
    document = PlainTextExtractor().extract(args.input)

    if args.estimate:
        estimate = estimate_processing(document.text, config)
        print(
            f"{estimate.batches} batch(es), ~{estimate.total_tokens} tokens, "
            f"about {estimate.estimated_minutes} minute(s)."
        )
        return 0

    if not config.credentials:
        parser.error("An API key is required (--api-key or SPOKABLE_API_KEY).")

    output_dir = args.output.resolve()
    job = TransformJob(config, log_callback=_console_log, output_dir=output_dir)
    report = job.run(document.text, document.images)
    stem = args.input.stem
    text_path = PlainTextRenderer().render(report.output_text, report.summary, output_dir / f"{stem}_spoken.txt")
    report_path = report.write_report(output_dir / f"{stem}_report.json")
    summary = report.summary
    print(
        f"Transformed {summary.success}/{summary.total} batch(es), failed {summary.failure}. "
        f"Output saved to {text_path}.",
    )
    print(f"Report: {report_path}")
    print(f"Detailed log: {job.log_path}")
    return 0 if report.success else 1


def _console_log(level: str, message: str) -> None:
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    if level.lower() == "success":
        prefix = "[OK]"
    elif level.lower() == "warning":
        prefix = "[WARN]"
    elif level.lower() == "error":
        prefix = "[ERR]"
    else:
        prefix = "[INFO]"
    print(f"{prefix} [{timestamp}] {message}")


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
