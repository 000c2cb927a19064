from __future__ import annotations

import argparse
from argparse import ArgumentParser
from pathlib import Path

from .config import EngineConfig


def add_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("-i", "--input", type=Path, required=False, help="Text file to transform (UTF-8).")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("spokable_output"),
        help="Destination for the spoken text, the JSON report and the job log.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml (user profile by default).")
    parser.add_argument(
        "--model",
        action="append",
        dest="models",
        default=None,
        help="Model tier, most capable first (repeat or comma-separate to build the fallback list).",
    )
    parser.add_argument("--api-key", default=None, help="Primary Gemini API key (or SPOKABLE_API_KEY).")
    parser.add_argument("--backup-api-key", default=None, help="Backup key used after rate limits or server errors.")
    parser.add_argument("--base-url", default=None, help="Override the Gemini API base URL.")
    parser.add_argument("--batch-size", type=int, default=None, help="Tokens per batch (default: config).")
    parser.add_argument("--overlap", type=int, default=None, help="Tokens shared by neighbouring batches.")
    parser.add_argument(
        "--turbo",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Process batches in parallel (default: config, off).",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Worker count in turbo mode.")
    parser.add_argument("--max-retries", type=int, default=None, help="Attempts per model before falling back.")
    parser.add_argument("--retry-delay", type=float, default=None, help="Base backoff delay in seconds.")
    parser.add_argument("--rate-limit-delay", type=float, default=None, help="Minimum seconds between requests.")
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds.")
    parser.add_argument(
        "--auto-retry",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Retry failed batches serially after the main pass (use --no-auto-retry to skip).",
    )
    parser.add_argument(
        "--min-success-rate",
        type=float,
        default=None,
        help="Mark the job failed when fewer than this percentage of batches succeed.",
    )
    parser.add_argument("--estimate", action="store_true", help="Print the batch estimate and exit.")
    parser.add_argument("--list-models", action="store_true", help="List the models available to the API key.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")


def build_engine_config(args: argparse.Namespace, config: EngineConfig) -> EngineConfig:
    models = None
    if args.models:
        models = [item for flag in args.models for item in flag.split(",") if item.strip()]
    updated = config.with_overrides(
        models=models,
        api_key=args.api_key,
        backup_api_key=args.backup_api_key,
        base_url=args.base_url,
        batch_size_tokens=args.batch_size,
        overlap_tokens=args.overlap,
        turbo_mode=args.turbo,
        max_concurrency=args.concurrency,
        max_retries=args.max_retries,
        retry_delay=args.retry_delay,
        rate_limit_delay=args.rate_limit_delay,
        timeout=args.timeout,
        auto_retry=args.auto_retry,
        min_success_rate=args.min_success_rate,
    )
    return updated.validate()
