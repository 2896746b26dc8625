"""Build one ECS image from ALICLOUD_* environment variables.

Usage:
    ALICLOUD_REGION=cn-hangzhou ALICLOUD_INSTANCE_TYPE=ecs.g6.large \\
    ALICLOUD_SOURCE_IMAGE=ubuntu_22_04_x64_20G_alibase_20240130.vhd \\
    ALICLOUD_IMAGE_NAME=base-image python -m image_builder --json-logs

Output:
    Structured log to stderr. Image ids (region: image id) to stdout.
    Exit code 0 on success or when the image already exists, 1 when the
    build failed, 2 when the settings are invalid.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Sequence

from .builder import BuildResult, ImageBuilder
from .errors import ConfigurationError
from .observability import configure_logging
from .settings import BuilderSettings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ecs-image-builder",
        description="Build an Alibaba Cloud ECS image from ALICLOUD_* settings.",
    )
    parser.add_argument("--build-id", default=None, help="Correlation id for log entries")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit JSON log lines (default: LOG_FORMAT env var)",
    )
    return parser


def _report(result: BuildResult, image_name: str) -> int:
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if result.skipped:
        print(f"Image {image_name} already exists, nothing built")
        return EXIT_OK
    if not result.success:
        print(f"Build failed: {result.error}", file=sys.stderr)
        return EXIT_FAILED
    for region, image_id in result.images.items():
        print(f"{region}: {image_id}")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    configure_logging(level=args.log_level, json_output=args.json_logs)

    try:
        settings = BuilderSettings.from_env()
        builder = ImageBuilder(settings)
    except (ConfigurationError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    result = asyncio.run(builder.build(args.build_id))
    return _report(result, settings.image_name)


if __name__ == "__main__":
    sys.exit(main())
