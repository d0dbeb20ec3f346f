"""layered-context: compose the context document of a directory.

Usage
-----
Run `layered-context --help` for full options. Common examples:
    - Standard context of the current directory on stdout:
        layered-context

    - Full project context written to a file, with run statistics:
        layered-context path/to/project --full --output context.md --stats

    - Settings from a YAML file, logs to a file:
        layered-context --config layered-context.yaml --log-file context.log
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from layered_context.config import LoadMode
from layered_context.engine import ContextEngine
from layered_context.exceptions import InvalidSettingsError, UnreadableDirectoryError
from layered_context.logging import logger, setup_logging
from layered_context.ordering import merge_statistics
from layered_context.settings import load_settings

if TYPE_CHECKING:
    from collections.abc import Sequence

    from layered_context.cache import CachedResult


class CliArgs(BaseModel):
    model_config = ConfigDict(frozen=True)

    directory: str = Field(default=".", description="Starting directory.")
    full: bool = Field(default=False, description="Full project mode.")
    refresh: bool = Field(default=False, description="Ignore cached results.")
    config: str = Field(default="", description="YAML settings file.")
    output: str = Field(default="", description="Output file; stdout when empty.")
    stats: bool = Field(default=False, description="Print run statistics on stderr.")
    log_file: str = Field(default="", description="Log file path.")


def parse_args(argv: Sequence[str] | None = None) -> CliArgs:
    p = argparse.ArgumentParser(
        prog="layered-context",
        description="Compose the layered context document of a directory.",
    )
    p.add_argument("directory", nargs="?", default=".", help="Starting directory.")
    p.add_argument("--full", action="store_true", help="Score every project file (full project mode).")
    p.add_argument("--refresh", action="store_true", help="Recompute even if a cached result is live.")
    p.add_argument("--config", type=str, default="", help="YAML settings file.")
    p.add_argument("--output", type=str, default="", help="Write the document here instead of stdout.")
    p.add_argument("--stats", action="store_true", help="Print run statistics on stderr.")
    p.add_argument("--log-file", type=str, default="", help="Log file path.")
    args = p.parse_args(argv)
    return CliArgs(**vars(args))


def format_stats(result: CachedResult) -> str:
    merged = merge_statistics(result.entry_snapshot)
    payload = {
        "files": result.stats.file_count,
        "total_bytes": result.stats.total_bytes,
        "truncated": result.stats.truncated_count,
        "elapsed_ms": round(result.stats.elapsed_ms, 1),
        "by_scope": {scope.value: n for scope, n in merged.entries_by_scope.items() if n},
        "priority_range": [merged.min_priority, merged.max_priority],
        "errors": list(result.errors),
    }
    return json.dumps(payload, indent=2)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.config or None)
    except InvalidSettingsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    log_file = args.log_file or settings.log_file
    if log_file:
        setup_logging(log_file)

    mode = LoadMode.FULL if args.full else LoadMode.STANDARD
    with ContextEngine(settings) as engine:
        try:
            if args.refresh:
                result = engine.force_refresh(args.directory, mode=mode)
            elif mode is LoadMode.FULL:
                result = engine.load_full_context(args.directory)
            else:
                result = engine.load_context(args.directory)
        except UnreadableDirectoryError as e:
            logger.error("cli_unreadable_directory", directory=args.directory, error=str(e))
            print(f"error: {e}", file=sys.stderr)
            return 1

    if args.output:
        out_path = Path(args.output)
        out_path.write_text(result.composed_document, encoding="utf-8")
        print(f"Wrote {out_path} mode={mode.value} files={result.stats.file_count}", file=sys.stderr)
    else:
        sys.stdout.write(result.composed_document)

    if args.stats:
        print(format_stats(result), file=sys.stderr)
    for err in result.errors:
        logger.warning("context_run_error", error=err)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
