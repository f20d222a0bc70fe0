#!/usr/bin/env python3
# epub_toolkit_cli.py
import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from etk_config import MODEL_BUDGETS, RunConfig, build_config, load_json_config, validate_epub_path
from etk_core import GenerationClient, ToolkitError
from etk_cost import make_counter
from etk_dispatch import RetryPolicy, run_pipeline
from etk_epub import assemble_book, book_meta, load_units
from etk_prompts import PRESETS

EPILOG = """\
examples:
  epub-toolkit -f input.epub -key YOUR_API_KEY -prompt "your prompt" \\
      -instruction "your instruction" -model gemini-1.5-pro
  epub-toolkit -f input.epub -d custom/output -cb 2 -ca 2 --preset modernise -model gemini-1.5-flash
  epub-toolkit -j args.json

JSON file format:
  {
    "file": "input.epub",
    "directory": "output",
    "contextBefore": 0,
    "contextAfter": 0,
    "APIKey": "YOUR_API_KEY",
    "prompt": "your prompt",
    "instruction": "your instruction",
    "model": "gemini-1.5-pro",
    "max_attempts": 5
  }
"""

# Switches that may still be combined with -j; every other flag comes from the file
JSON_COMPATIBLE = ("json_path", "list_chapters", "no_progress", "verbose")


def _parse_extras(pairs: Optional[List[str]]) -> Dict[str, str]:
    extras: Dict[str, str] = {}
    for raw in pairs or []:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"--set expects KEY=VALUE, got {raw!r}")
        extras[key.strip()] = value
    return extras


def build_parser() -> argparse.ArgumentParser:
    models = sorted(MODEL_BUDGETS)
    p = argparse.ArgumentParser(
        prog="epub-toolkit",
        description="Rewrite the chapters of an EPUB with a rate-limited text-generation model.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("-j", "--json", dest="json_path", help="Load arguments from JSON file")

    p.add_argument("-f", "--file", help="Input epub file path (required)")
    p.add_argument("-d", "--directory", help="Output directory for per-chapter results (default: output)")
    p.add_argument("-cb", "--context-before", type=int, dest="context_before", help="Chapters of context before (default: 0)")
    p.add_argument("-ca", "--context-after", type=int, dest="context_after", help="Chapters of context after (default: 0)")
    p.add_argument("-key", "--api-key", dest="api_key",
                   help="API key (default: $GEMINI_API_KEY, then $OPENAI_API_KEY)")
    p.add_argument("-prompt", "--prompt", help="Prompt placed before each chapter")
    p.add_argument("-instruction", "--instruction", help="System instruction for the model")
    p.add_argument("-model", "--model", help=f"Model name (available: {', '.join(models)})")
    p.add_argument("--preset", choices=sorted(PRESETS), help="Use a built-in instruction/prompt pair")
    p.add_argument("--set", action="append", dest="extras", metavar="KEY=VALUE",
                   help="Preset placeholder value, e.g. --set language=French (repeatable)")

    p.add_argument("--base-url", dest="base_url", help="OpenAI-compatible endpoint (default: Gemini)")
    p.add_argument("-o", "--output", help="Assembled EPUB path (default: <title>_output.epub)")
    p.add_argument("--max-attempts", type=int, dest="max_attempts", help="Attempts per chapter before giving up (default: 5)")
    p.add_argument("--backoff", type=float, dest="backoff_base", help="First retry delay in seconds, doubled per retry (default: 2)")
    p.add_argument("--backoff-max", type=float, dest="backoff_max", help="Retry delay cap in seconds (default: 60)")
    p.add_argument("--estimator", choices=["chars", "tiktoken"], help="Token estimate for rate spacing (default: chars)")
    p.add_argument("--max-workers", type=int, dest="max_workers", help="Cap on requests in flight; launches wait for a free worker (default: 0, no cap)")
    p.add_argument("--request-timeout", type=float, dest="request_timeout", help="Per-request timeout in seconds (default: 300)")

    p.add_argument("--list-chapters", action="store_true", help="List detected chapters and exit")
    p.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    p.add_argument("--verbose", action="store_true")
    return p


def config_values(args: argparse.Namespace, parser: argparse.ArgumentParser) -> Dict[str, Any]:
    """Collect settings from -j or from flags into one mapping for build_config."""
    if args.json_path:
        given = [k for k, v in vars(args).items() if k not in JSON_COMPATIBLE and v is not None]
        if given:
            parser.error(f"when using -j, no other flags should be provided (got: {', '.join(sorted(given))})")
        values = load_json_config(Path(args.json_path))
    else:
        values = {k: v for k, v in vars(args).items() if v is not None and k != "json_path"}
        try:
            values["extras"] = _parse_extras(args.extras)
        except argparse.ArgumentTypeError as e:
            parser.error(str(e))
    if args.verbose:
        values["verbose"] = True
    return values


def list_chapters(path: Path, directory: Path) -> int:
    _book, units, pending = load_units(path, directory, create_directory=False)
    todo = {u.identifier for u in pending}
    for u in units:
        mark = "" if u.identifier in todo else " (done)"
        print(f"{u.ordinal + 1:03d} | {u.identifier} | {len(u.content)} chars{mark}")
    return 0


def run(cfg: RunConfig, progress: bool = True) -> int:
    book, units, pending = load_units(cfg.file, cfg.directory, cfg.context_before, cfg.context_after,
                                      verbose=cfg.verbose)
    meta = book_meta(book)

    print(f"[info] {meta.title}: {len(units)} chapters, {len(units) - len(pending)} already processed",
          file=sys.stderr)

    if pending:
        client = GenerationClient(
            model=cfg.model,
            api_key=cfg.api_key,
            instruction=cfg.instruction,
            base_url=cfg.base_url,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            timeout=cfg.request_timeout,
            verbose=cfg.verbose,
        )
        try:
            summary = run_pipeline(
                pending,
                client.generate,
                prompt=cfg.prompt,
                budget=cfg.budget,
                directory=cfg.directory,
                policy=RetryPolicy(cfg.max_attempts, cfg.backoff_base, cfg.backoff_max),
                count_tokens=make_counter(cfg.estimator, cfg.model),
                max_workers=cfg.max_workers or None,
                progress=progress,
                verbose=cfg.verbose,
            )
        finally:
            client.close()

        print(f"[info] {len(summary.succeeded)}/{summary.total} chapters processed in {summary.attempts} requests",
              file=sys.stderr)
        if summary.failed:
            for err in summary.failed.values():
                print(f"[fail] {err}", file=sys.stderr)
            print(f"[warn] {len(summary.failed)} chapter(s) failed; re-run to retry them. Skipping assembly.",
                  file=sys.stderr)
            return 1

    dest = assemble_book(meta, cfg.directory, [u.identifier for u in units], cfg.output, verbose=cfg.verbose)
    print(f"[ok] wrote {dest}", file=sys.stderr)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        values = config_values(args, parser)
        if args.list_chapters:
            path = validate_epub_path(values.get("file") or "")
            return list_chapters(path, Path(values.get("directory") or "output"))
        cfg = build_config(values)
        return run(cfg, progress=not args.no_progress)
    except ToolkitError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("[error] interrupted; completed chapters are kept in the output directory", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
