"""CLI entry point for reelforge."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from reelforge.prompts import DEFAULT_MODE_ID, GENERATION_MODES
from reelforge.schemas import ALLOWED_DURATIONS

logger = logging.getLogger(__name__)


def setup_logging(log_dir: str = "output") -> None:
    """Configure logging with file and console handlers.

    - File handler: DEBUG level → ``{log_dir}/reelforge.log``
    - Console handler: INFO level → stderr
    """
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "reelforge.log")

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)

    root = logging.getLogger("reelforge")
    root.setLevel(logging.DEBUG)
    root.addHandler(fh)
    root.addHandler(ch)

    root.info("Logging initialised — file=%s (DEBUG), console (INFO)", log_path)


def _duration(raw: str) -> int | str:
    if raw == "auto":
        return raw
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid duration: {raw!r}") from None
    if value not in ALLOWED_DURATIONS:
        raise argparse.ArgumentTypeError(
            f"duration must be 'auto' or one of {', '.join(map(str, ALLOWED_DURATIONS))}"
        )
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reelforge",
        description="Turn a one-line idea into a storyboarded, rendered short film",
    )
    parser.add_argument("prompt", nargs="?", help="The idea (one or two sentences)")
    parser.add_argument(
        "--checkpoint",
        metavar="FILE",
        help="Resume from a saved checkpoint JSON instead of starting fresh",
    )
    parser.add_argument(
        "--rerun",
        type=int,
        metavar="N",
        help="Re-render shot N of a completed checkpoint (requires --checkpoint)",
    )
    parser.add_argument("--rerun-prompt", help="New prompt for the re-rendered shot")
    parser.add_argument(
        "--shots", type=int, default=None, help="Number of shots (1-12, default: model decides)"
    )
    parser.add_argument(
        "--duration",
        type=_duration,
        default=8,
        help="Per-shot duration in seconds (2/4/6/8) or 'auto'",
    )
    parser.add_argument("--aspect-ratio", default="16:9", help="Aspect ratio (default: 16:9)")
    parser.add_argument(
        "--mode",
        default=DEFAULT_MODE_ID,
        choices=sorted(GENERATION_MODES),
        help="Creative direction preset",
    )
    parser.add_argument("--no-music", action="store_true", help="Ask for no music in clips")
    parser.add_argument(
        "--no-mood-board", action="store_true", help="Skip mood board generation"
    )
    parser.add_argument(
        "--parallel-renders",
        action="store_true",
        help="Render clips concurrently instead of one at a time",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Write prompts to output/prompts/ instead of calling the API",
    )
    parser.add_argument("--config", metavar="FILE", help="Path to studio.json")
    parser.add_argument("--output-dir", default="output", help="Output directory")
    parser.add_argument(
        "--serve", action="store_true", help="Start the HTTP API instead of running"
    )
    parser.add_argument(
        "--port", type=int, default=8420, help="Port for the HTTP API (default: 8420)"
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.output_dir)

    from reelforge.config import load_studio_config

    config = load_studio_config(Path(args.config) if args.config else None)
    config = config.model_copy(update={"output_dir": args.output_dir})

    if args.dry_run:
        from reelforge.dry_run import DryRunGateway

        gateway = DryRunGateway(
            run_dir=args.output_dir, models=config.models
        )
        print(f"Dry run: prompts will be written to {args.output_dir}/prompts/")
    else:
        api_key = os.environ.get("GROK_API_KEY") or os.environ.get("XAI_API_KEY")
        if not api_key:
            print(
                "Error: No API key found.\n"
                "Set GROK_API_KEY in .env or as an environment variable.",
                file=sys.stderr,
            )
            sys.exit(1)
        from reelforge.gateway import GrokGateway

        gateway = GrokGateway(config)

    # ─── --serve mode: HTTP API only ──────────────────────────
    if args.serve:
        import uvicorn

        from reelforge.db import SqliteArtifactRecorder
        from reelforge.web import app, set_gateway, set_recorder

        set_gateway(gateway)
        set_recorder(SqliteArtifactRecorder(config.db_path))
        logger.info("Starting API server on port %d", args.port)
        print(f"API: http://localhost:{args.port}")
        uvicorn.run(app, host="0.0.0.0", port=args.port)
        return

    from reelforge.db import SqliteArtifactRecorder
    from reelforge.errors import PhaseInputError
    from reelforge.pipeline import load_checkpoint, run_pipeline, run_rerun
    from reelforge.schemas import GenerationOptions

    checkpoint_path = os.path.join(args.output_dir, "checkpoint.json")
    checkpoint = None
    if args.checkpoint:
        if not os.path.isfile(args.checkpoint):
            print(f"Error: checkpoint not found: {args.checkpoint}", file=sys.stderr)
            sys.exit(1)
        checkpoint = load_checkpoint(args.checkpoint)
        logger.info(
            "Loaded checkpoint %s at phase %s",
            checkpoint.session_id,
            checkpoint.phase.value,
        )

    if args.rerun is not None and checkpoint is None:
        print("Error: --rerun requires --checkpoint", file=sys.stderr)
        sys.exit(2)
    if checkpoint is None and not args.prompt:
        parser.print_help()
        sys.exit(0)

    recorder = SqliteArtifactRecorder(config.db_path)
    try:
        if args.rerun is not None:
            cp = run_rerun(
                checkpoint,
                args.rerun,
                gateway=gateway,
                config=config,
                prompt=args.rerun_prompt,
                recorder=recorder,
                checkpoint_path=checkpoint_path,
            )
        else:
            options = None
            if checkpoint is None:
                options = GenerationOptions(
                    aspect_ratio=args.aspect_ratio,
                    duration=args.duration,
                    num_shots=args.shots,
                    no_music=args.no_music,
                    use_mood_board=not args.no_mood_board,
                    mode_id=args.mode,
                    parallel_renders=args.parallel_renders,
                )
            cp = run_pipeline(
                args.prompt,
                options,
                gateway=gateway,
                config=config,
                checkpoint=checkpoint,
                recorder=recorder,
                checkpoint_path=checkpoint_path,
            )
    except PhaseInputError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    finally:
        recorder.close()

    if args.dry_run:
        print(f"Dry run summary: {gateway.write_summary()}")
    print(f"\nCheckpoint: {checkpoint_path}")
    if cp.phase.value == "error":
        sys.exit(1)


if __name__ == "__main__":
    main()
