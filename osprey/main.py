"""Command-line entrypoint for the Osprey action server."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from osprey.action import ActionServer, Goal
from osprey.config import LOG_LEVELS, ServerConfig
from osprey.engine.base import EngineHandle
from osprey.engine.loader import EngineLoadError, load_engine
from osprey.sampling import SamplingConfig
from osprey.utils.image import ImagePayload


def _parse_option(value: str) -> tuple[str, str]:
    key, sep, option = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Engine option '{value}' must be in the form key=value")
    return key, option


def _add_engine_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--engine",
        default=os.environ.get("OSPREY_ENGINE"),
        help="Engine factory as 'package.module:attribute' (default: $OSPREY_ENGINE)",
    )
    parser.add_argument(
        "--engine-option",
        dest="engine_options",
        type=_parse_option,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Keyword argument passed to the engine factory; may be repeated",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=None,
        help="Log level (default: $OSPREY_LOG_LEVEL or info)",
    )
    parser.add_argument(
        "--debug", action="store_true", default=None, help="Log every prompt received"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Single-flight streaming generation server")
    subparsers = parser.add_subparsers(dest="command")

    generate = subparsers.add_parser("generate", help="Run one goal locally and stream its tokens")
    _add_engine_args(generate)
    generate.add_argument("prompt", help="Prompt to generate a response for")
    generate.add_argument("--image", type=Path, help="Image file (jpeg/png/webp) to attach")
    generate.add_argument("--reset", action="store_true", help="Clear the engine session first")
    generate.add_argument("--temp", type=float, default=0.8, help="Sampling temperature")
    generate.add_argument("--top-k", type=int, default=40, help="Top-k cutoff; <= 0 keeps the whole vocabulary")
    generate.add_argument("--top-p", type=float, default=0.95, help="Nucleus sampling mass")
    generate.add_argument("--n-probs", type=int, default=1, help="Alternatives reported per token")
    generate.add_argument("--max-tokens", type=int, default=0, help="Token limit; 0 uses the engine default")

    serve = subparsers.add_parser("serve", help="Run the HTTP action server")
    _add_engine_args(serve)
    serve.add_argument("--host", help="Host address to bind the HTTP server (default: $OSPREY_HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Port to bind the HTTP server (default: $OSPREY_PORT or 8000)")
    serve.add_argument("--jpeg-quality", type=int, help="JPEG quality for goal images (default: $OSPREY_JPEG_QUALITY or 90)")
    serve.add_argument(
        "--url-safe-images",
        action="store_true",
        default=None,
        help="Send images to the engine with the URL-safe base64 alphabet",
    )

    return parser


def _configure_logging(level: str) -> None:
    numeric = logging.DEBUG if level == "trace" else getattr(logging, level.upper())
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine_options(args: argparse.Namespace) -> Dict[str, str]:
    return dict(args.engine_options)


def _require_engine(args: argparse.Namespace) -> str:
    if not args.engine:
        raise SystemExit("An engine must be given with --engine or OSPREY_ENGINE")
    return args.engine


def _load_engine(args: argparse.Namespace) -> EngineHandle:
    try:
        return load_engine(_require_engine(args), _engine_options(args))
    except EngineLoadError as exc:
        raise SystemExit(str(exc)) from exc


async def _handle_generate(args: argparse.Namespace) -> int:
    image: Optional[ImagePayload] = None
    if args.image is not None:
        try:
            image = ImagePayload(data=args.image.read_bytes(), encoding="auto")
        except OSError as exc:
            raise SystemExit(f"Unable to read image: {exc}") from exc

    sampling = SamplingConfig(
        temp=args.temp,
        top_k=args.top_k,
        top_p=args.top_p,
        n_probs=args.n_probs,
        max_tokens=args.max_tokens,
    )
    goal = Goal(prompt=args.prompt, image=image, reset=args.reset, sampling_config=sampling)

    server = ActionServer(_load_engine(args), debug=bool(args.debug))
    stream = await server.submit_streaming(goal)
    if stream is None:  # pragma: no cover - a fresh server has no active goal
        raise SystemExit("Goal was rejected")

    try:
        async for feedback in stream:
            print(feedback.token_text, end="", flush=True)
        result = await stream.result()
    except (KeyboardInterrupt, asyncio.CancelledError):
        server.cancel(stream.goal_id)
        result = await stream.result()
    print()

    metrics = result.metrics
    print(
        f"[{result.goal_id}] {result.status.value}: {metrics.output_tokens} tokens "
        f"(ttft={metrics.ttft_ms:.1f}ms, total={metrics.generation_time_ms:.1f}ms)",
        file=sys.stderr,
    )
    if result.error:
        print(f"error: {result.error}", file=sys.stderr)
        return 1
    return 0


def _serve_config(args: argparse.Namespace) -> ServerConfig:
    """Read ``OSPREY_*`` settings, then apply the flags given on the command line."""

    environ = dict(os.environ)
    environ["OSPREY_ENGINE"] = _require_engine(args)
    config = ServerConfig.from_env(environ)

    overrides: Dict[str, Any] = {
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level,
        "debug": args.debug,
        "jpeg_quality": args.jpeg_quality,
        "url_safe_images": args.url_safe_images,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if args.engine_options:
        overrides["engine_options"] = {**config.engine_options, **_engine_options(args)}
    return dataclasses.replace(config, **overrides)


def _handle_serve(args: argparse.Namespace) -> None:
    try:
        config = _serve_config(args)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    _configure_logging(config.log_level)

    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - dependency guard
        raise SystemExit(
            "uvicorn is required for server mode. Install it with 'pip install uvicorn'."
        ) from exc

    from osprey.server import create_app

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "generate":
        _configure_logging(args.log_level or "info")
        return asyncio.run(_handle_generate(args))
    if args.command == "serve":
        _handle_serve(args)
        return 0
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
