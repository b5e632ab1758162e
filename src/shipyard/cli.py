"""Command line entry point for the server release pipeline.

Usage:
    python -m shipyard plan --source .
    python -m shipyard emit out/ --source .
    python -m shipyard run --source . --work-dir build
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence

from .backends import DockerBackend, LocalBackend, PipelineBackend
from .builders import ScriptBuilder
from .errors import ShipyardError
from .pipeline import Pipeline
from .recipes import server_release


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard", description="Server release pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    plan_p = sub.add_parser("plan", help="Validate the stage graph and print its order")
    _add_pipeline_args(plan_p)

    emit_p = sub.add_parser("emit", help="Write a BuildKit Dockerfile for the pipeline")
    emit_p.add_argument("output", help="Directory to write the Dockerfile into")
    _add_pipeline_args(emit_p)

    run_p = sub.add_parser("run", help="Build, extract and assemble the runtime image")
    _add_pipeline_args(run_p)
    run_p.add_argument("--backend", choices=("local", "docker"), default="local")
    run_p.add_argument(
        "--no-reuse",
        action="store_true",
        help="Always compile instead of restoring a cached artifact",
    )
    run_p.add_argument("--log-file", default=None, help="Write structured logs as JSON lines")
    return parser


def _add_pipeline_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--source", default=".", help="Source tree to build")
    parser.add_argument("--name", default="server", help="Pipeline and image name")
    parser.add_argument("--package", default="server", help="Cargo package to compile")
    parser.add_argument("--binary", default=None, help="Binary target (defaults to package)")
    parser.add_argument("--work-dir", default="build", help="Output directory")
    parser.add_argument("--cache-dir", default=None, help="Persistent cache directory")
    parser.add_argument(
        "--no-diagnostics",
        action="store_true",
        help="Leave profiling and symbol tooling out of the runtime image",
    )
    parser.add_argument(
        "--script",
        default=None,
        help="Shell command to compile with instead of cargo",
    )


def _pipeline_from_args(args: argparse.Namespace) -> Pipeline:
    return server_release(
        args.source,
        name=args.name,
        package=args.package,
        binary=args.binary,
        work_dir=args.work_dir,
        cache_dir=args.cache_dir,
        builder=ScriptBuilder(script=args.script) if args.script else None,
        include_diagnostics=not args.no_diagnostics,
    )


def cmd_plan(args: argparse.Namespace) -> int:
    pipeline = _pipeline_from_args(args)
    for stage in pipeline.plan():
        print(stage)
    print(f"digest: {pipeline.digest()}")
    return 0


def cmd_emit(args: argparse.Namespace) -> int:
    emission = _pipeline_from_args(args).emit_dockerfile(args.output)
    print(f"Wrote {emission.dockerfile}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    pipeline = _pipeline_from_args(args)
    pipeline.reuse_artifacts = not args.no_reuse
    backend: PipelineBackend = DockerBackend() if args.backend == "docker" else LocalBackend()
    try:
        result = pipeline.run(backend)
    finally:
        if args.log_file:
            pipeline.logger.to_json_lines(args.log_file)
    summary = {
        "pipeline": result.pipeline,
        "run_id": result.run_id,
        "stages": [stage.stage for stage in result.stages],
        "artifact": None if result.artifact is None else str(result.artifact.promoted_path),
        "image": None if result.image is None else result.image.reference,
        "digest": None if result.image is None else result.image.digest,
        "report": None if result.report_path is None else str(result.report_path),
    }
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    handlers = {"plan": cmd_plan, "emit": cmd_emit, "run": cmd_run}
    try:
        return handlers[args.command](args)
    except ShipyardError as exc:
        print(json.dumps(exc.to_dict(), indent=2, sort_keys=True), file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
