"""Command-line entry point.

    churon providers
    churon info model.onnx
    churon run model.onnx -i x=input.npy -o outputs.npz --providers cuda,cpu

This is the only place that reads CHURON_* environment variables; the
resulting RuntimeConfig is passed explicitly to open_session().
"""

import argparse
import logging
import sys

import numpy as np

from .config import OPTIMIZATION_LEVELS, VALIDATION_MODES, RuntimeConfig
from .errors import ChuronError
from .session import open_session, runtime_info


def _parse_input(spec: str) -> tuple[str, np.ndarray]:
    """'name=path.npy' -> (name, array)."""
    name, sep, path = spec.partition("=")
    if not sep or not name or not path:
        raise argparse.ArgumentTypeError(
            f"input must look like NAME=FILE.npy, got {spec!r}"
        )
    try:
        return name, np.load(path, allow_pickle=False)
    except OSError as exc:
        raise argparse.ArgumentTypeError(f"cannot read input {name!r}: {exc}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="churon",
                                     description="Run ONNX models with ONNX Runtime")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="-v for info logging, -vv for debug")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("providers", help="Show the installed runtime and its providers")

    def add_session_args(p):
        p.add_argument("model", help="Path to an .onnx model file")
        p.add_argument("--providers", type=str, default=None,
                       help="Comma-separated execution providers in priority order")
        p.add_argument("--optimization", choices=OPTIMIZATION_LEVELS, default=None)
        p.add_argument("--threads", type=int, default=None,
                       help="Intra-op thread count (0 = engine default)")

    info = sub.add_parser("info", help="Describe a model's inputs and outputs")
    add_session_args(info)

    run = sub.add_parser("run", help="Run a model on .npy inputs")
    add_session_args(run)
    run.add_argument("-i", "--input", dest="inputs", action="append", default=[],
                     type=_parse_input, metavar="NAME=FILE.npy",
                     help="Input tensor (repeatable)")
    run.add_argument("-o", "--output", type=str, default=None,
                     help="Write outputs to this .npz file")
    run.add_argument("--validation", choices=VALIDATION_MODES, default=None)
    run.add_argument("--warmup", action="store_true",
                     help="Run once on zero inputs before the real run")
    return parser


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "providers":
        info = runtime_info()
        print(f"onnxruntime {info['version']} ({info['device']})")
        print(f"Available providers: {', '.join(info['available_providers'])}")
        return 0

    try:
        config = RuntimeConfig.from_env().with_overrides(
            optimization=args.optimization,
            intra_op_threads=args.threads,
            validation=getattr(args, "validation", None),
        )
        providers = args.providers.split(",") if args.providers else None

        with open_session(args.model, providers=providers, config=config) as session:
            if args.command == "info":
                print(session.summary())
                return 0

            if args.warmup:
                session.warmup()
            outputs = session.run(args.inputs)
            for name, value in outputs.items():
                print(f"{name}: shape={list(value.shape)} dtype={value.dtype}")
            if args.output:
                np.savez(args.output, **outputs)
                print(f"Wrote {len(outputs)} output(s) to {args.output}")
            print(session.stats)
    except (ChuronError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
