"""Command line summary of the parameters stored in an archive."""

from pathlib import Path
from typing import Optional, Sequence

from paramarchive.errors import LoadError
from paramarchive.loader import LoggingObserver, load_module
from paramarchive.objects import Module

import argparse
import logging
import sys
import yaml


def _parameter_rows(module: Module) -> list[dict]:
    return [
        {
            "name": name,
            "shape": list(tensor.shape),
            "dtype": str(tensor.dtype),
        }
        for name, tensor in module.named_parameters().items()
    ]


def render_summary(module: Module, format: str = "yaml") -> str:
    """Render the root class and the parameters of a module."""

    rows = _parameter_rows(module)
    if format == "yaml":
        document = {
            "model": module.name,
            "parameters": {
                row["name"]: {"shape": row["shape"], "dtype": row["dtype"]}
                for row in rows
            },
        }
        return yaml.safe_dump(document, sort_keys=False)

    if format != "table":
        raise ValueError(f"Unknown summary format: {format!r}")

    lines = [f"model: {module.name}"]
    if not rows:
        lines.append("(no parameters)")
        return "\n".join(lines) + "\n"

    name_width = max(len("name"), *(len(row["name"]) for row in rows))
    shape_width = max(len("shape"), *(len(str(tuple(row["shape"]))) for row in rows))
    lines.append(f"{'name':<{name_width}}  {'shape':<{shape_width}}  dtype")
    for row in rows:
        shape = str(tuple(row["shape"]))
        lines.append(f"{row['name']:<{name_width}}  {shape:<{shape_width}}  {row['dtype']}")
    return "\n".join(lines) + "\n"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paramarchive",
        description="Inspect the parameters stored in a serialized model archive.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    summary = subcommands.add_parser("summary", help="List the parameters of an archive.")
    summary.add_argument("path", type=Path, help="Archive file to read.")
    summary.add_argument("--device", default=None, help="Target device hint.")
    summary.add_argument(
        "--format",
        choices=("yaml", "table"),
        default="yaml",
        help="Output format (default: yaml).",
    )
    summary.add_argument(
        "-v", "--verbose", action="store_true", help="Log load progress to stderr."
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        module = load_module(args.path, device=args.device, observer=LoggingObserver())
    except LoadError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    sys.stdout.write(render_summary(module, format=args.format))
    return 0
