"""CLI entry point for the Kontrakt engine.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``kontrakt = "kontrakt.cli:main"``. Parses
command-line arguments, loads an optional config YAML file, builds one
``TestSpecification`` per target and delegates to
``run_specifications()``.

Example::

    kontrakt shop.orders:OrderService --scenario --fake shop.repo:OrderRepository
"""

from __future__ import annotations

import argparse
import importlib
from pathlib import Path
import sys
from typing import TYPE_CHECKING, Any

import yaml

from kontrakt.engine import apply_env_overrides, configure_logging, run_specifications
from kontrakt.errors import KontraktError
from kontrakt.models import (
    DependencyMetadata,
    EngineConfig,
    MockingStrategy,
    StatusKind,
    TestMode,
    TestSpecification,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from kontrakt.models import TestResult

_USAGE_ERROR = 2


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser``.
    """
    parser = argparse.ArgumentParser(
        prog="kontrakt",
        description="Kontrakt: generated fixtures and contract tests for Python classes.",
    )
    parser.add_argument(
        "targets",
        nargs="+",
        metavar="TARGET",
        help="Class under test as module:Class.",
    )
    parser.add_argument(
        "--scenario",
        action="store_true",
        help="Run the @scenario methods of each target (default when no mode is given).",
    )
    parser.add_argument(
        "--contract",
        action="append",
        default=[],
        metavar="MODULE:IFACE",
        help="Check each target against an interface; repeatable.",
    )
    parser.add_argument(
        "--data",
        action="append",
        default=[],
        metavar="MODULE:TYPE",
        help="Check the equality and hash contract of a value type; repeatable.",
    )
    parser.add_argument(
        "--mock",
        action="append",
        default=[],
        metavar="MODULE:TYPE",
        help="Provide this dependency as a stateless mock; repeatable.",
    )
    parser.add_argument(
        "--fake",
        action="append",
        default=[],
        metavar="MODULE:TYPE",
        help="Provide this dependency as a stateful in-memory fake; repeatable.",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for every test.")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional EngineConfig YAML file.",
    )
    parser.add_argument(
        "--parallelism", type=int, default=None, help="Number of worker threads."
    )
    parser.add_argument("--trace-dir", default=None, help="Root directory of trace journals.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Keep framework frames in stack traces and log at DEBUG level.",
    )
    return parser


def _load_yaml(path: str, label: str) -> dict[str, Any]:
    """Load and validate a YAML file as a dict.

    Args:
        path: File path to the YAML file.
        label: Human-readable label for error messages.

    Returns:
        The parsed YAML content as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a dict.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"{label} file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        msg = f"{label} file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)

    return data


def _import_object(reference: str) -> Any:
    """Resolve ``module:attr.path`` to the named object.

    Raises:
        ValueError: If *reference* is malformed or cannot be resolved.
    """
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        msg = f"expected module:Name, got {reference!r}"
        raise ValueError(msg)
    try:
        obj: Any = importlib.import_module(module_name)
        for part in attr_path.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as exc:
        msg = f"cannot resolve {reference!r}: {exc}"
        raise ValueError(msg) from exc
    return obj


def _build_config(args: argparse.Namespace) -> EngineConfig:
    """Config file values, overridden by explicit flags, then env vars."""
    data: dict[str, Any] = {}
    if args.config is not None:
        data = _load_yaml(args.config, "config")
    if args.seed is not None:
        data["seed"] = args.seed
    if args.parallelism is not None:
        data["parallelism"] = args.parallelism
    if args.trace_dir is not None:
        data["trace_dir"] = args.trace_dir
    if args.verbose:
        data["verbose"] = True
        data["log_level"] = "DEBUG"
    return apply_env_overrides(EngineConfig(**data))


def _build_specifications(args: argparse.Namespace) -> list[TestSpecification]:
    modes: list[TestMode] = []
    if args.scenario or not (args.contract or args.data):
        modes.append(TestMode.user_scenario())
    modes.extend(TestMode.contract_auto(_import_object(ref)) for ref in args.contract)
    modes.extend(TestMode.data_compliance(_import_object(ref)) for ref in args.data)

    dependencies = [
        _dependency(ref, MockingStrategy.stateless_mock()) for ref in args.mock
    ] + [_dependency(ref, MockingStrategy.stateful_fake()) for ref in args.fake]

    return [
        TestSpecification(
            target=_import_object(ref),
            modes=tuple(modes),
            required_dependencies=tuple(dependencies),
            seed=args.seed,
        )
        for ref in args.targets
    ]


def _dependency(reference: str, strategy: MockingStrategy) -> DependencyMetadata:
    dependency_type = _import_object(reference)
    return DependencyMetadata(
        name=dependency_type.__name__, dependency_type=dependency_type, strategy=strategy
    )


def _print_results(results: Sequence[TestResult]) -> None:
    for result in results:
        status = result.status
        print(
            f"{status.kind.upper():<16} {result.target_name} "
            f"seed={result.seed} ({result.duration_seconds:.3f}s)"
        )
        if not status.is_passed and status.message:
            print(f"    {status.message}")
    passed = sum(1 for r in results if r.status.kind == StatusKind.PASSED)
    print(f"{passed}/{len(results)} passed")


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the kontrakt CLI application.

    Returns:
        Exit code: 0 when every test passed, 1 when a test failed or the
        engine raised, 2 on usage or configuration errors.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = _build_config(args)
        specifications = _build_specifications(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return _USAGE_ERROR

    configure_logging(config)

    try:
        results = run_specifications(specifications, config)
    except KontraktError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.diagnostics:
            print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1

    _print_results(results)
    return 0 if all(r.status.is_passed for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
