"""CLI entry points for goldimage."""

from __future__ import annotations

import argparse
import dataclasses
import sys
import traceback
from pathlib import Path
from typing import Callable, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from goldimage.cancel import CancelToken, cancel_on_signals
from goldimage.config import load_builds, masked_variables, masked_view
from goldimage.constants import LIBVIRT_URI
from goldimage.coordinator import preflight, run_builds
from goldimage.driver import GuestDriver
from goldimage.exceptions import BuildError
from goldimage.models import BuildConfig, BuildResult
from goldimage.utils import get_env, kvm_available, log


def libvirt_driver_factory() -> GuestDriver:
    # imported lazily: validate and inspect work without the libvirt bindings
    from goldimage.libvirt_driver import LibvirtDriver

    return LibvirtDriver(get_env("LIBVIRT_URI") or LIBVIRT_URI)


def _add_template_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("template", type=Path, help="Build template (YAML)")
    parser.add_argument(
        "--var-file", dest="var_files", action="append", type=Path, default=[], metavar="FILE",
        help="YAML file of variable values; may be repeated, later files win",
    )
    parser.add_argument(
        "--var", dest="variables", action="append", default=[], metavar="NAME=VALUE",
        help="Set a template variable; wins over var files and the environment",
    )
    parser.add_argument(
        "--only", action="append", default=[], metavar="NAME",
        help="Restrict to the named build; may be repeated",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="goldimage",
        description="Build hardened golden images from an unattended install in an ephemeral VM",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    build = sub.add_parser("build", help="Run the builds described by a template")
    _add_template_args(build)
    build.add_argument("--parallel", type=int, default=1, metavar="N", help="Run up to N builds at once")
    build.add_argument("--manifest", type=Path, default=None, metavar="PATH", help="Override the manifest path")
    build.add_argument("--force", action="store_true", help="Replace existing artifacts with the same id")

    validate = sub.add_parser("validate", help="Check a template and its inputs without building")
    _add_template_args(validate)

    inspect = sub.add_parser("inspect", help="Print the resolved builds with secrets masked")
    _add_template_args(inspect)
    return parser


def _load(args) -> List[BuildConfig]:
    _, _, configs = load_builds(args.template, args.var_files, args.variables, args.only or None)
    if not configs:
        raise BuildError("Template defines no builds")
    return configs


def cmd_validate(args) -> int:
    configs = _load(args)
    for config in configs:
        preflight(config)
        log("SUCCESS", f"{config.name}: ok (artifact {config.artifact_id}, {len(config.boot_command)} boot steps)")
    if not kvm_available():
        log("WARN", "KVM: NOT available (guests will run under TCG, much slower)")
    log("SUCCESS", f"Template {args.template} is valid ({len(configs)} build(s))")
    return 0


def cmd_inspect(args) -> int:
    template, variables, configs = load_builds(args.template, args.var_files, args.variables, args.only or None)
    document = {
        "template": str(template.path),
        "variables": masked_variables(template, variables),
        "builds": [masked_view(config) for config in configs],
    }
    print(yaml.safe_dump(document, sort_keys=False, default_flow_style=False), end="")
    return 0


def _report(results: List[BuildResult]) -> int:
    exit_code = 0
    for result in results:
        job = result.job
        if result.success:
            files = ", ".join(job.manifest_entry.files) if job.manifest_entry else ""
            log("SUCCESS", f"{job.name}: {job.artifact.artifact_id} [{files}] ({job.build_id})")
            continue
        log("ERROR", f"{job.name}: failed in {result.error.state} (exit {result.exit_code}): {result.error}")
        output = getattr(result.error, "output", "")
        if output:
            log("ERROR", f"{job.name}: last provisioner output:\n{output}")
        cause = result.error.__cause__
        if result.exit_code == 1 and cause is not None:
            traceback.print_exception(type(cause), cause, cause.__traceback__)
        if exit_code == 0:
            exit_code = result.exit_code
    return exit_code


def cmd_build(args, driver_factory: Optional[Callable[[], GuestDriver]] = None) -> int:
    configs = _load(args)
    if args.parallel < 1:
        raise BuildError("--parallel must be at least 1")
    overrides = {"replace": bool(args.force)}
    if args.manifest is not None:
        overrides["manifest_path"] = args.manifest
    configs = [dataclasses.replace(config, **overrides) for config in configs]

    names = ", ".join(config.name for config in configs)
    log("INFO", f"Building {len(configs)} image(s): {names} (parallel={args.parallel})")
    if not kvm_available():
        log("WARN", "KVM: NOT available (TCG mode); installs will be slow")

    token = CancelToken()
    with cancel_on_signals(token):
        results = run_builds(configs, driver_factory or libvirt_driver_factory, args.parallel, token)
    return _report(results)


COMMANDS = {
    "build": cmd_build,
    "validate": cmd_validate,
    "inspect": cmd_inspect,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except BuildError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
