# kiln/cli.py
"""
kiln CLI

Commands:
  kiln install <name> [--jobs=N] [--keep-build-dir] [--timeout=DURATION]
                      [--reinstall] [--force] [--dry-run [--graph]]
  kiln test <name> [--timeout=DURATION]

Common options: --registry DIR (repeatable), --store DIR, --config FILE,
-v/--verbose, -q/--quiet, --json.

Exit codes: 0 ok, 1 resolution/descriptor/config error, 2 fetch or checksum,
3 build step, 4 install, 5 test failure, 130 interrupted.
"""

from __future__ import annotations

import sys
import json
import argparse
import threading
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kiln import config as kiln_config
from kiln import logging as kiln_logging
from kiln.descriptor import Registry
from kiln.errors import KilnError
from kiln.hooks import HookManager
from kiln.installer import Store
from kiln.orchestrator import Orchestrator, OutcomeStatus, RunReport
from kiln.resolver import to_dot
from kiln.verifier import VerifyStatus

console = Console(highlight=False)
logger = kiln_logging.get_logger("cli")

# lines of captured output shown for a failure
OUTPUT_TAIL_LINES = 25

# -----------------------
# Output helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

def _tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.rstrip().splitlines()[-lines:])

def _duration(val: str) -> float:
    try:
        return kiln_config.parse_duration(val) or 0.0
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))

def _positive_int(val: str) -> int:
    try:
        n = int(val)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {val!r}")
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n

# -----------------------
# Progress reporting (hook callbacks, called from worker threads)
# -----------------------
class ProgressPrinter:
    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self._active: List[str] = []
        self._lock = threading.Lock()
        self._status = None

    def attach(self, hooks: HookManager):
        hooks.register("*", self.on_event, name="cli-progress")

    def _refresh(self):
        if self._status is not None:
            self._status.update("building: " + (", ".join(self._active) or "..."))

    def on_event(self, event: str, ctx: Dict[str, Any]):
        name = ctx.get("name")
        with self._lock:
            if event == "pre-fetch":
                self._active.append(name)
                self._refresh()
                if not self.quiet:
                    print_info(f"==> {name}: fetching {ctx['descriptor'].source_url}")
            elif event == "pre-build" and not self.quiet:
                print_info(f"==> {name}: building")
            elif event == "post-install":
                if name in self._active:
                    self._active.remove(name)
                self._refresh()
                print_ok(f"{name} installed in {ctx['prefix'].path}")
            elif event == "post-test":
                result = ctx["result"]
                if result.status == VerifyStatus.FAILED:
                    print_warn(f"{name}: test failed (exit {result.exit_code}); install kept")
                elif result.status == VerifyStatus.PASSED and not self.quiet:
                    print_ok(f"{name}: test passed")
            elif event == "skipped" and not self.quiet:
                print_info(f"==> {name}: {ctx.get('reason')}")
            elif event == "failed":
                if name in self._active:
                    self._active.remove(name)
                self._refresh()
                print_err(str(ctx["error"]))

    def run(self, func, *args, **kwargs):
        """Call func under a status spinner when attached to a terminal."""
        if self.quiet or not console.is_terminal:
            return func(*args, **kwargs)
        with console.status("resolving...") as status:
            self._status = status
            try:
                return func(*args, **kwargs)
            finally:
                self._status = None

# -----------------------
# Report rendering
# -----------------------
_STATUS_STYLE = {
    OutcomeStatus.INSTALLED: "green",
    OutcomeStatus.ALREADY_INSTALLED: "dim",
    OutcomeStatus.TESTED: "green",
    OutcomeStatus.FAILED: "bold red",
    OutcomeStatus.DEPENDENCY_FAILED: "red",
}

def render_report(report: RunReport):
    table = Table(title=f"kiln {report.command} {report.target}")
    table.add_column("name")
    table.add_column("version")
    table.add_column("status")
    table.add_column("test")
    table.add_column("detail", overflow="fold")
    for o in report.ordered():
        style = _STATUS_STYLE.get(o.status, "")
        test = o.verification.status.value if o.verification else "-"
        if o.error is not None:
            detail = o.error.message
        else:
            detail = o.prefix or ""
        table.add_row(o.name, o.version, f"[{style}]{o.status.value}[/]", test, detail)
    console.print(table)

    origin = report.origin
    if origin is not None and origin.error is not None:
        err = origin.error
        body = _tail(err.output) or err.message
        title = f"{origin.name}: {err.phase} failed"
        console.print(Panel(body, title=title, border_style="red"))
        if origin.session_dir:
            print_info(f"build dir kept for inspection: {origin.session_dir}")
    for failure in report.test_failures:
        if failure.output.strip():
            console.print(Panel(_tail(failure.output), title=f"{failure.name}: test output", border_style="yellow"))

# -----------------------
# Parser
# -----------------------
def make_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--registry", action="append", metavar="DIR",
                        help="descriptor directory or file (repeatable; default from config)")
    common.add_argument("--store", metavar="DIR", help="root of install prefixes")
    common.add_argument("--config", metavar="FILE", help="config file")
    common.add_argument("--timeout", type=_duration, metavar="DURATION",
                        help="timeout per fetch, build step and test (e.g. 90, 30s, 5m, 1h30m; 0 disables)")
    common.add_argument("-j", "--jobs", type=_positive_int, help="parallel worker count")
    common.add_argument("--keep-build-dir", action="store_true", default=None, help="do not remove build sessions")
    common.add_argument("-v", "--verbose", action="count", default=0, help="more logging (-vv for debug)")
    common.add_argument("-q", "--quiet", action="store_true", help="only errors and the summary")
    common.add_argument("--json", action="store_true", help="print the run report as JSON")

    ap = argparse.ArgumentParser(prog="kiln", description="kiln formula-driven build orchestrator")
    sub = ap.add_subparsers(dest="cmd", metavar="COMMAND")
    sub.required = True

    p_install = sub.add_parser("install", parents=[common], help="build and install a descriptor and its dependencies")
    p_install.add_argument("name")
    p_install.add_argument("--reinstall", action="store_true", help="rebuild the target even if installed")
    p_install.add_argument("--force", action="store_true", help="replace prefixes holding a different build")
    p_install.add_argument("--dry-run", action="store_true", help="print the install order and exit")
    p_install.add_argument("--graph", action="store_true", help="with --dry-run: print Graphviz DOT instead")

    p_test = sub.add_parser("test", parents=[common], help="run the test step of an installed descriptor")
    p_test.add_argument("name")
    return ap

# -----------------------
# Entry point
# -----------------------
def _log_level(args) -> Optional[str]:
    if args.quiet:
        return "ERROR"
    if args.verbose >= 2:
        return "DEBUG"
    if args.verbose == 1:
        return "INFO"
    return None

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)

    try:
        kiln_config.load(args.config, fatal=True)
        kiln_logging.configure(_log_level(args))
        cfg = kiln_config.get_config()
        registry = Registry.from_paths(args.registry or cfg.get("registry.paths") or [])
        hooks = HookManager()
        orch = Orchestrator(
            registry,
            store=Store(args.store),
            jobs=args.jobs,
            timeout=args.timeout,
            keep_build_dir=args.keep_build_dir,
            hooks=hooks,
        )

        if args.cmd == "install" and args.dry_run:
            order = orch.plan(args.name)
            if args.graph:
                sys.stdout.write(to_dot(order))
            elif args.json:
                console.print_json(json.dumps([d.to_dict() for d in order]))
            else:
                for i, d in enumerate(order, 1):
                    installed = " (installed)" if orch.store.is_installed(d) else ""
                    console.print(f"{i:3d}. {d.name} {d.version}{installed}")
            return 0

        progress = ProgressPrinter(quiet=args.quiet or args.json)
        progress.attach(hooks)
        if args.cmd == "install":
            report = progress.run(orch.install, args.name, reinstall=args.reinstall, force=args.force)
        else:
            report = progress.run(orch.test, args.name)
    except KilnError as e:
        logger.debug("command failed", exc_info=True)
        if getattr(args, "json", False):
            console.print_json(json.dumps(e.to_dict()))
        else:
            print_err(str(e))
            if e.output.strip():
                console.print(Panel(_tail(e.output), border_style="red"))
        return e.EXIT_STATUS
    except KeyboardInterrupt:
        print_warn("interrupted")
        return 130

    if args.json:
        console.print_json(json.dumps(report.to_dict()))
    else:
        render_report(report)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
