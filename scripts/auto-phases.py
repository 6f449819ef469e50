#!/usr/bin/env -S python3 -u
"""
Auto-Phases: hands-free phase execution for Claude Code.

Walks .planning/phases/<N>-<label>/ for a range of phases, asks Claude to
plan any phase that has no plans yet, then executes every incomplete plan in
its own fresh Claude session. A plan is done when its SUMMARY file exists,
so the run can be interrupted at any point and simply started again.
Whenever Claude's output asks for a human, the run pauses at the console.

Usage:
    python scripts/auto-phases.py START END [--project-dir PATH] [--dry-run] [--verbose]

Graceful stop (takes effect before the next phase or plan):
    touch .planning/STOP

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import importlib.util
import itertools
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

# run-guards.py has a hyphen in the filename, so load it through importlib
_guards_spec = importlib.util.spec_from_file_location(
    "run_guards", Path(__file__).resolve().parent / "run-guards.py")
_guards_mod = importlib.util.module_from_spec(_guards_spec)
_guards_spec.loader.exec_module(_guards_mod)
Notifier = _guards_mod.Notifier
SleepInhibitor = _guards_mod.SleepInhibitor

# ─── Configuration ────────────────────────────────────────────────────

# All paths are relative to the project root
PHASES_DIR = ".planning/phases"
AUTO_LOG_DIR = ".planning/logs/auto"
STOP_MARKER_PATH = ".planning/STOP"
CONFIG_PATH = ".planning/auto-phases.yaml"

PLAN_SUFFIX = "-PLAN.md"
SUMMARY_SUFFIX = "-SUMMARY.md"

# Only the head of a plan file is read when looking for frontmatter
FRONTMATTER_SCAN_LINES = 20
FRONTMATTER_DELIMITER = "---"
AUTONOMOUS_FALSE_PATTERN = re.compile(
    r"^\s*autonomous\s*:\s*[\"']?false[\"']?\s*(?:#.*)?$", re.IGNORECASE
)

# Literal phrases in Claude's output that mean "stop and get a human".
# Order matters: the first phrase in this list that appears wins.
INTERRUPTION_PATTERNS = [
    "CHECKPOINT REACHED",
    "CHECKPOINT: Verification Required",
    "CHECKPOINT: Action Required",
    "CHECKPOINT: Decision Required",
    "YOUR ACTION:",
    "human_needed",
    "gaps_found",
]

DEFAULT_CLAUDE_FLAGS = ["--dangerously-skip-permissions"]
DEFAULT_COMMAND_PREFIX = "/gsd:"

# Known locations for the claude binary
CLAUDE_BINARY_SEARCH_PATHS = [
    "/opt/homebrew/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/usr/local/lib/node_modules/@anthropic-ai/claude-code/cli.js",
]

# CLAUDECODE is set by Claude Code to detect nested sessions; remove it so
# the runner can itself be started from inside a Claude Code session.
STRIPPED_ENV_VARS = ["CLAUDECODE"]

CHILD_SHUTDOWN_TIMEOUT_SECONDS = 10
READER_JOIN_TIMEOUT_SECONDS = 5
POLL_INTERVAL_SECONDS = 0.5
PROGRESS_BYTES_PER_DOT = 1024
MAX_DOTS_PER_POLL = 5

# Run outcomes
STATUS_COMPLETED = "completed"
STATUS_HALTED = "halted"
HALT_STOP_REQUESTED = "stop-requested"
HALT_ERROR = "error"
HALT_INTERACTIVE = "interactive-required"
HALT_USER_STOP = "user-stop"

PROMPT_CONTINUE = "continue"
PROMPT_STOP = "stop"

console = Console()


@dataclass
class AutoPhasesConfig:
    """Project-level settings from .planning/auto-phases.yaml."""
    claude_command: list[str] = field(default_factory=list)
    claude_flags: list[str] = field(default_factory=lambda: list(DEFAULT_CLAUDE_FLAGS))
    command_prefix: str = DEFAULT_COMMAND_PREFIX
    prevent_sleep: bool = True
    desktop_notifications: bool = True


def _string_list(value: Any) -> Optional[list[str]]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    return None


def load_config(project_root: Path) -> AutoPhasesConfig:
    """Load .planning/auto-phases.yaml from the project root.

    A missing or unreadable file, or one that is not a mapping, yields the
    defaults. Values of the wrong type are ignored key by key.
    """
    config = AutoPhasesConfig()
    try:
        with open(Path(project_root) / CONFIG_PATH, "r") as f:
            data = yaml.safe_load(f)
    except (IOError, yaml.YAMLError):
        return config

    if not isinstance(data, dict):
        return config

    command = _string_list(data.get("claude_command"))
    if command:
        config.claude_command = command

    flags = _string_list(data.get("claude_flags"))
    if flags is not None:
        config.claude_flags = flags

    prefix = data.get("command_prefix")
    if isinstance(prefix, str):
        config.command_prefix = prefix

    for key in ("prevent_sleep", "desktop_notifications"):
        value = data.get(key)
        if isinstance(value, bool):
            setattr(config, key, value)

    return config


# ─── Logging ──────────────────────────────────────────────────────────


def log(message: str) -> None:
    """Print a timestamped log message."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [AUTO-PHASES] {message}", flush=True)


def format_duration(seconds: float) -> str:
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs}s"


# ─── Run Context ──────────────────────────────────────────────────────


@dataclass
class RunContext:
    """Everything one run needs, passed explicitly to each step.

    The step counter and timing live here and nowhere else; completion state
    is always re-read from the filesystem.
    """
    project_root: Path
    start_phase: int
    end_phase: int
    dry_run: bool = False
    verbose: bool = False
    config: AutoPhasesConfig = field(default_factory=AutoPhasesConfig)
    claude_cmd: list[str] = field(default_factory=lambda: ["claude"])
    notifier: Optional[Any] = None
    step: int = 0
    stopped: bool = False
    start_time: float = field(default_factory=time.time)
    active_process: Optional[subprocess.Popen] = None

    @property
    def phases_dir(self) -> Path:
        return self.project_root / PHASES_DIR

    @property
    def logs_dir(self) -> Path:
        return self.project_root / AUTO_LOG_DIR

    @property
    def stop_path(self) -> Path:
        return self.project_root / STOP_MARKER_PATH

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    def verbose_log(self, message: str) -> None:
        if self.verbose:
            timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            print(f"[{timestamp}] [VERBOSE] {message}", flush=True)

    def relative(self, path: Path) -> str:
        """Path relative to the project root when possible, in POSIX form."""
        try:
            return Path(path).relative_to(self.project_root).as_posix()
        except ValueError:
            return Path(path).as_posix()

    def notify(self, title: str, message: str, level: str = "info") -> None:
        """Best-effort notification; delivery problems never reach the run."""
        if self.notifier is None:
            return
        try:
            self.notifier.notify(title, message, level)
        except Exception as e:  # noqa: BLE001
            self.verbose_log(f"Notification failed: {e}")


# ─── Phase and Plan Scanning ─────────────────────────────────────────


@dataclass(frozen=True)
class PlanFile:
    """A NN-MM-PLAN.md file inside a phase directory."""
    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def stem(self) -> str:
        return self.path.stem

    @property
    def summary_path(self) -> Path:
        return summary_path_for(self.path)


def summary_path_for(plan_path: Path) -> Path:
    """05-01-PLAN.md -> 05-01-SUMMARY.md in the same directory."""
    name = plan_path.name
    return plan_path.with_name(name[:-len(PLAN_SUFFIX)] + SUMMARY_SUFFIX)


def find_phase_directories(phases_dir: Path, phase: int) -> list[Path]:
    """All directories whose name is the phase number (leading zeros allowed)
    followed by a non-digit, sorted by name."""
    pattern = re.compile(rf"^0*{phase}(?=\D)")
    if not phases_dir.is_dir():
        return []
    return sorted(
        (d for d in phases_dir.iterdir() if d.is_dir() and pattern.match(d.name)),
        key=lambda d: d.name,
    )


def is_sub_phase_directory(phase_dir: Path, phase: int) -> bool:
    """True for decimal sub-phases such as 05.1-hotfix under phase 5."""
    return re.match(rf"^0*{phase}\.", phase_dir.name) is not None


def resolve_phase_directory(phases_dir: Path, phase: int) -> Optional[Path]:
    """Pick the directory for a phase number.

    Directories for the phase itself are preferred over decimal sub-phases
    (5-auth over 5.1-hotfix). Re-planning can leave several directories for
    the same number: one that already holds plans wins, otherwise the
    lexicographically last (newest).
    """
    candidates = find_phase_directories(phases_dir, phase)
    if not candidates:
        return None
    exact = [d for d in candidates if not is_sub_phase_directory(d, phase)]
    candidates = exact or candidates
    with_plans = [d for d in candidates if list_plans(d)]
    return (with_plans or candidates)[-1]


def list_plans(phase_dir: Path) -> list[PlanFile]:
    """Plan files in a phase directory, in filename order. Never cached."""
    if not phase_dir.is_dir():
        return []
    return [
        PlanFile(p)
        for p in sorted(phase_dir.glob(f"*{PLAN_SUFFIX}"), key=lambda p: p.name)
        if p.is_file()
    ]


def is_plan_complete(phase_dir: Path, plan: PlanFile) -> bool:
    return (phase_dir / plan.summary_path.name).exists()


def requires_interactive(plan: PlanFile) -> bool:
    """True if the plan's frontmatter says autonomous: false.

    Only the first FRONTMATTER_SCAN_LINES lines are read. The block must open
    on the first line and close within that window; anything else counts as
    no frontmatter, which means the plan may run unattended.
    """
    try:
        # utf-8-sig drops a leading BOM so the opening delimiter still matches
        with open(plan.path, "r", encoding="utf-8-sig", errors="replace") as f:
            head = [line.rstrip("\r\n") for line in itertools.islice(f, FRONTMATTER_SCAN_LINES)]
    except (IOError, OSError):
        return False

    if not head or head[0].strip() != FRONTMATTER_DELIMITER:
        return False

    autonomous_false = False
    for line in head[1:]:
        if line.strip() == FRONTMATTER_DELIMITER:
            return autonomous_false
        if AUTONOMOUS_FALSE_PATTERN.match(line):
            autonomous_false = True

    # Unterminated block within the scan window
    return False


# ─── Stop Marker ─────────────────────────────────────────────────────


def check_and_consume_stop(ctx: RunContext) -> bool:
    """Check for .planning/STOP and delete it if found.

    Each marker stops exactly one run: whoever deletes it owns the stop.
    """
    stop_path = ctx.stop_path
    if not stop_path.exists():
        return False
    try:
        stop_path.unlink()
    except FileNotFoundError:
        # Consumed by another runner between the check and the delete
        return False
    log(f"Stop marker found and removed: {ctx.relative(stop_path)}")
    return True


# ─── Interruption Detection ──────────────────────────────────────────


def detect_interruption(output: str) -> Optional[str]:
    """Return the first INTERRUPTION_PATTERNS phrase present in output."""
    for phrase in INTERRUPTION_PATTERNS:
        if phrase in output:
            return phrase
    return None


# ─── Claude Invocation ───────────────────────────────────────────────


@dataclass
class InvocationResult:
    """Result of one Claude CLI run."""
    output: str
    exit_code: int
    log_path: Optional[Path]

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def resolve_claude_binary() -> list[str]:
    """Find the claude binary, checking PATH then known install locations."""
    claude_path = shutil.which("claude")
    if claude_path:
        return [claude_path]

    for search_path in CLAUDE_BINARY_SEARCH_PATHS:
        if os.path.isfile(search_path):
            node_path = shutil.which("node")
            if node_path:
                return [node_path, search_path]

    npx_path = shutil.which("npx")
    if npx_path:
        return [npx_path, "@anthropic-ai/claude-code"]

    log("WARNING: Could not find 'claude' binary. Steps will fail.")
    log("WARNING: Install with: npm install -g @anthropic-ai/claude-code")
    return ["claude"]


def build_child_env() -> dict[str, str]:
    """Build a clean environment for spawning Claude child processes."""
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    return env


def build_claude_command(ctx: RunContext, instruction: str) -> list[str]:
    return [*ctx.claude_cmd, *ctx.config.claude_flags, "--print", instruction]


class OutputCollector:
    """Collects output from a subprocess and tracks stats."""

    def __init__(self):
        self.lines: list[str] = []
        self.bytes_received: int = 0
        self.line_count: int = 0

    def add_line(self, line: str) -> None:
        self.lines.append(line)
        self.bytes_received += len(line.encode("utf-8"))
        self.line_count += 1

    def get_output(self) -> str:
        return "".join(self.lines)


def stream_output(pipe, prefix: str, collector: OutputCollector, show_full: bool) -> None:
    """Read a subprocess pipe line by line into the collector."""
    for line in iter(pipe.readline, ""):
        collector.add_line(line)
        if show_full:
            ts = datetime.now().strftime("%H:%M:%S")
            print(f"[{ts}] [{prefix}] {line.rstrip()}", flush=True)


def transcript_log_path(logs_dir: Path, step_label: str) -> Path:
    """<label>-<HHMMSS>.log, with a -N suffix if that name is taken."""
    safe_label = re.sub(r"[^\w.-]+", "-", step_label).strip("-") or "step"
    stamp = datetime.now().strftime("%H%M%S")
    path = logs_dir / f"{safe_label}-{stamp}.log"
    counter = 2
    while path.exists():
        path = logs_dir / f"{safe_label}-{stamp}-{counter}.log"
        counter += 1
    return path


def write_transcript(
    ctx: RunContext,
    step_label: str,
    instruction: str,
    exit_code: int,
    duration: float,
    collector: OutputCollector,
) -> Path:
    ctx.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = transcript_log_path(ctx.logs_dir, step_label)
    with open(log_path, "w", encoding="utf-8") as f:
        f.write("=== Claude Step Output ===\n")
        f.write(f"Step: {step_label}\n")
        f.write(f"Instruction: {instruction}\n")
        f.write(f"Timestamp: {datetime.now().isoformat()}\n")
        f.write(f"Duration: {duration:.1f}s\n")
        f.write(f"Return code: {exit_code}\n")
        f.write(f"Output lines: {collector.line_count}\n")
        f.write("\n=== OUTPUT ===\n")
        f.write(collector.get_output())
    return log_path


def invoke_claude(ctx: RunContext, instruction: str, step_label: str) -> InvocationResult:
    """Run one instruction in a fresh Claude process.

    stdout and stderr are merged. The full transcript is written under
    .planning/logs/auto/ before returning. Blocks until Claude exits.
    """
    cmd = build_claude_command(ctx, instruction)
    log(f"Starting: {step_label}")
    ctx.verbose_log(f"Command: {shlex.join(cmd)}")
    ctx.verbose_log(f"Working directory: {ctx.project_root}")

    collector = OutputCollector()
    start_time = time.time()
    exit_code = -1

    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=str(ctx.project_root),
            env=build_child_env(),
        )
    except OSError as e:
        log(f"ERROR: Could not start {cmd[0]}: {e}")
        collector.add_line(f"{type(e).__name__}: {e}\n")
    else:
        ctx.active_process = process
        try:
            reader = threading.Thread(
                target=stream_output,
                args=(process.stdout, step_label, collector, ctx.verbose),
                daemon=True,
            )
            reader.start()

            if not ctx.verbose:
                print(f"  [{step_label}] Working", end="", flush=True)
            last_bytes = 0
            while process.poll() is None:
                time.sleep(POLL_INTERVAL_SECONDS)
                if ctx.verbose:
                    continue
                new_kb = (collector.bytes_received - last_bytes) // PROGRESS_BYTES_PER_DOT
                if new_kb > 0:
                    print("." * min(new_kb, MAX_DOTS_PER_POLL), end="", flush=True)
                    last_bytes = collector.bytes_received

            reader.join(timeout=READER_JOIN_TIMEOUT_SECONDS)
            exit_code = process.returncode
        finally:
            ctx.active_process = None

        if not ctx.verbose:
            status = "done" if exit_code == 0 else f"FAILED (exit {exit_code})"
            print(
                f" {status} ({collector.line_count} lines, "
                f"{collector.bytes_received:,} bytes, {time.time() - start_time:.0f}s)",
                flush=True,
            )

    duration = time.time() - start_time
    log_path = write_transcript(ctx, step_label, instruction, exit_code, duration, collector)
    log(f"[Log saved to: {ctx.relative(log_path)}]")

    return InvocationResult(
        output=collector.get_output(),
        exit_code=exit_code,
        log_path=log_path,
    )


# ─── Console Prompt ──────────────────────────────────────────────────


def prompt_continue(question: str) -> bool:
    """Ask continue/stop at the console. End of input counts as stop."""
    try:
        answer = Prompt.ask(
            f"[bold]{escape(question)}[/bold]",
            choices=[PROMPT_CONTINUE, PROMPT_STOP],
            console=console,
        )
    except EOFError:
        log("No console input available; treating as stop.")
        return False
    return answer == PROMPT_CONTINUE


# ─── Run Loop ────────────────────────────────────────────────────────


@dataclass
class RunOutcome:
    """How a run ended."""
    status: str
    reason: Optional[str] = None
    phase: Optional[int] = None
    steps: int = 0
    message: str = ""

    @property
    def exit_code(self) -> int:
        return 1 if self.reason == HALT_ERROR else 0


def planning_instruction(ctx: RunContext, phase: int) -> str:
    return f"{ctx.config.command_prefix}plan-phase {phase}"


def execution_instruction(ctx: RunContext, plan: PlanFile) -> str:
    return f"{ctx.config.command_prefix}execute-plan {ctx.relative(plan.path)}"


def manual_command(ctx: RunContext, plan: PlanFile) -> str:
    """The interactive command a human runs for an autonomous: false plan."""
    return shlex.join([*ctx.claude_cmd, execution_instruction(ctx, plan)])


def halt(
    ctx: RunContext,
    reason: str,
    phase: Optional[int],
    message: str,
    log_path: Optional[Path] = None,
) -> RunOutcome:
    """Stop the whole run. Error halts notify right away."""
    ctx.stopped = True
    log(f"HALTED ({reason}): {message}")
    if log_path is not None:
        log(f"  Full transcript: {ctx.relative(log_path)}")
    if reason == HALT_ERROR:
        detail = message
        if log_path is not None:
            detail += f"\nLog: {ctx.relative(log_path)}"
        ctx.notify(f"Phase {phase} failed", detail, level="error")
    return RunOutcome(
        status=STATUS_HALTED, reason=reason, phase=phase,
        steps=ctx.step, message=message,
    )


def pause_for_human(
    ctx: RunContext, phase: int, pattern: str, what: str, result: InvocationResult
) -> bool:
    """Show why Claude stopped and ask whether to go on. True means continue."""
    log_rel = ctx.relative(result.log_path) if result.log_path else "(no log)"
    message = (
        f"Claude needs a human while {what}.\n"
        f"Matched: {pattern}\n"
        f"Transcript: {log_rel}"
    )
    console.print(Panel(escape(message), title=f"PAUSED: phase {phase}", border_style="yellow"))
    ctx.notify(f"Phase {phase} paused", f"{pattern} while {what}", level="warning")
    return prompt_continue("Handle it, then continue or stop?")


def plan_phase(ctx: RunContext, phase: int) -> Optional[RunOutcome]:
    """Ask Claude to plan a phase. Returns an outcome only when halting."""
    ctx.step += 1
    log(f"Step {ctx.step}: planning phase {phase}")
    result = invoke_claude(ctx, planning_instruction(ctx, phase), f"phase-{phase:02d}-plan")

    if not result.success:
        return halt(
            ctx, HALT_ERROR, phase,
            f"Planning phase {phase} failed (exit {result.exit_code})",
            result.log_path,
        )

    pattern = detect_interruption(result.output)
    if pattern and not pause_for_human(ctx, phase, pattern, f"planning phase {phase}", result):
        return halt(ctx, HALT_USER_STOP, phase, f"Stopped by user after planning phase {phase}")
    return None


def run_plan(ctx: RunContext, phase: int, phase_dir: Path, plan: PlanFile) -> Optional[RunOutcome]:
    """Execute one plan if it needs it. Returns an outcome only when halting."""
    if check_and_consume_stop(ctx):
        return halt(ctx, HALT_STOP_REQUESTED, phase, f"Stop requested before {plan.name}")

    if is_plan_complete(phase_dir, plan):
        log(f"  Skipping {plan.name} (summary exists)")
        return None

    if requires_interactive(plan):
        command = manual_command(ctx, plan)
        message = (
            f"{ctx.relative(plan.path)} is marked autonomous: false and must be run "
            f"interactively:\n  {command}\n"
            f"Then re-run auto-phases {phase} {ctx.end_phase} to continue."
        )
        console.print(Panel(escape(message), title="INTERACTIVE PLAN", border_style="cyan"))
        return halt(ctx, HALT_INTERACTIVE, phase, message)

    ctx.step += 1
    instruction = execution_instruction(ctx, plan)
    if ctx.dry_run:
        log(f"[DRY RUN] Step {ctx.step}: would run: {instruction}")
        return None

    log(f"Step {ctx.step}: executing {plan.name}")
    result = invoke_claude(ctx, instruction, plan.stem)

    if not result.success:
        return halt(
            ctx, HALT_ERROR, phase,
            f"{plan.name} failed (exit {result.exit_code})",
            result.log_path,
        )

    pattern = detect_interruption(result.output)
    if pattern and not pause_for_human(ctx, phase, pattern, f"executing {plan.name}", result):
        return halt(ctx, HALT_USER_STOP, phase, f"Stopped by user during {plan.name}")

    if is_plan_complete(phase_dir, plan):
        log(f"  {plan.name} complete")
        return None

    log(f"WARNING: {plan.name} finished but {plan.summary_path.name} was not written")
    if result.log_path is not None:
        log(f"  Transcript: {ctx.relative(result.log_path)}")
    ctx.notify(
        f"Phase {phase} needs a look",
        f"{plan.name} finished without {plan.summary_path.name}",
        level="warning",
    )
    if not prompt_continue(f"{plan.summary_path.name} is missing. Continue anyway or stop?"):
        return halt(ctx, HALT_USER_STOP, phase, f"Stopped by user: {plan.summary_path.name} missing")
    return None


def run_phase(ctx: RunContext, phase: int) -> Optional[RunOutcome]:
    """Run every remaining plan of one phase. Returns an outcome only when halting."""
    log(f"{'=' * 60}")
    log(f"Phase {phase}")
    log(f"{'=' * 60}")

    if check_and_consume_stop(ctx):
        return halt(ctx, HALT_STOP_REQUESTED, phase, f"Stop requested before phase {phase}")

    phase_dir = resolve_phase_directory(ctx.phases_dir, phase)
    if phase_dir is None:
        return halt(
            ctx, HALT_ERROR, phase,
            f"No directory for phase {phase} under {PHASES_DIR}/",
        )
    ctx.verbose_log(f"Phase directory: {ctx.relative(phase_dir)}")

    plans = list_plans(phase_dir)
    if not plans:
        if ctx.dry_run:
            ctx.step += 1
            log(f"[DRY RUN] Step {ctx.step}: would run: {planning_instruction(ctx, phase)}")
            log(f"[DRY RUN] Phase {phase} has no plans yet; nothing more to preview")
            return None

        outcome = plan_phase(ctx, phase)
        if outcome is not None:
            return outcome

        # Planning may have created a new directory for this phase number
        phase_dir = resolve_phase_directory(ctx.phases_dir, phase)
        plans = list_plans(phase_dir) if phase_dir is not None else []
        if not plans:
            return halt(ctx, HALT_ERROR, phase, f"No plans found for phase {phase} after planning")
        log(f"Planned phase {phase}: {len(plans)} plan(s) in {ctx.relative(phase_dir)}")

    for plan in plans:
        outcome = run_plan(ctx, phase, phase_dir, plan)
        if outcome is not None:
            return outcome

    log(f"Phase {phase} complete")
    return None


def run_phases(ctx: RunContext) -> RunOutcome:
    """Walk the phase range. Any halt ends the whole run, not just the phase."""
    for phase in range(ctx.start_phase, ctx.end_phase + 1):
        outcome = run_phase(ctx, phase)
        if outcome is not None:
            return outcome
    return RunOutcome(
        status=STATUS_COMPLETED, phase=ctx.end_phase, steps=ctx.step,
        message=f"Phases {ctx.start_phase}-{ctx.end_phase} complete",
    )


def report_outcome(ctx: RunContext, outcome: RunOutcome) -> None:
    elapsed = format_duration(ctx.elapsed_seconds)
    if outcome.status == STATUS_COMPLETED:
        title, style, level = "COMPLETE", "green", "success"
        text = f"{outcome.message}\nSteps: {outcome.steps}\nElapsed: {elapsed}"
    else:
        title = f"HALTED ({outcome.reason})"
        style = "red" if outcome.reason == HALT_ERROR else "yellow"
        level = "error" if outcome.reason == HALT_ERROR else "warning"
        text = (
            f"Phase {outcome.phase}: {outcome.message}\n"
            f"Steps: {outcome.steps}\nElapsed: {elapsed}"
        )
    if ctx.dry_run:
        title = f"[DRY RUN] {title}"
    console.print(Panel(escape(text), title=title, border_style=style))

    # Error halts were already announced when they happened
    if outcome.reason != HALT_ERROR:
        ctx.notify(title, text, level=level)


def run(ctx: RunContext) -> RunOutcome:
    """Run the phase range with sleep prevention held throughout."""
    with SleepInhibitor(enabled=ctx.config.prevent_sleep) as inhibitor:
        if inhibitor.active:
            ctx.verbose_log(f"Sleep prevention: {inhibitor.mechanism}")
        elif ctx.config.prevent_sleep:
            log("WARNING: No sleep prevention available; keep the machine awake yourself")
        outcome = run_phases(ctx)
        report_outcome(ctx, outcome)
        return outcome


# ─── Signal Handling ──────────────────────────────────────────────────


def install_signal_handlers(ctx: RunContext) -> None:
    """Terminate the in-flight Claude process on SIGINT/SIGTERM, then exit.

    sys.exit unwinds through run(), so the sleep guard is still released.
    """
    def handle_signal(signum, frame):
        sig_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        log(f"Received {sig_name}. Shutting down...")

        process = ctx.active_process
        if process is not None and process.poll() is None:
            log(f"Terminating active Claude process (PID {process.pid})...")
            process.terminate()
            try:
                process.wait(timeout=CHILD_SHUTDOWN_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                log("Claude process did not exit gracefully. Killing...")
                process.kill()
                process.wait()

        sys.exit(128 + signum)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


# ─── Entry Point ──────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Auto-Phases: run planned phases hands-free with Claude Code"
    )
    parser.add_argument("start_phase", type=int, help="First phase number to run")
    parser.add_argument("end_phase", type=int, help="Last phase number to run (inclusive)")
    parser.add_argument(
        "--project-dir",
        default=os.getcwd(),
        help="Project root containing .planning/ (default: current directory)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would run without starting Claude",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Stream Claude output and show detailed tracing",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.start_phase < 1 or args.end_phase < 1:
        parser.error("phase numbers must be positive integers")

    project_root = Path(args.project_dir).expanduser().resolve()
    phases_dir = project_root / PHASES_DIR
    if not phases_dir.is_dir():
        print(f"Error: Phase directory not found: {phases_dir}")
        sys.exit(1)

    config = load_config(project_root)
    claude_cmd = config.claude_command or resolve_claude_binary()

    ctx = RunContext(
        project_root=project_root,
        start_phase=args.start_phase,
        end_phase=args.end_phase,
        dry_run=args.dry_run,
        verbose=args.verbose,
        config=config,
        claude_cmd=claude_cmd,
        notifier=Notifier(project_root, desktop_enabled=config.desktop_notifications),
    )
    install_signal_handlers(ctx)

    print(f"=== Auto-Phases (PID {os.getpid()}) ===")
    print(f"Phases: {ctx.start_phase} to {ctx.end_phase}")
    print(f"Project: {project_root}")
    print(f"Claude command: {shlex.join([*claude_cmd, *config.claude_flags])}")
    print(f"Dry run: {ctx.dry_run}")
    print(f"Graceful stop: touch {ctx.stop_path}")
    print()

    outcome = run(ctx)
    sys.exit(outcome.exit_code)


if __name__ == "__main__":
    main()
