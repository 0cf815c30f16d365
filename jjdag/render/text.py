"""Text renderer for workspace and plan output."""

from jjdag.errors import PlanFailed
from jjdag.pipeline import CommandPipeline
from jjdag.plan import TopologyPlan
from jjdag.planner import PlanOutcome
from jjdag.registry import Mismatch, RegistrySnapshot


def render_workspace_list(snapshot: RegistrySnapshot) -> str:
    """
    Render workspaces one per line, the way jj lists them.

    Format: ``name: /path``
    """
    return "\n".join(f"{ws.name}: {ws.path}" for ws in snapshot.workspaces)


def render_workspace_table(snapshot: RegistrySnapshot) -> str:
    """
    Render workspaces as tabular table.

    Columns: NAME, DEFAULT, LAYOUT, PATH

    Args:
        snapshot: Registry snapshot

    Returns:
        Formatted table string
    """
    if not snapshot.workspaces:
        return "No workspaces found"

    headers = ["NAME", "DEFAULT", "LAYOUT", "PATH"]
    rows = [
        [
            ws.name,
            "yes" if ws.is_default else "",
            "scooped" if ws.is_scooped else "unscooped",
            str(ws.path),
        ]
        for ws in snapshot.workspaces
    ]

    col_widths = [max(len(str(row[i])) for row in [headers] + rows) for i in range(len(headers))]

    separator = "  "
    lines = []

    header_line = separator.join(f"{headers[i]:<{col_widths[i]}}" for i in range(len(headers)))
    lines.append(header_line.rstrip())

    separator_line = separator.join("-" * col_widths[i] for i in range(len(headers)))
    lines.append(separator_line)

    for row in rows:
        row_line = separator.join(f"{str(row[i]):<{col_widths[i]}}" for i in range(len(row)))
        lines.append(row_line.rstrip())

    lines.append("")
    lines.append(f"Project root: {snapshot.project_root} ({snapshot.layout.value})")
    return "\n".join(lines)


def render_mismatches(mismatches: list[Mismatch]) -> str:
    """
    Render consistency problems grouped by kind.

    Args:
        mismatches: Mismatches from ``WorkspaceRegistry.check_consistency``

    Returns:
        Formatted string, or an all-clear line
    """
    if not mismatches:
        return "Workspaces, operation store and disk agree"

    lines = [f"MISMATCHES ({len(mismatches)}):", ""]
    kinds: dict[str, list[Mismatch]] = {}
    for mismatch in mismatches:
        kinds.setdefault(mismatch.kind.value.upper().replace("-", " "), []).append(mismatch)

    for label, group in kinds.items():
        lines.append(f"  {label} ({len(group)}):")
        for mismatch in group:
            who = mismatch.workspace or "(store)"
            lines.append(f"    {who}: {mismatch.detail}")
        lines.append("")

    lines.append("Nothing was changed. Fix the workspaces by hand, then re-run.")
    return "\n".join(lines)


def render_plan(plan: TopologyPlan, *, plan_mode: bool = False) -> str:
    """Render a topology plan as a numbered step list.

    Example output:
    DRY RUN: Would add workspace 'feature'
      1. move /proj -> /proj/default
      2. patch store record 'default' -> /proj/default
      3. run jj workspace add --name feature /proj/feature

    Args:
        plan: Plan to render
        plan_mode: If True, show "DRY RUN" prefix
    """
    prefix = "DRY RUN: Would " if plan_mode else "Plan: "
    lines = [f"{prefix}{plan.intent.describe()}"]

    if not plan.steps:
        lines.append("  (nothing to do)")
    for index, step in enumerate(plan.steps, start=1):
        lines.append(f"  {index}. {step.describe()}")

    for note in plan.notes:
        lines.append(f"  Note: {note}")

    return "\n".join(lines)


def render_plan_outcome(outcome: PlanOutcome) -> str:
    lines = [f"Done: {outcome.plan.intent.describe()}"]
    for warning in outcome.warnings:
        lines.append(f"  Warning: {warning}")
    if outcome.snapshot is not None:
        lines.append("")
        lines.append(render_workspace_list(outcome.snapshot))
    return "\n".join(lines)


def render_plan_failure(error: PlanFailed) -> str:
    """
    Render a failed plan with what could and could not be rolled back.

    Args:
        error: The PlanFailed raised by the planner

    Returns:
        Formatted failure report
    """
    lines = [
        f"FAILED at step {error.step_index + 1}: {error.step.describe()}",
        f"  Cause: {error.cause}",
    ]

    if error.warnings:
        lines.append("")
        lines.append("  NOT ROLLED BACK:")
        for warning in error.warnings:
            lines.append(f"    - {warning}")

    if error.compensation_errors:
        lines.append("")
        lines.append("  ROLLBACK ERRORS:")
        for message in error.compensation_errors:
            lines.append(f"    - {message}")

    if not error.warnings and not error.compensation_errors:
        lines.append("  All applied steps were rolled back.")

    return "\n".join(lines)


def render_queue_status(pipeline: CommandPipeline) -> str:
    """Accumulated command output, or a placeholder for an idle empty queue."""
    lines = pipeline.status_lines()
    if not lines:
        return "No commands run"
    return "\n".join(lines)
