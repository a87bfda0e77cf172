"""
steward polish - Apply (or preview) renames and perfect-pin cards.

Uses a saved audit report when --audit is given, otherwise audits first.
Ctrl-C stops new topics from starting; topics already in flight finish and
are recorded before the command returns.
"""

import signal
import threading
from pathlib import Path

from steward.audit import AuditReport
from steward.lib.constants import EXIT_ERROR, EXIT_OK
from steward.lib.errors import ValidationError
from steward.lib.output import console, print_error, print_json, table
from steward.polish import PolishMode


def _install_cancel_handler(cancel: threading.Event):
    def handler(signum, frame):
        console.print("[yellow]Cancelling: finishing in-flight topics...[/yellow]")
        cancel.set()
    return signal.signal(signal.SIGINT, handler)


def cmd_polish(args, ctx) -> int:
    mode = PolishMode.APPLY if args.apply else PolishMode.DRY_RUN
    reason = args.reason or f"manual-{ctx.clock().date().isoformat()}"
    if args.workers < 1:
        raise ValidationError("polish", "--workers must be at least 1")

    if args.audit:
        report = AuditReport.load(Path(args.audit))
        if args.category and report.category != args.category:
            raise ValidationError(args.audit, f"Report covers '{report.category or 'all'}', not '{args.category}'")
    else:
        report = ctx.audit_engine().run(args.category)

    cancel = threading.Event()
    previous = _install_cancel_handler(cancel)
    try:
        result = ctx.polish_engine().run(
            report, mode, reason, force=args.force, workers=args.workers, cancel=cancel,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.format == "json":
        print_json(result.to_dict())
    else:
        label = "Dry run" if mode == PolishMode.DRY_RUN else "Applied"
        console.print(
            f"{label} ({reason}): renamed={result.renamed} re_pinned={result.re_pinned} "
            f"skipped_already_done={result.skipped_already_done} failed={result.failed}"
        )
        if result.actions:
            table("Actions", ["Topic", "Action", "Before", "After", "Status"], [
                [a.topic_id, a.action, a.before, a.after, a.status + (f" ({a.error})" if a.error else "")]
                for a in result.actions
            ])
        if result.not_started:
            console.print(f"[yellow]Not started (cancelled): {', '.join(result.not_started)}[/yellow]")

    if result.failed or result.cancelled:
        print_error({
            "error": "PartialFailure" if result.failed else "Cancelled",
            "id": report.category or "all",
            "message": f"{result.failed} topic(s) failed, {len(result.not_started)} not started",
            "failed": result.failures,
            "not_started": result.not_started,
        })
        return EXIT_ERROR
    return EXIT_OK
