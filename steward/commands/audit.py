"""
steward audit - Compare live topic names against their canonical names.
"""

from pathlib import Path

from steward.lib.constants import EXIT_OK
from steward.lib.output import console, print_json, table


def cmd_audit(args, ctx) -> int:
    report = ctx.audit_engine().run(args.category)

    if args.output:
        report.save(Path(args.output))

    if args.format == "json":
        print_json(report.to_dict())
        return EXIT_OK

    scope = report.category or "all streams"
    console.print(
        f"Audit of {scope}: [bold]{report.total}[/bold] topics, "
        f"[green]{report.compliant}[/green] compliant, [yellow]{report.needs_polish}[/yellow] need polish"
    )
    if report.items:
        table("Needs polish", ["Topic", "Stream", "Current", "Target"], [
            [i.topic_id, i.category, i.current_title, i.target_name] for i in report.items
        ])
    if report.missing_pins:
        console.print(f"Missing pinned card: {', '.join(report.missing_pins)}")
    if report.unmanaged:
        console.print(f"[dim]Unmanaged (stream not configured): {', '.join(report.unmanaged)}[/dim]")
    if args.output:
        console.print(f"Report saved to {args.output}")
    return EXIT_OK
