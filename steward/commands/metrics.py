"""
steward metrics - Record and list capacity metrics.

Audits record a point per stream automatically; `record` is for backfilling
history from elsewhere.
"""

from datetime import date

from steward.lib.constants import EXIT_OK
from steward.lib.errors import ValidationError
from steward.lib.output import console, print_json, table
from steward.models import CapacityMetric


def _parse_date(value: str | None, default: date | None = None) -> date | None:
    if value is None:
        return default
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError("date", f"Not an ISO date: '{value}'") from None


def cmd_metrics_record(args, ctx) -> int:
    stream = ctx.config.stream(args.category)
    limit = args.limit if args.limit is not None else stream.limit
    if args.active < 0 or limit < 1:
        raise ValidationError(args.category, "Active count must be >= 0 and limit >= 1")

    metric = CapacityMetric(
        category=args.category,
        date=_parse_date(args.date, ctx.clock().date()),
        active_count=args.active,
        limit=limit,
    )
    ctx.metrics.record(metric)

    if args.format == "json":
        print_json(metric.to_dict())
    else:
        console.print(f"Recorded {metric.category} {metric.date}: {metric.active_count}/{metric.limit} "
                      f"({metric.utilization:.0%})")
    return EXIT_OK


def cmd_metrics_list(args, ctx) -> int:
    ctx.config.stream(args.category)
    series = ctx.metrics.series(args.category, since=_parse_date(args.since))

    if args.format == "json":
        print_json([m.to_dict() for m in series])
        return EXIT_OK

    if not series:
        console.print(f"No metrics recorded for {args.category}")
        return EXIT_OK
    table(f"Capacity: {args.category}", ["Date", "Active", "Limit", "Utilization"], [
        [m.date.isoformat(), m.active_count, m.limit, f"{m.utilization:.0%}"] for m in series
    ])
    return EXIT_OK
