"""
steward report - Summary card of the latest audit and capacity forecasts.
"""

from steward.audit import AuditReport, load_last_report
from steward.cards import render_report_card
from steward.lib.constants import EXIT_OK
from steward.lib.errors import NotFound, ValidationError
from steward.lib.output import console, print_json
from steward.lib.retry import call_with_retry


def cmd_report(args, ctx) -> int:
    report = load_last_report(ctx.state_dir)

    categories = [report.category] if report.category else ctx.metrics.categories()
    forecasts = {}
    for category in categories:
        try:
            forecasts[category] = ctx.forecaster.forecast(category, args.horizon)
        except NotFound:
            continue

    # Per-stream lines come from the topic store as of that audit
    per_stream = []
    if report.category is None:
        for category in sorted(ctx.config.streams):
            topics = ctx.topics.list(category)
            if not topics:
                continue
            sub = AuditReport(category=category, generated_at=report.generated_at)
            sub.total = len(topics)
            sub.compliant = sum(1 for t in topics if t.compliant)
            sub.needs_polish = sub.total - sub.compliant
            per_stream.append(sub)
    else:
        per_stream.append(report)

    card = render_report_card(per_stream, forecasts)

    if args.pin:
        topic_id = ctx.config.chat.report_topic_id
        if not topic_id:
            raise ValidationError("report", "chat.report_topic_id is not configured")
        retry = ctx.config.retry
        call_with_retry(lambda: ctx.chat.unpin_all(topic_id), f"unpin {topic_id}", retry)
        message_id = call_with_retry(lambda: ctx.chat.pin_message(topic_id, card), f"pin {topic_id}", retry)
        console.print(f"Pinned report in topic {topic_id} (message {message_id})")

    if args.format == "json":
        print_json({
            "audit": report.to_dict(),
            "forecasts": {k: v.to_dict() for k, v in forecasts.items()},
            "card": card.to_dict(),
        })
    elif not args.pin:
        console.print(card.text, markup=False)
    return EXIT_OK
