"""
steward topic - Inspect topic records and edit their scoring inputs.
"""

from steward.lib.constants import EXIT_OK
from steward.lib.errors import ValidationError
from steward.lib.locking import topic_lock
from steward.lib.output import console, print_json, table
from steward.models import BUSINESS_IMPACTS, parse_ts


def cmd_topic_list(args, ctx) -> int:
    if args.category:
        ctx.config.stream(args.category)
    topics = ctx.topics.list(args.category)

    if args.format == "json":
        print_json([t.to_dict() for t in topics])
        return EXIT_OK

    if not topics:
        console.print("No topics recorded (run an audit first)")
        return EXIT_OK
    table("Topics", ["Topic", "Stream", "Title", "Compliant", "Pinned", "Score"], [
        [t.topic_id, t.category, t.raw_title, "yes" if t.compliant else "no",
         t.pinned_message_id or "-", t.priority_score]
        for t in topics
    ])
    return EXIT_OK


def cmd_topic_show(args, ctx) -> int:
    topic = ctx.topics.require(args.topic_id)
    data = topic.to_dict()
    if args.format == "json":
        print_json(data)
        return EXIT_OK

    metadata = data.pop("metadata")
    for key, value in data.items():
        console.print(f"{key:<18} {value}", markup=False)
    console.print("metadata:")
    for key, value in metadata.items():
        console.print(f"  {key:<24} {value}", markup=False)
    return EXIT_OK


def _parse_deadline(value: str):
    if value.lower() == "none":
        return None
    try:
        return parse_ts(value)
    except ValueError:
        raise ValidationError("deadline", f"Not an ISO date/time: '{value}'") from None


def cmd_topic_set(args, ctx) -> int:
    with topic_lock(ctx.state_dir, args.topic_id):
        topic = ctx.topics.require(args.topic_id)

        if args.clear_stakeholders:
            topic.stakeholders = set()
        topic.stakeholders.update(args.stakeholder or [])
        if args.clear_dependencies:
            topic.dependency_ids = set()
        topic.dependency_ids.update(args.depends_on or [])
        topic.dependency_ids.discard(topic.topic_id)

        if args.deadline is not None:
            topic.deadline = _parse_deadline(args.deadline)
        if args.impact is not None:
            if args.impact not in BUSINESS_IMPACTS:
                raise ValidationError("impact", f"Expected one of {', '.join(BUSINESS_IMPACTS)}")
            topic.metadata.business_impact = args.impact
        if args.change_request is not None:
            topic.metadata.change_request = args.change_request or None
        if args.label is not None:
            topic.metadata.categorizer_label = args.label or None
        if args.confidence is not None:
            if not 0.0 <= args.confidence <= 1.0:
                raise ValidationError("confidence", "Confidence must be between 0 and 1")
            topic.metadata.categorizer_confidence = args.confidence

        ctx.topics.save(topic)

    if args.format == "json":
        print_json(topic.to_dict())
    else:
        console.print(f"Updated {topic.topic_id}")
    return EXIT_OK

