"""
steward score - Rank a stream's topics by priority.
"""

from steward.lib.constants import EXIT_OK
from steward.lib.locking import topic_lock
from steward.lib.output import console, print_json, table


def cmd_score(args, ctx) -> int:
    ctx.config.stream(args.category)
    topics = ctx.topics.list(args.category)
    ranked = ctx.scorer.rank(topics)
    if args.topic:
        ranked = [b for b in ranked if b.topic_id == args.topic]
        if not ranked:
            ctx.topics.require(args.topic)

    if args.save:
        # Stored as a convenience for display; the next audit clears it
        for breakdown in ranked:
            with topic_lock(ctx.state_dir, breakdown.topic_id):
                topic = ctx.topics.require(breakdown.topic_id)
                topic.priority_score = breakdown.score
                ctx.topics.save(topic)

    if args.format == "json":
        print_json([b.to_dict() for b in ranked])
        return EXIT_OK

    if not ranked:
        console.print(f"No topics recorded for {args.category} (run an audit first)")
        return EXIT_OK
    table(f"Priority: {args.category}", ["Topic", "Score", "Stake", "Engage", "Deadline", "Deps", "Bonus", "Review"], [
        [b.topic_id, f"{b.score:.2f}", b.stakeholders, b.engagement, b.deadline, b.dependencies,
         round(b.impact_bonus + b.change_request_bonus, 2), "yes" if b.requires_review else ""]
        for b in ranked
    ])
    return EXIT_OK
