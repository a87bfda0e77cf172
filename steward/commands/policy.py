"""
steward policy-check - Evaluate an action against the policy rules.

A denial is recorded in the ledger like any other.
"""

import json

from steward.lib.constants import EXIT_OK, EXIT_POLICY_DENIED
from steward.lib.errors import ValidationError
from steward.lib.output import console, print_json
from steward.policy import PolicyContext


def cmd_policy_check(args, ctx) -> int:
    try:
        data = json.loads(args.context) if args.context else {}
    except json.JSONDecodeError as e:
        raise ValidationError("context", f"--context is not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise ValidationError("context", "--context must be a JSON object")

    data = {"actor": args.actor, **data, "action": args.action}
    policy_ctx = PolicyContext.from_dict(data, ctx.config.approvals.roles_for(data["actor"]))
    policy_ctx.now = ctx.clock()
    decision = ctx.gate.evaluate(policy_ctx)

    if args.format == "json":
        print_json(decision.to_dict())
    elif decision.allowed:
        console.print(f"[green]Allowed[/green] by {', '.join(decision.allowed_by)}")
    else:
        console.print("[red]Denied[/red]")
        for v in decision.violated_rules:
            console.print(f"  - {v.rule_id}: {v.reason}", markup=False)

    return EXIT_OK if decision.allowed else EXIT_POLICY_DENIED
