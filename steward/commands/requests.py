"""
steward propose / approve / deny / execute / requests / show-request / expire

Approval request lifecycle from the command line. The same operations are
reachable from chat buttons through `steward callback`.
"""

import json

from steward.lib.constants import EXIT_ERROR, EXIT_OK
from steward.lib.errors import ValidationError
from steward.lib.output import console, print_json, table
from steward.models import SUBJECT_TYPES, RequestState, Subject


def _print_request(request, fmt: str) -> None:
    if fmt == "json":
        print_json(request.to_dict())
        return
    console.print(f"[bold]{request.request_id}[/bold] {request.subject.type}: {request.state.value}")
    if request.subject.summary:
        console.print(f"  {request.subject.summary}", markup=False)
    console.print(f"  Required: {', '.join(request.required_roles) or '-'}")
    if request.received_approvals:
        console.print("  Approved: " + ", ".join(f"{r} ({who})" for r, who in sorted(request.received_approvals.items())))
    if request.missing_roles and not request.is_terminal:
        console.print(f"  Waiting on: {', '.join(request.missing_roles)}")
    console.print(f"  Expires: {request.expires_at.strftime('%Y-%m-%d %H:%M UTC')}")
    for v in request.violations:
        console.print(f"  - {v.rule_id}: {v.reason}", markup=False)
    if request.result:
        console.print(f"  Result: {json.dumps(request.result, default=str)}", markup=False)


def cmd_propose(args, ctx) -> int:
    if args.type not in SUBJECT_TYPES:
        raise ValidationError(args.type, f"Expected one of {', '.join(SUBJECT_TYPES)}")
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        raise ValidationError("payload", f"--payload is not valid JSON: {e}") from None
    if not isinstance(payload, dict):
        raise ValidationError("payload", "--payload must be a JSON object")
    if args.category:
        ctx.config.stream(args.category)
        payload.setdefault("category", args.category)

    subject = Subject(args.type, payload, args.summary or "")
    request = ctx.orchestrator.propose(subject, args.actor, category=args.category)
    _print_request(request, args.format)
    return EXIT_OK


def cmd_approve(args, ctx) -> int:
    request = ctx.orchestrator.submit_approval(args.request_id, args.actor, args.role)
    if args.execute and request.state == RequestState.APPROVED:
        request = ctx.orchestrator.execute(args.request_id, args.actor)
    _print_request(request, args.format)
    return EXIT_ERROR if request.state == RequestState.ROLLED_BACK else EXIT_OK


def cmd_deny(args, ctx) -> int:
    request = ctx.orchestrator.deny(args.request_id, args.actor, args.reason or "")
    _print_request(request, args.format)
    return EXIT_OK


def cmd_execute(args, ctx) -> int:
    request = ctx.orchestrator.execute(args.request_id, args.actor)
    _print_request(request, args.format)
    return EXIT_ERROR if request.state == RequestState.ROLLED_BACK else EXIT_OK


def cmd_requests(args, ctx) -> int:
    state = RequestState(args.state) if args.state else None
    requests = ctx.requests.list(state)

    if args.format == "json":
        print_json([r.to_dict() for r in requests])
        return EXIT_OK

    if not requests:
        console.print("No requests")
        return EXIT_OK
    table("Requests", ["Request", "Type", "State", "Proposer", "Missing", "Expires"], [
        [r.request_id, r.subject.type, r.state.value, r.proposer,
         ", ".join(r.missing_roles) if not r.is_terminal else "",
         r.expires_at.strftime('%Y-%m-%d %H:%M')]
        for r in requests
    ])
    return EXIT_OK


def cmd_show_request(args, ctx) -> int:
    _print_request(ctx.requests.require(args.request_id), args.format)
    return EXIT_OK


def cmd_expire(args, ctx) -> int:
    if args.request_id:
        request = ctx.orchestrator.expire(args.request_id)
        expired = [request.request_id] if request.state == RequestState.EXPIRED else []
    else:
        expired = ctx.orchestrator.sweep_expired()

    if args.format == "json":
        print_json({"expired": expired})
    else:
        console.print(f"Expired {len(expired)} request(s)" + (f": {', '.join(expired)}" if expired else ""))
    return EXIT_OK
