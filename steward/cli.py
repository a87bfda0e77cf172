#!/usr/bin/env python3
"""steward CLI entrypoint."""

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path

from steward import __version__
from steward.commands import audit as cmd_audit_module
from steward.commands import callback as cmd_callback_module
from steward.commands import forecast as cmd_forecast_module
from steward.commands import metrics as cmd_metrics_module
from steward.commands import policy as cmd_policy_module
from steward.commands import polish as cmd_polish_module
from steward.commands import report as cmd_report_module
from steward.commands import requests as cmd_requests_module
from steward.commands import score as cmd_score_module
from steward.commands import serve as cmd_serve_module
from steward.commands import topic as cmd_topic_module
from steward.lib.constants import EXIT_CODE_FOR_KIND, EXIT_ERROR
from steward.lib.context import StewardContext
from steward.lib.errors import StewardError
from steward.lib.output import print_error
from steward.models import RequestState

logger = logging.getLogger(__name__)


def default_actor() -> str:
    if os.environ.get("STEWARD_ACTOR"):
        return os.environ["STEWARD_ACTOR"]
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "cli"


def get_context(args) -> StewardContext:
    return StewardContext.load(args.config, actor=getattr(args, "actor", None) or "steward")


def _run(handler):
    """Adapt a commands.* function to argparse's func(args)."""
    def run(args):
        if hasattr(args, "actor") and not args.actor:
            args.actor = default_actor()
        return handler(args, get_context(args))
    return run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='steward', description='Topic governance and release orchestration')
    parser.add_argument('--config', '-c', type=Path, help='Path to steward.yaml (default: $STEWARD_CONFIG or ./steward.yaml)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    fmt = argparse.ArgumentParser(add_help=False)
    fmt.add_argument('--format', '-f', choices=['table', 'json'], default='table', help='Output format')

    actor = argparse.ArgumentParser(add_help=False)
    actor.add_argument('--actor', help='Who is acting (default: $STEWARD_ACTOR or login name)')

    # steward audit
    p_audit = subparsers.add_parser('audit', parents=[fmt], help='Audit topic names')
    p_audit.add_argument('--category', help='Limit to one stream')
    p_audit.add_argument('--output', '-o', help='Also save the report to this file')
    p_audit.set_defaults(func=_run(cmd_audit_module.cmd_audit))

    # steward polish
    p_polish = subparsers.add_parser('polish', parents=[fmt, actor], help='Rename and re-pin drifted topics')
    mode = p_polish.add_mutually_exclusive_group(required=True)
    mode.add_argument('--dry-run', action='store_true', help='Show what would change')
    mode.add_argument('--apply', action='store_true', help='Apply changes')
    p_polish.add_argument('--reason', help='Ledger reason (default: manual-<date>)')
    p_polish.add_argument('--category', help='Limit to one stream')
    p_polish.add_argument('--audit', help='Use a saved audit report instead of auditing now')
    p_polish.add_argument('--force', action='store_true', help='Re-apply even if a rename to the same name is recorded')
    p_polish.add_argument('--workers', type=int, default=1, help='Topics processed in parallel')
    p_polish.set_defaults(func=_run(cmd_polish_module.cmd_polish))

    # steward report
    p_report = subparsers.add_parser('report', parents=[fmt], help='Summary of the latest audit and forecasts')
    p_report.add_argument('--pin', action='store_true', help='Post and pin the card in the report topic')
    p_report.add_argument('--horizon', type=int, default=90, help='Forecast horizon in days')
    p_report.set_defaults(func=_run(cmd_report_module.cmd_report))

    # steward score
    p_score = subparsers.add_parser('score', parents=[fmt], help='Rank a stream by priority')
    p_score.add_argument('--category', required=True, help='Stream to score')
    p_score.add_argument('--topic', help='Show only this topic')
    p_score.add_argument('--save', action='store_true', help='Store scores on the topic records')
    p_score.set_defaults(func=_run(cmd_score_module.cmd_score))

    # steward forecast
    p_forecast = subparsers.add_parser('forecast', parents=[fmt], help='Project stream capacity')
    p_forecast.add_argument('--category', required=True, help='Stream to forecast')
    p_forecast.add_argument('--horizon', type=int, default=90, help='Days ahead')
    p_forecast.set_defaults(func=_run(cmd_forecast_module.cmd_forecast))

    # steward policy-check
    p_policy = subparsers.add_parser('policy-check', parents=[fmt, actor], help='Evaluate an action against policy')
    p_policy.add_argument('--action', required=True, help='Action name (e.g. rename, release)')
    p_policy.add_argument('--context', help='JSON: {actor?, category?, target_state?, actor_roles?}')
    p_policy.set_defaults(func=_run(cmd_policy_module.cmd_policy_check))

    # steward topic
    p_topic = subparsers.add_parser('topic', help='Topic records')
    topic_sub = p_topic.add_subparsers(dest='topic_command', required=True)

    p_topic_list = topic_sub.add_parser('list', parents=[fmt], help='List topics')
    p_topic_list.add_argument('--category', help='Limit to one stream')
    p_topic_list.set_defaults(func=_run(cmd_topic_module.cmd_topic_list))

    p_topic_show = topic_sub.add_parser('show', parents=[fmt], help='Show one topic')
    p_topic_show.add_argument('topic_id', help='Topic ID')
    p_topic_show.set_defaults(func=_run(cmd_topic_module.cmd_topic_show))

    p_topic_set = topic_sub.add_parser('set', parents=[fmt], help='Edit scoring inputs')
    p_topic_set.add_argument('topic_id', help='Topic ID')
    p_topic_set.add_argument('--stakeholder', action='append', help='Add a stakeholder (repeatable)')
    p_topic_set.add_argument('--clear-stakeholders', action='store_true', help='Remove existing stakeholders first')
    p_topic_set.add_argument('--depends-on', action='append', help='Add a dependency topic ID (repeatable)')
    p_topic_set.add_argument('--clear-dependencies', action='store_true', help='Remove existing dependencies first')
    p_topic_set.add_argument('--deadline', help="ISO date/time, or 'none'")
    p_topic_set.add_argument('--impact', help='Business impact: low, medium, high')
    p_topic_set.add_argument('--change-request', help="Linked change request ('' clears)")
    p_topic_set.add_argument('--label', help="Categorizer label ('' clears)")
    p_topic_set.add_argument('--confidence', type=float, help='Categorizer confidence 0..1')
    p_topic_set.set_defaults(func=_run(cmd_topic_module.cmd_topic_set))

    # steward metrics
    p_metrics = subparsers.add_parser('metrics', help='Capacity metrics')
    metrics_sub = p_metrics.add_subparsers(dest='metrics_command', required=True)

    p_metrics_record = metrics_sub.add_parser('record', parents=[fmt], help='Record a data point')
    p_metrics_record.add_argument('--category', required=True, help='Stream')
    p_metrics_record.add_argument('--active', type=int, required=True, help='Active topic count')
    p_metrics_record.add_argument('--limit', type=int, help='Stream limit (default: configured)')
    p_metrics_record.add_argument('--date', help='ISO date (default: today)')
    p_metrics_record.set_defaults(func=_run(cmd_metrics_module.cmd_metrics_record))

    p_metrics_list = metrics_sub.add_parser('list', parents=[fmt], help='Show a stream\'s history')
    p_metrics_list.add_argument('--category', required=True, help='Stream')
    p_metrics_list.add_argument('--since', help='ISO date')
    p_metrics_list.set_defaults(func=_run(cmd_metrics_module.cmd_metrics_list))

    # steward propose
    p_propose = subparsers.add_parser('propose', parents=[fmt, actor], help='Propose a gated action')
    p_propose.add_argument('--type', required=True, help='rename_batch, release or destructive')
    p_propose.add_argument('--payload', help='JSON payload (e.g. {"pr": "42", "release_kind": "minor"})')
    p_propose.add_argument('--category', help='Stream the action concerns')
    p_propose.add_argument('--summary', help='One-line description for approvers')
    p_propose.set_defaults(func=_run(cmd_requests_module.cmd_propose))

    # steward approve
    p_approve = subparsers.add_parser('approve', parents=[fmt, actor], help='Approve a request')
    p_approve.add_argument('request_id', help='Request ID')
    p_approve.add_argument('--role', help='Role to approve as (default: first missing role you hold)')
    p_approve.add_argument('--execute', action='store_true', help='Execute once fully approved')
    p_approve.set_defaults(func=_run(cmd_requests_module.cmd_approve))

    # steward deny
    p_deny = subparsers.add_parser('deny', parents=[fmt, actor], help='Deny a request')
    p_deny.add_argument('request_id', help='Request ID')
    p_deny.add_argument('--reason', help='Why')
    p_deny.set_defaults(func=_run(cmd_requests_module.cmd_deny))

    # steward execute
    p_execute = subparsers.add_parser('execute', parents=[fmt, actor], help='Execute an approved request')
    p_execute.add_argument('request_id', help='Request ID')
    p_execute.set_defaults(func=_run(cmd_requests_module.cmd_execute))

    # steward requests
    p_requests = subparsers.add_parser('requests', parents=[fmt], help='List approval requests')
    p_requests.add_argument('--state', choices=[s.value for s in RequestState], help='Filter by state')
    p_requests.set_defaults(func=_run(cmd_requests_module.cmd_requests))

    # steward show-request
    p_show_request = subparsers.add_parser('show-request', parents=[fmt], help='Show one request')
    p_show_request.add_argument('request_id', help='Request ID')
    p_show_request.set_defaults(func=_run(cmd_requests_module.cmd_show_request))

    # steward expire
    p_expire = subparsers.add_parser('expire', parents=[fmt], help='Expire overdue requests')
    p_expire.add_argument('request_id', nargs='?', help='One request (default: sweep all)')
    p_expire.set_defaults(func=_run(cmd_requests_module.cmd_expire))

    # steward callback
    p_callback = subparsers.add_parser('callback', parents=[actor], help='Handle an inbound callback')
    source = p_callback.add_mutually_exclusive_group(required=True)
    source.add_argument('--payload', help='JSON {action, subject_id, actor, message?, extra?}')
    source.add_argument('--data', help='Raw button callback_data (uses --actor)')
    p_callback.add_argument('--message', help='Message to attach (with --data)')
    p_callback.set_defaults(func=_run(cmd_callback_module.cmd_callback))

    # steward serve
    p_serve = subparsers.add_parser('serve', help='Serve scheduled polish and expiry sweeps')
    p_serve.set_defaults(func=_run(cmd_serve_module.cmd_serve))

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except StewardError as e:
        logger.debug(f"{args.command} failed: {e}")
        print_error(e.to_dict())
        return EXIT_CODE_FOR_KIND.get(e.kind, EXIT_ERROR)


if __name__ == "__main__":
    sys.exit(main())
