"""Prefect flows for steward's scheduled jobs.

- quarterly_polish_flow: audit + polish apply, reason "quarterly-YYYY-Qn"
- expiry_sweep_flow: expire approval requests past their deadline

Both are served as cron deployments by `steward serve`. The flow bodies
only wire a StewardContext into plain functions, which carry the behavior.
"""

import logging
from pathlib import Path
from typing import Optional

from prefect import flow, get_run_logger, serve, task

from steward.lib.constants import EXPIRY_SWEEP_CRON, QUARTERLY_POLISH_CRON
from steward.lib.context import StewardContext
from steward.polish import PolishMode, quarterly_reason, run_polish_cycle

logger = logging.getLogger(__name__)

DEPLOYMENT_TAGS = ["steward"]


def polish_cycle(ctx: StewardContext, category: str | None = None, reason: str | None = None) -> dict:
    """One scheduled polish cycle; returns the summary the flow reports."""
    reason = reason or quarterly_reason(ctx.clock().date())
    report, result = run_polish_cycle(ctx, reason, category=category, mode=PolishMode.APPLY)
    return {
        "reason": reason,
        "audited": report.total,
        "needs_polish": report.needs_polish,
        **{k: v for k, v in result.to_dict().items() if k not in ("actions", "mode", "reason")},
    }


def expiry_sweep(ctx: StewardContext) -> list[str]:
    return ctx.orchestrator.sweep_expired()


@task(
    retries=2,
    retry_delay_seconds=60,
    name="polish-cycle",
    description="Audit topics and apply renames and re-pins"
)
def task_polish_cycle(config_path: Optional[str], category: Optional[str], reason: Optional[str]) -> dict:
    """Retries cover platform outages; renames already recorded are skipped on retry."""
    ctx = StewardContext.load(Path(config_path) if config_path else None)
    return polish_cycle(ctx, category, reason)


@task(
    retries=1,
    retry_delay_seconds=30,
    name="expiry-sweep",
    description="Expire approval requests past their deadline"
)
def task_expiry_sweep(config_path: Optional[str]) -> list[str]:
    ctx = StewardContext.load(Path(config_path) if config_path else None)
    return expiry_sweep(ctx)


@flow(name="quarterly-polish", retries=0)
def quarterly_polish_flow(
    config_path: Optional[str] = None,
    category: Optional[str] = None,
    reason: Optional[str] = None,
) -> dict:
    """Audit then polish every stream (or one).

    Args:
        config_path: steward.yaml to load; default resolution when None
        category: Limit to one stream
        reason: Ledger reason; defaults to the current quarter
    """
    log = get_run_logger()
    summary = task_polish_cycle(config_path, category, reason)
    log.info(
        f"Polish {summary['reason']}: renamed={summary['renamed']} re_pinned={summary['re_pinned']} "
        f"skipped={summary['skipped_already_done']} failed={summary['failed']}"
    )
    return summary


@flow(name="approval-expiry-sweep", retries=0)
def expiry_sweep_flow(config_path: Optional[str] = None) -> list[str]:
    log = get_run_logger()
    expired = task_expiry_sweep(config_path)
    log.info(f"Expired {len(expired)} request(s)")
    return expired


def serve_flows(config_path: Optional[str] = None) -> None:
    """Serve both scheduled deployments until interrupted."""
    parameters = {"config_path": config_path}
    polish = quarterly_polish_flow.to_deployment(
        name="quarterly-polish",
        cron=QUARTERLY_POLISH_CRON,
        parameters=parameters,
        tags=DEPLOYMENT_TAGS,
    )
    sweep = expiry_sweep_flow.to_deployment(
        name="expiry-sweep",
        cron=EXPIRY_SWEEP_CRON,
        parameters=parameters,
        tags=DEPLOYMENT_TAGS,
    )
    logger.info(f"Serving quarterly-polish ({QUARTERLY_POLISH_CRON}) and expiry-sweep ({EXPIRY_SWEEP_CRON})")
    serve(polish, sweep)
