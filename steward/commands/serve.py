"""
steward serve - Run the scheduled polish and expiry-sweep deployments.

Needs a reachable Prefect API (PREFECT_API_URL) to register schedules.
"""

from steward.lib.constants import EXIT_OK


def cmd_serve(args, ctx) -> int:
    from steward.workflow.flows import serve_flows

    config_path = str(args.config.resolve()) if args.config else None
    serve_flows(config_path)
    return EXIT_OK
