"""
steward forecast - Linear capacity projection for a stream.
"""

from steward.lib.constants import EXIT_OK
from steward.lib.output import console, print_json


def cmd_forecast(args, ctx) -> int:
    ctx.config.stream(args.category)
    forecast = ctx.forecaster.forecast(args.category, args.horizon)

    if args.format == "json":
        print_json(forecast.to_dict())
        return EXIT_OK

    console.print(f"[bold]{forecast.category}[/bold] over {forecast.horizon_days} days from {forecast.start_date}")
    console.print(f"  Trend:     {forecast.trend} ({forecast.slope_per_day:+.4f}/day, {forecast.points_used} points)")
    console.print(f"  Current:   {forecast.current_utilization:.0%}")
    console.print(f"  Projected: {forecast.projected_utilization:.0%}")
    if forecast.breach_date:
        console.print(f"  [red]Limit reached: {forecast.breach_date}[/red]")
    else:
        console.print("  Limit not reached within horizon")
    return EXIT_OK
