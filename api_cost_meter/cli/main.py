"""
CLI interface for API Cost Meter.

Provides command-line access to logging, reporting, detection and
optimization.
"""

import asyncio
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from api_cost_meter.config.loader import Settings, load_settings
from api_cost_meter.core.alerts import AlertService
from api_cost_meter.core.anomaly import AnomalyDetector
from api_cost_meter.core.budgets import BudgetService
from api_cost_meter.core.ingest import EventLogger
from api_cost_meter.core.optimization import OptimizationEngine, SuggestionType
from api_cost_meter.core.pricing import validate_tiers
from api_cost_meter.core.reporting import Reporter, TrendPeriod, dashboard_to_dict
from api_cost_meter.core.scheduler import AnomalyScheduler
from api_cost_meter.demo.seed_demo_data import seed_demo_data
from api_cost_meter.errors import ApiCostMeterError, DuplicateBudgetError
from api_cost_meter.logging import setup_logging
from api_cost_meter.storage.models import (
    AlertSeverity,
    AlertType,
    CallStatus,
    PricingRule,
    PricingTier,
)
from api_cost_meter.storage.repository import (
    AlertRepository,
    BudgetRepository,
    EventRepository,
    PricingRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass
class Services:
    """Repositories and services bound to one database."""
    settings: Settings
    db_path: str
    events: EventRepository
    pricing: PricingRepository
    budgets: BudgetRepository
    alerts: AlertRepository

    @classmethod
    def from_settings(cls, settings: Settings, db_path: Optional[str] = None) -> "Services":
        path = db_path or settings.database.path
        return cls(
            settings=settings,
            db_path=path,
            events=EventRepository(path),
            pricing=PricingRepository(path),
            budgets=BudgetRepository(path),
            alerts=AlertRepository(path),
        )

    def event_logger(self) -> EventLogger:
        return EventLogger(self.events, self.pricing)

    def reporter(self) -> Reporter:
        return Reporter(self.events)

    def detector(self) -> AnomalyDetector:
        return AnomalyDetector(
            self.events,
            self.budgets,
            self.alerts,
            thresholds=self.settings.detection.thresholds(),
        )

    def optimizer(self) -> OptimizationEngine:
        return OptimizationEngine(self.events)

    def budget_service(self) -> BudgetService:
        return BudgetService(self.budgets, self.events)

    def alert_service(self) -> AlertService:
        return AlertService(self.alerts)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file",
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides the config file)",
    ),
):
    """API Cost Meter CLI."""
    try:
        settings = load_settings(str(config) if config else None)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    setup_logging(settings.logging.level)
    ctx.obj = Services.from_settings(settings, db)
    # tables are created on first use; `init` additionally loads configured rules
    initialize_schema(ctx.obj.db_path)

    if ctx.invoked_subcommand is None:
        console.print("API Cost Meter - Use --help to see available commands")


def _services(ctx: typer.Context) -> Services:
    return ctx.obj


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency; sub-cent amounts keep four decimals."""
    if 0 < abs(amount) < 0.01:
        return f"${amount:,.4f}"
    return f"${amount:,.2f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the database and load pricing and budgets from the config."""
    services = _services(ctx)
    try:
        initialize_schema(services.db_path)
        for rule in services.settings.pricing.values():
            services.pricing.upsert(rule)

        budget_service = services.budget_service()
        for budget in services.settings.budgets:
            try:
                budget_service.create_budget(
                    budget.provider,
                    budget.monthly_limit,
                    budget.alert_threshold,
                    period=budget.period,
                )
            except DuplicateBudgetError:
                console.print(f"[yellow]Budget for {budget.provider} already exists, skipped[/]")

        console.print("[green]✓[/] Database initialized successfully")
        if services.settings.pricing:
            console.print(f"Loaded {len(services.settings.pricing)} pricing rule(s)")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def log(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name, e.g. Twilio"),
    endpoint: str = typer.Argument(..., help="Endpoint called"),
    feature: str = typer.Argument(..., help="Application feature that made the call"),
    requests: int = typer.Option(1, "--requests", "-n", help="Number of requests"),
    response_time: int = typer.Option(0, "--response-time", "-t", help="Response time in ms"),
    status: str = typer.Option("success", "--status", "-s", help="success, failure or error"),
    method: str = typer.Option("POST", "--method", help="HTTP method"),
    input_tokens: int = typer.Option(0, "--input-tokens", help="Input tokens consumed"),
    output_tokens: int = typer.Option(0, "--output-tokens", help="Output tokens produced"),
    error_message: Optional[str] = typer.Option(None, "--error", help="Error message"),
):
    """Log a single API call and print its cost."""
    try:
        event = _services(ctx).event_logger().log_event(
            provider=provider,
            endpoint=endpoint,
            feature=feature,
            response_time_ms=response_time,
            method=method,
            request_count=requests,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            status=status,
            error_message=error_message,
        )
    except ApiCostMeterError as e:
        _fail(str(e))

    console.print(
        f"[green]✓[/] Logged {event.request_count} request(s) to {event.provider} "
        f"cost: {_format_currency(event.calculated_cost)}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("bulk-log")
def bulk_log(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="JSON file holding a list of call records"),
):
    """Log a batch of calls from a JSON file; bad items are reported and skipped."""
    try:
        with open(file, 'r', encoding='utf-8') as f:
            records = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        _fail(f"Cannot read {file}: {e}")

    if not isinstance(records, list):
        _fail("File must contain a JSON list of records")

    try:
        result = _services(ctx).event_logger().bulk_log_events(records)
    except ApiCostMeterError as e:
        _fail(str(e))

    console.print(f"Processed: {result.processed_count}  Failed: {result.failed_count}")
    if result.errors:
        table = Table(title="Failed records")
        table.add_column("Index", justify="right")
        table.add_column("Reason")
        for error in result.errors:
            table.add_row(str(error.index), error.reason)
        console.print(table)

    sys.exit(EXIT_CODE_FAIL if result.processed_count == 0 else EXIT_CODE_PASS)


@app.command()
def dashboard(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Trailing window in days"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter by feature"),
    as_json: bool = typer.Option(False, "--json", help="Print the dashboard as JSON"),
):
    """Show cost totals and breakdowns for the trailing window."""
    now = datetime.now()
    view = _services(ctx).reporter().get_dashboard(
        now - timedelta(days=days), now, provider=provider, feature=feature
    )

    if as_json:
        console.print_json(json.dumps(dashboard_to_dict(view)))
        sys.exit(EXIT_CODE_PASS)

    totals = view.totals
    console.print(f"\n[bold]API Cost Dashboard[/bold] (last {days} days)")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_currency(totals.total_cost)}")
    console.print(f"Total requests: {totals.total_requests}")
    console.print(f"Successful: {totals.success_count}  Failed: {totals.failure_count}")
    console.print(f"Avg response time: {totals.avg_response_time:.0f} ms")

    if view.cost_by_provider:
        table = Table(title="Cost by provider")
        table.add_column("Provider")
        table.add_column("Cost", justify="right")
        table.add_column("Requests", justify="right")
        for row in view.cost_by_provider:
            table.add_row(row.provider, _format_currency(row.total_cost), str(row.total_requests))
        console.print(table)

    if view.cost_by_feature:
        table = Table(title="Cost by feature")
        table.add_column("Feature")
        table.add_column("Provider")
        table.add_column("Cost", justify="right")
        for row in view.cost_by_feature:
            table.add_row(row.feature, row.provider, _format_currency(row.total_cost))
        console.print(table)

    sys.exit(EXIT_CODE_PASS)


@app.command()
def trends(
    ctx: typer.Context,
    period: TrendPeriod = typer.Option(TrendPeriod.DAILY, "--period", help="hourly, daily or weekly"),
    days: int = typer.Option(30, "--days", "-d", help="Trailing window in days"),
):
    """Show the cost trend at the chosen granularity."""
    points = _services(ctx).reporter().get_cost_trends(period, days)
    if not points:
        console.print("\n[bold yellow]No API usage data found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"{period.value.capitalize()} cost trend")
    table.add_column("Bucket")
    table.add_column("Cost", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Avg ms", justify="right")
    for point in points:
        table.add_row(
            point.bucket,
            _format_currency(point.total_cost),
            str(point.total_requests),
            f"{point.avg_response_time:.0f}",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def detect(ctx: typer.Context):
    """Run every anomaly check once."""
    result = _services(ctx).detector().run_all_checks()
    console.print(
        f"Anomaly checks complete: {result.total} new alert(s) "
        f"(spikes: {len(result.spike_alerts)}, budgets: {len(result.budget_alerts)}, "
        f"errors: {len(result.error_alerts)})"
    )
    for alert in result.spike_alerts + result.budget_alerts + result.error_alerts:
        console.print(f"[{_severity_style(alert.severity)}]{alert.severity.value.upper()}[/] {alert.message}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def watch(
    ctx: typer.Context,
    interval_ms: Optional[int] = typer.Option(
        None,
        "--interval-ms",
        help="Check interval in milliseconds (defaults to detection.check_interval_ms)",
    ),
    max_runs: Optional[int] = typer.Option(None, "--max-runs", help="Stop after this many runs"),
):
    """Run the anomaly checks on a fixed schedule until interrupted."""
    services = _services(ctx)
    scheduler = AnomalyScheduler(
        services.detector(),
        interval_ms or services.settings.detection.check_interval_ms,
    )
    console.print(f"Running anomaly checks every {scheduler.interval_seconds:g}s (Ctrl+C to stop)")
    try:
        asyncio.run(scheduler.run(max_runs=max_runs))
    except KeyboardInterrupt:
        scheduler.stop()
    console.print(f"Scheduler stopped after {scheduler.runs} run(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def suggestions(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Trailing window in days"),
    suggestion_type: Optional[SuggestionType] = typer.Option(
        None, "--type", help="Only show suggestions of this type"
    ),
):
    """Show cost optimization suggestions grouped by priority."""
    services = _services(ctx)
    window = days or services.settings.optimization.window_days
    engine = services.optimizer()

    if suggestion_type is not None:
        found = engine.suggestions_by_type(suggestion_type, window)
        grouped = {"matching": found}
    else:
        report = engine.get_optimization_suggestions(window)
        found = report.suggestions
        grouped = report.grouped

    console.print(f"\n[bold]Optimization Suggestions[/bold] ({len(found)} found)")
    for priority, items in grouped.items():
        if not items:
            continue
        console.print(f"\n[bold]{priority.upper()}[/bold]")
        for item in items:
            console.print(f"- {item.title}: {item.description}")
            console.print(f"  [dim]{item.recommendation}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("recompute-budgets")
def recompute_budgets(ctx: typer.Context):
    """Refresh current spend of active budgets from logged events."""
    updated = _services(ctx).budget_service().recompute_budget_spend()
    console.print(f"[green]✓[/] Recomputed spend for {updated} budget(s)")
    sys.exit(EXIT_CODE_PASS)


def _parse_tier_option(value: str) -> PricingTier:
    parts = value.split(":")
    if len(parts) != 3:
        raise ValueError(f"Tier must be START:END:RATE (END may be empty), got {value!r}")
    start, end, rate = parts
    return PricingTier(
        start=int(start),
        end=int(end) if end else None,
        cost_per_unit=float(rate),
    )


@app.command("pricing-set")
def pricing_set(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name"),
    cost_per_unit: float = typer.Option(..., "--cost-per-unit", help="Flat price per request"),
    free_tier: int = typer.Option(0, "--free-tier", help="Free requests per month"),
    tier: List[str] = typer.Option([], "--tier", help="Tier as START:END:RATE; repeatable"),
    input_per_1k: Optional[float] = typer.Option(None, "--input-per-1k", help="Price per 1k input tokens"),
    output_per_1k: Optional[float] = typer.Option(None, "--output-per-1k", help="Price per 1k output tokens"),
    inactive: bool = typer.Option(False, "--inactive", help="Store the rule as inactive"),
):
    """Create or replace the pricing rule for a provider."""
    try:
        tiers = validate_tiers([_parse_tier_option(t) for t in tier])
        rule = PricingRule(
            provider=provider,
            cost_per_unit=cost_per_unit,
            free_tier_limit=free_tier,
            tier_pricing=tiers,
            is_active=not inactive,
            input_cost_per_1k=input_per_1k,
            output_cost_per_1k=output_per_1k,
        )
        _services(ctx).pricing.upsert(rule)
    except ValueError as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Pricing rule saved for {provider}")
    sys.exit(EXIT_CODE_PASS)


@app.command("budget-create")
def budget_create(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name"),
    monthly_limit: float = typer.Argument(..., help="Monthly spending limit"),
    threshold: float = typer.Option(80.0, "--threshold", help="Alert threshold in percent"),
    period: Optional[str] = typer.Option(None, "--period", help="YYYY-MM, defaults to this month"),
):
    """Create a monthly budget for a provider."""
    try:
        budget = _services(ctx).budget_service().create_budget(
            provider, monthly_limit, threshold, period=period
        )
    except (ValueError, DuplicateBudgetError) as e:
        _fail(str(e))

    console.print(
        f"[green]✓[/] Budget created for {budget.provider} ({budget.period}): "
        f"{_format_currency(budget.monthly_limit)} (id {budget.id})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("budget-update")
def budget_update(
    ctx: typer.Context,
    budget_id: int = typer.Argument(..., help="Budget id"),
    monthly_limit: Optional[float] = typer.Option(None, "--limit", help="New monthly limit"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="New alert threshold in percent"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive", help="Enable or disable the budget"),
):
    """Change a budget's limit, threshold or active flag."""
    try:
        budget = _services(ctx).budget_service().update_budget(
            budget_id, monthly_limit=monthly_limit, alert_threshold=threshold, is_active=active
        )
    except (ValueError, ApiCostMeterError) as e:
        _fail(str(e))

    state = "active" if budget.is_active else "inactive"
    console.print(
        f"[green]✓[/] Budget {budget.id} updated: {_format_currency(budget.monthly_limit)}, "
        f"threshold {budget.alert_threshold:g}%, {state}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("budget-delete")
def budget_delete(
    ctx: typer.Context,
    budget_id: int = typer.Argument(..., help="Budget id"),
):
    """Delete a budget."""
    try:
        _services(ctx).budget_service().delete_budget(budget_id)
    except ApiCostMeterError as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Budget {budget_id} deleted")
    sys.exit(EXIT_CODE_PASS)


def _severity_style(severity: AlertSeverity) -> str:
    return {
        AlertSeverity.LOW: "dim",
        AlertSeverity.MEDIUM: "yellow",
        AlertSeverity.HIGH: "red",
        AlertSeverity.CRITICAL: "bold red",
    }[severity]


@app.command()
def alerts(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include resolved alerts"),
    alert_type: Optional[AlertType] = typer.Option(None, "--type", help="Filter by alert type"),
    severity: Optional[AlertSeverity] = typer.Option(None, "--severity", help="Filter by severity"),
    limit: int = typer.Option(100, "--limit", help="Maximum alerts to show"),
):
    """List alerts, newest first."""
    found = _services(ctx).alert_service().list_alerts(
        is_resolved=None if show_all else False,
        alert_type=alert_type,
        severity=severity,
        limit=limit,
    )
    if not found:
        console.print("No alerts")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Alerts")
    table.add_column("ID", justify="right")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Provider")
    table.add_column("Title")
    table.add_column("Created")
    for alert in found:
        table.add_row(
            str(alert.id),
            f"[{_severity_style(alert.severity)}]{alert.severity.value}[/]",
            alert.type.value,
            alert.provider,
            alert.title,
            alert.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("resolve-alert")
def resolve_alert(
    ctx: typer.Context,
    alert_id: int = typer.Argument(..., help="Alert id"),
    resolved_by: Optional[str] = typer.Option(None, "--by", help="Who resolved it"),
):
    """Mark an alert as resolved."""
    try:
        _services(ctx).alert_service().resolve(alert_id, resolved_by=resolved_by)
    except ApiCostMeterError as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Alert {alert_id} resolved")
    sys.exit(EXIT_CODE_PASS)


@app.command("seed-demo")
def seed_demo(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", help="Days of history to generate"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed for repeatable data"),
):
    """Seed demo pricing rules, budgets and events."""
    summary = seed_demo_data(_services(ctx).db_path, days=days, seed=seed)
    console.print(
        f"[green]✓[/] Demo data inserted: {summary.pricing_rules} pricing rules, "
        f"{summary.budgets} budgets, {summary.events} events"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
