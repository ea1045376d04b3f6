"""OMCM CLI: inspect and steer routing state.

Usage:
    omcm status                         # Fusion, fallback and provider limits
    omcm route executor -p "..."        # Dry-run a routing decision
    omcm hook                           # PreToolUse hook (JSON on stdin)
    omcm fallback                       # Current orchestrator and chain
    omcm fallback check                 # Apply one hysteresis step
    omcm fallback set gpt-5.3-codex     # Manual switch
    omcm fallback recover|history|reset
    omcm limits --tier tier1            # Set Gemini quota tier
    omcm fusion enable|disable|reset
    omcm fusion mode save-tokens
    omcm rules                          # Active routing rules
    omcm triggers --hourly 60 --cost 7  # Evaluate switch triggers
    omcm sessions cleanup --days 7
    omcm config routing.usageThreshold=80
"""

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from omcm.config import OmcmConfig, OmcmPaths, configure_logging, ensure_omcm_home, get_config_value, set_config_value
from omcm.errors import InvalidTierError
from omcm.fallback import FallbackOrchestrator
from omcm.fusion_router import RoutingDecisionEngine
from omcm.fusion_tracker import FusionStateStore
from omcm.hook import handle_pre_tool_use
from omcm.provider_limits import ProviderLimitsStore
from omcm.routing_rules import RoutingRulesEngine
from omcm.session import SessionRegistry
from omcm.switch_triggers import create_trigger_config, evaluate_triggers, format_trigger_alert, get_recommended_action

console = Console()


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _percent_color(percent: float) -> str:
    if percent >= 90:
        return "red"
    if percent >= 70:
        return "yellow"
    return "green"


@click.group()
@click.option("--root", type=click.Path(file_okay=False, path_type=Path), envvar="OMCM_ROOT",
              hidden=True, help="Redirect all state under this directory")
@click.pass_context
def cli(ctx, root):
    """OMCM: route Claude Code agent tasks to external CLIs."""
    configure_logging()
    ctx.obj = OmcmPaths.under(root) if root else OmcmPaths()


# --- Status ---


@cli.command()
@click.pass_obj
def status(paths):
    """Show fusion stats, fallback state and provider limits."""
    session = SessionRegistry(paths).resolve()
    fusion = FusionStateStore(session).read()

    fusion_table = Table(show_header=False, box=None)
    fusion_table.add_row("Session", session.session_id or "[dim](global)[/]")
    fusion_table.add_row("Enabled", "[green]yes[/]" if fusion.enabled else "[red]no[/]")
    fusion_table.add_row("Mode", fusion.mode)
    fusion_table.add_row("Tasks", f"{fusion.routed_to_opencode}/{fusion.total_tasks} routed ({fusion.routing_rate}%)")
    fusion_table.add_row("Saved tokens", f"{fusion.estimated_saved_tokens:,} ({fusion.savings_rate}%)")
    by_provider = ", ".join(f"{k}={v}" for k, v in fusion.by_provider.items())
    fusion_table.add_row("By provider", by_provider)
    console.print(Panel(fusion_table, title="Fusion", border_style="blue"))

    current = FallbackOrchestrator(paths).get_current_orchestrator()
    fallback_table = Table(show_header=False, box=None)
    fallback_table.add_row("Model", current["model"].get("name") or current["model"].get("id"))
    fallback_table.add_row("Active", "[yellow]yes[/]" if current["fallbackActive"] else "no")
    fallback_table.add_row("Reason", current["fallbackReason"] or "-")
    console.print(Panel(fallback_table, title="Fallback",
                        border_style="yellow" if current["fallbackActive"] else "green"))

    hud = ProviderLimitsStore(paths).get_limits_for_hud()
    limits_table = Table(title="Provider Limits")
    limits_table.add_column("Provider")
    limits_table.add_column("Usage")
    limits_table.add_column("Limited")
    for provider in ("claude", "openai", "gemini"):
        info = hud[provider]
        color = _percent_color(info["percent"])
        limits_table.add_row(provider, f"[{color}]{info['percent']}%[/]",
                             "[red]yes[/]" if info["isLimited"] else "no")
    console.print(limits_table)


@cli.command()
@click.argument("subagent")
@click.option("--prompt", "-p", default="", help="Task prompt (affects large-task detection)")
@click.option("--v2", "use_v2", is_flag=True, help="Use cache + rules engine")
@click.pass_obj
def route(paths, subagent, prompt, use_v2):
    """Show the routing decision for SUBAGENT without executing anything."""
    session = SessionRegistry(paths).resolve()
    engine = RoutingDecisionEngine(session=session)
    tool_input = {"subagent_type": subagent, "prompt": prompt}
    decision = engine.should_route_v2(tool_input) if use_v2 else engine.should_route(tool_input)
    console.print_json(json.dumps(decision.to_dict()))


@cli.command()
@click.option("--v2", "use_v2", is_flag=True, help="Use cache + rules engine")
@click.pass_obj
def hook(paths, use_v2):
    """PreToolUse hook: read the event JSON on stdin, answer on stdout."""
    try:
        payload = json.loads(sys.stdin.read() or "{}")
    except ValueError:
        payload = {}
    session = SessionRegistry(paths).resolve()
    answer = _run_async(handle_pre_tool_use(payload, session=session, use_v2=use_v2))
    click.echo(json.dumps(answer))


# --- Fallback ---


@cli.group(invoke_without_command=True)
@click.pass_context
def fallback(ctx):
    """Show or change the fallback orchestrator."""
    if ctx.invoked_subcommand is None:
        orchestrator = FallbackOrchestrator(ctx.obj)
        table = Table(title="Fallback Chain")
        table.add_column("#", style="dim")
        table.add_column("Model")
        table.add_column("Provider")
        table.add_column("Type")
        for model in orchestrator.get_fallback_chain():
            marker = "[bold green]*[/]" if model["isCurrent"] else ""
            table.add_row(str(model["order"]), f"{model['name']} {marker}", model["provider"], model["type"])
        console.print(table)


@fallback.command("check")
@click.pass_obj
def fallback_check(paths):
    """Apply one hysteresis step using the cached Claude usage."""
    result = FallbackOrchestrator(paths).check_and_fallback()
    console.print(f"Action: [bold]{result['action']}[/]")
    if result.get("reason"):
        console.print(f"Reason: {result['reason']}")


@fallback.command("recover")
@click.pass_obj
def fallback_recover(paths):
    """Switch back to the primary model."""
    result = FallbackOrchestrator(paths).manual_fallback("claude-opus-4-6")
    console.print(f"[green]Now on {result['to']['name']}[/]")


@fallback.command("set")
@click.argument("model_id")
@click.pass_obj
def fallback_set(paths, model_id):
    """Switch to MODEL_ID from the chain."""
    result = FallbackOrchestrator(paths).manual_fallback(model_id)
    if not result["success"]:
        console.print(f"[red]{result['reason']}[/]")
        raise SystemExit(1)
    console.print(f"[green]Switched {result['from']['id']} -> {result['to']['id']}[/]")


@fallback.command("history")
@click.pass_obj
def fallback_history(paths):
    """List recent fallback transitions."""
    history = FallbackOrchestrator(paths).get_history()
    if not history:
        console.print("[dim]No transitions yet[/]")
        return
    table = Table(title="Fallback History")
    table.add_column("When", style="dim")
    table.add_column("Action")
    table.add_column("From -> To")
    table.add_column("Reason")
    for entry in history[-20:]:
        table.add_row(entry.get("timestamp", "")[:19], entry.get("action", ""),
                      f"{entry.get('from')} -> {entry.get('to')}", entry.get("reason", ""))
    console.print(table)


@fallback.command("reset")
@click.pass_obj
def fallback_reset(paths):
    """Reset fallback state to the primary model with empty history."""
    FallbackOrchestrator(paths).reset()
    console.print("[green]Fallback state reset[/]")


# --- Limits and fusion ---


@cli.command()
@click.option("--tier", help="Gemini quota tier (free, tier1, tier2, tier3)")
@click.option("--reset", "reset_limits", is_flag=True, help="Reset all provider limits")
@click.pass_obj
def limits(paths, tier, reset_limits):
    """Show or adjust provider rate-limit tracking."""
    store = ProviderLimitsStore(paths)
    if reset_limits:
        store.reset_all_limits()
        console.print("[green]Provider limits reset[/]")
    if tier:
        try:
            store.set_gemini_tier(tier)
        except InvalidTierError as e:
            console.print(f"[red]{e}[/]")
            raise SystemExit(1)
        console.print(f"[green]Gemini tier set to {tier}[/]")
    console.print_json(json.dumps(store.get_limits_for_hud()))


@cli.group(invoke_without_command=True)
@click.pass_context
def fusion(ctx):
    """Show or change fusion state for the current session."""
    if ctx.invoked_subcommand is None:
        session = SessionRegistry(ctx.obj).resolve()
        console.print_json(json.dumps(FusionStateStore(session).read().to_dict()))


def _fusion_store(paths: OmcmPaths) -> FusionStateStore:
    return FusionStateStore(SessionRegistry(paths).resolve())


@fusion.command("enable")
@click.pass_obj
def fusion_enable(paths):
    _fusion_store(paths).set_enabled(True)
    console.print("[green]Fusion enabled[/]")


@fusion.command("disable")
@click.pass_obj
def fusion_disable(paths):
    _fusion_store(paths).set_enabled(False)
    console.print("[yellow]Fusion disabled[/]")


@fusion.command("mode")
@click.argument("mode")
@click.pass_obj
def fusion_mode(paths, mode):
    """Set fusion MODE (balanced, save-tokens, quality-first)."""
    _fusion_store(paths).set_mode(mode)
    console.print(f"[green]Fusion mode: {mode}[/]")


@fusion.command("reset")
@click.pass_obj
def fusion_reset(paths):
    _fusion_store(paths).reset_fusion_stats()
    console.print("[green]Fusion stats reset[/]")


@cli.command()
@click.pass_obj
def rules(paths):
    """List routing rules by descending priority."""
    table = Table(title="Routing Rules")
    table.add_column("Priority", justify="right")
    table.add_column("ID")
    table.add_column("Condition")
    table.add_column("Action")
    for rule in RoutingRulesEngine(paths).list_rules():
        table.add_row(str(rule["priority"]), rule["id"], rule["condition"], rule["action"])
    console.print(table)


@cli.command()
@click.option("--hourly", type=float, help="Requests in the last hour")
@click.option("--cost", type=float, help="Session cost in USD")
@click.option("--failures", type=int, help="Consecutive MCP failures")
@click.option("--latency", type=float, help="Average latency in ms")
@click.option("--burn", type=float, help="Tokens per minute")
def triggers(hourly, cost, failures, latency, burn):
    """Evaluate switch triggers for the given metrics."""
    metrics = {
        "hourly_requests": hourly,
        "session_cost": cost,
        "mcp_consecutive_failures": failures,
        "avg_latency_ms": latency,
        "token_burn_rate": burn,
    }
    result = evaluate_triggers({k: v for k, v in metrics.items() if v is not None}, create_trigger_config())
    for hit in result["triggers"]:
        console.print(format_trigger_alert(hit))
    recommended = get_recommended_action(result["triggers"])
    console.print(f"Recommended: [bold]{recommended['action']}[/] ({recommended['severity']})")


@cli.group()
def sessions():
    """Session maintenance."""


@sessions.command("cleanup")
@click.option("--days", default=7, type=float, show_default=True, help="Maximum session age")
@click.pass_obj
def sessions_cleanup(paths, days):
    """Remove session directories and registry entries older than --days."""
    result = SessionRegistry(paths).cleanup_old_sessions(days)
    console.print(f"Removed {len(result['removedDirs'])} session dirs, "
                  f"{len(result['removedEntries'])} registry entries")


@cli.command()
@click.argument("key_value", nargs=-1)
@click.pass_obj
def config(paths, key_value):
    """View or set OMCM configuration.

    Examples:
        omcm config                             # show all
        omcm config fusionDefault=true
        omcm config routing.usageThreshold=80
    """
    if not key_value:
        console.print_json(json.dumps(OmcmConfig.load(paths).to_dict()))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        value = get_config_value(kv.strip(), paths=paths)
        console.print_json(json.dumps(value))
        return

    key, raw = kv.split("=", 1)
    key = key.strip()
    raw = raw.strip()
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    ensure_omcm_home(paths)
    set_config_value(key, value, paths=paths)
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
