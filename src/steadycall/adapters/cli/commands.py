"""CLI command implementations."""

from typing import Optional
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ... import __version__
from ...infrastructure.di.container import ResilienceContainer
from ...infrastructure.config.config_loader import ConfigLoader
from ...infrastructure.presentation.error_presenter import ErrorPresenter
from ...infrastructure.resilience.backoff import JITTER_FACTOR


def _format_rate(rate_per_second: float) -> str:
    if rate_per_second >= 1:
        return f"{rate_per_second:g}/s"
    return f"{rate_per_second * 60:g}/min"


def info_command(config_path: Optional[str], verbose: bool, console: Console):
    """
    Execute info command.

    Args:
        config_path: Config file path
        verbose: Show technical error details
        console: Rich console
    """
    console.print(Panel.fit(
        "[bold]SteadyCall System Information[/bold]",
        border_style="blue"
    ))

    try:
        container = ResilienceContainer.create(config_path)
    except Exception as e:
        console.print(f"\n{ErrorPresenter.present(e, verbose=verbose)}", markup=False)
        raise

    console.print("\n[bold]Version:[/bold]")
    console.print(f"  SteadyCall: {__version__}")
    console.print(f"  Layer order: {' -> '.join(container.config.layer_order)}")

    table = Table(title="Dependencies", show_lines=False)
    table.add_column("Name", style="cyan")
    table.add_column("Retries")
    table.add_column("Backoff")
    table.add_column("Breaker")
    table.add_column("Rate limit")
    table.add_column("Layers")

    names = container.known_dependencies()
    for name in names:
        resolved = container.resolve(name)
        policy = resolved.policy
        breaker = resolved.breaker
        if resolved.rate_limit is not None:
            limit = resolved.rate_limit
            rate = f"{_format_rate(limit.rate_per_second)} burst {limit.burst}"
            if resolved.adaptive:
                rate += " (adaptive)"
            rate += f" [dim]{resolved.rate_limit_source}[/dim]"
        else:
            rate = "[dim]none[/dim]"
        table.add_row(
            name,
            f"{policy.max_retries} [dim]{resolved.policy_source}[/dim]",
            f"{policy.initial_interval:g}s x{policy.multiplier:g} <= {policy.max_interval:g}s",
            f"{breaker.failure_threshold} fails / {breaker.timeout:g}s [dim]{resolved.breaker_source}[/dim]",
            rate,
            " > ".join(resolved.layers),
        )

    if names:
        console.print("")
        console.print(table)
    else:
        console.print("\n  No dependencies configured")

    if container.config.tiers:
        console.print("\n[bold]Service Tiers:[/bold]")
        for tier, tier_config in container.config.tiers.items():
            console.print(f"  {tier}: {_format_rate(tier_config.rate_per_second)} burst {tier_config.burst}")

    if container.config.keyed is not None:
        keyed = container.config.keyed
        console.print("\n[bold]Per-key Limits:[/bold]")
        console.print(
            f"  {_format_rate(keyed.rate_per_second)} burst {keyed.burst}, "
            f"max {keyed.max_keys} keys, idle TTL {keyed.idle_ttl:g}s"
        )

    console.print("\n[bold]Configuration:[/bold]")
    config_info = ConfigLoader.get_config_info()
    if config_path:
        console.print(f"  Config file: {config_path}")
    if config_info["existing_configs"]:
        console.print("  Active configs:")
        for cfg in config_info["existing_configs"]:
            console.print(f"    - {cfg}")
    elif not config_path:
        console.print("  Using default configuration")

    container.shutdown()


def backoff_command(name: str, config_path: Optional[str], verbose: bool, console: Console):
    """
    Execute backoff command: preview the retry delay schedule for a dependency.

    Args:
        name: Dependency name
        config_path: Config file path
        verbose: Show technical error details
        console: Rich console
    """
    try:
        container = ResilienceContainer.create(config_path)
    except Exception as e:
        console.print(f"\n{ErrorPresenter.present(e, verbose=verbose)}", markup=False)
        raise

    resolved = container.resolve(name)
    policy = resolved.policy

    console.print(Panel.fit(
        f"[bold]Retry schedule for {name}[/bold] ({resolved.policy_source})",
        border_style="blue"
    ))

    table = Table()
    table.add_column("Retry", justify="right")
    table.add_column("Delay", justify="right")
    table.add_column("With jitter (max)", justify="right")
    table.add_column("Elapsed (min)", justify="right")

    elapsed = 0.0
    for attempt in range(1, policy.max_retries + 1):
        delay = policy.base_delay(attempt)
        elapsed += delay
        jittered = delay * (1 + JITTER_FACTOR) if policy.jitter else delay
        table.add_row(
            str(attempt),
            f"{delay:.3f}s",
            f"{jittered:.3f}s",
            f"{elapsed:.3f}s",
        )

    if policy.max_retries:
        console.print(table)
    else:
        console.print("\n  No retries: the first failure is final")

    console.print(f"\nTotal attempts: {policy.max_retries + 1}")
    if policy.retryable_errors:
        names = ", ".join(cls.__name__ for cls in policy.retryable_errors)
        console.print(f"Retries on: {names}")
    else:
        console.print("Retries on: any error")

    container.shutdown()


def config_command(
    init: bool,
    path: Optional[str],
    show: bool,
    verbose: bool,
    console: Console,
):
    """
    Execute config command.

    Args:
        init: Create default config
        path: Config file path
        show: Show current config
        verbose: Show technical error details
        console: Rich console
    """
    console.print(Panel.fit(
        "[bold]SteadyCall Configuration[/bold]",
        border_style="blue"
    ))

    if init:
        try:
            config_path = ConfigLoader.create_default_config(path)
            console.print(f"\n[green]Configuration file created: {config_path}[/green]")
        except Exception as e:
            console.print(f"\n{ErrorPresenter.present(e, verbose=verbose)}", markup=False)
            raise

    elif show:
        try:
            config = ConfigLoader.load(path)
            yaml_str = config.to_yaml()
            console.print("\n[bold]Current Configuration:[/bold]")
            console.print(yaml_str, markup=False)
        except Exception as e:
            console.print(f"\n{ErrorPresenter.present(e, verbose=verbose)}", markup=False)
            raise

    else:
        config_info = ConfigLoader.get_config_info()

        console.print("\n[bold]Configuration Files:[/bold]")
        if config_info["existing_configs"]:
            for cfg in config_info["existing_configs"]:
                console.print(f"  [green]{cfg}[/green]")
        else:
            console.print("  No configuration files found")

        console.print("\n[bold]Environment Overrides:[/bold]")
        if config_info["env_overrides"]:
            for env_var in config_info["env_overrides"]:
                console.print(f"  {env_var}")
        else:
            console.print("  None")

        console.print("\n[bold]Default Locations:[/bold]")
        for default_path in config_info["default_paths"]:
            console.print(f"  {default_path}")
