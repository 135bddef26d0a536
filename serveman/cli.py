import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer

from serveman.contracts import EXIT_POLICIES, HEALTH_PATH, INSTANCE_LIST_SCHEMA_V1, PROBE_HOST
from serveman.errors import NoPortAvailableError, ReadinessTimeoutError, ServeStructuredError
from serveman.supervisor.port_allocator import PortAllocator
from serveman.supervisor.readiness import wait_for_ready
from serveman.supervisor.serve_config import CONFIG_PATH, load_config, port_range, save_config
from serveman.supervisor.serve_manager import ServeManager

app = typer.Typer()
config_app = typer.Typer()
app.add_typer(config_app, name="config")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("serveman.cli")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log child output and probe details"),
):
    """Launch and supervise local serve processes."""
    configure_logging(verbose)


def _echo_error(exc: ServeStructuredError, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(exc.to_payload(), indent=2))
    else:
        typer.echo(f"Error: {exc}")


async def _wait_for_interrupt() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warning("Signal handlers not supported on this platform.")
    await stop_event.wait()


async def _run_serve(
    manager: ServeManager,
    project_paths: List[Path],
    model: Optional[str],
    timeout: float,
    wait: bool,
    json_output: bool,
    hold: bool,
) -> int:
    try:
        launched = []
        for project_path in project_paths:
            resolved = str(project_path.resolve())
            port = await manager.launch(resolved, model)
            launched.append((resolved, port))
        if wait:
            for resolved, _ in launched:
                await manager.wait_until_ready(resolved, model, timeout)
    except ServeStructuredError as exc:
        _echo_error(exc, json_output)
        await manager.shutdown()
        return 1

    if json_output:
        payload = {
            "schema_version": INSTANCE_LIST_SCHEMA_V1,
            "instances": [info.model_dump(mode="json") for info in manager.describe_instances()],
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        for resolved, port in launched:
            typer.echo(f"{resolved} -> http://{manager.probe_host}:{port}")

    if hold:
        typer.echo("Serving. Press Ctrl+C to stop.")
        await _wait_for_interrupt()
    await manager.shutdown()
    return 0


@app.command()
def serve(
    project_paths: List[Path] = typer.Argument(..., exists=True, file_okay=False, help="Project directories"),
    model: Optional[str] = typer.Option(None, "--model", help="Model passed to every serve process"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Readiness timeout in seconds"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for each instance to become ready"),
    hold: bool = typer.Option(True, "--hold/--no-hold", help="Keep instances running until Ctrl+C"),
    json_output: bool = typer.Option(False, "--json", help="Print instance snapshot as JSON"),
    config_path: Path = typer.Option(CONFIG_PATH, "--config", help="Config file path"),
):
    """Launch one serve process per project directory and supervise them."""
    config = load_config(config_path)
    manager = ServeManager.from_config(config)
    exit_code = asyncio.run(
        _run_serve(
            manager,
            project_paths,
            model,
            timeout if timeout is not None else config["ready_timeout_seconds"],
            wait,
            json_output,
            hold,
        )
    )
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def probe(
    port: int = typer.Option(..., "--port", help="Port to probe"),
    timeout: float = typer.Option(10.0, "--timeout", help="Readiness timeout in seconds"),
    host: str = typer.Option(PROBE_HOST, "--host"),
    path: str = typer.Option(HEALTH_PATH, "--path", help="Health endpoint path"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Wait until a service answers its health endpoint."""
    try:
        asyncio.run(wait_for_ready(port, timeout, host=host, path=path))
    except ReadinessTimeoutError as exc:
        _echo_error(exc, json_output)
        raise typer.Exit(code=1)
    if json_output:
        typer.echo(json.dumps({"port": port, "ready": True}))
    else:
        typer.echo(f"READY: {host}:{port}{path}")


@app.command("next-port")
def next_port(
    config_path: Path = typer.Option(CONFIG_PATH, "--config", help="Config file path"),
):
    """Print the first free port in the configured range."""
    config = load_config(config_path)
    port_min, port_max = port_range(config)
    allocator = PortAllocator(port_min, port_max, host=config["hostname"])
    try:
        port = asyncio.run(allocator.allocate())
    except NoPortAvailableError as exc:
        _echo_error(exc, False)
        raise typer.Exit(code=1)
    typer.echo(str(port))


@config_app.command("show")
def config_show(
    config_path: Path = typer.Option(CONFIG_PATH, "--config", help="Config file path"),
):
    """Print the effective configuration."""
    typer.echo(json.dumps(load_config(config_path), indent=2))


@config_app.command("set-range")
def config_set_range(
    port_min: int = typer.Argument(..., help="Lowest port (inclusive)"),
    port_max: int = typer.Argument(..., help="Highest port (inclusive)"),
    config_path: Path = typer.Option(CONFIG_PATH, "--config", help="Config file path"),
):
    """Persist a new port range."""
    config = load_config(config_path)
    config["port_min"] = port_min
    config["port_max"] = port_max
    try:
        saved = save_config(config, config_path)
    except ValueError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    typer.echo(f"Port range set to {saved['port_min']}-{saved['port_max']}")


@config_app.command("set-policy")
def config_set_policy(
    policy: str = typer.Argument(..., help=f"One of: {', '.join(sorted(EXIT_POLICIES))}"),
    config_path: Path = typer.Option(CONFIG_PATH, "--config", help="Config file path"),
):
    """Persist the exit policy applied when a serve process dies."""
    config = load_config(config_path)
    config["exit_policy"] = policy
    try:
        saved = save_config(config, config_path)
    except ValueError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    typer.echo(f"Exit policy set to {saved['exit_policy']}")


if __name__ == "__main__":
    app()
