"""
Command-line interface for the NAT-PMP client.
"""
import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from natpmp_client.client import NatPMPClient
from natpmp_client.config import ClientConfig
from natpmp_client.log import configure_logging
from natpmp_client.protocol import CLIENT_PORT, NATPMPError, ResultCode


console = Console()
err_console = Console(stderr=True)

EXIT_REFUSED = 1
EXIT_ERROR = 3


def _result_name(code) -> str:
    if isinstance(code, ResultCode):
        return code.name
    return f"UNKNOWN({int(code)})"


def _build_config(ctx: click.Context) -> ClientConfig:
    opts = ctx.obj
    try:
        if opts["config"] and Path(opts["config"]).exists():
            config = ClientConfig.from_file(opts["config"])
        else:
            config = ClientConfig()

        # Command-line values override the file
        if opts["gateway"]:
            config.gateway = opts["gateway"]
        if opts["log_level"]:
            config.log_level = opts["log_level"]
        if opts["client_port"]:
            # Share port 5350 with other NAT-PMP clients on this host
            config.local_port = CLIENT_PORT
            config.reuse_address = True
            config.reuse_port = True

        config.validate()
    except ValueError as e:
        raise click.UsageError(str(e))
    return config


def _run(ctx: click.Context, operation):
    """Run `operation(client)` against the configured gateway and report it."""
    config = _build_config(ctx)
    configure_logging(config.log_level, config.log_format)

    async def _exchange():
        client = await NatPMPClient.from_config(config)
        async with client:
            return await operation(client)

    try:
        response = asyncio.run(_exchange())
    except NATPMPError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(EXIT_ERROR)

    return config, response


def _finish(ctx: click.Context, response, table: Table):
    if ctx.obj["json"]:
        click.echo(json.dumps(response.to_dict(), indent=2))
    else:
        console.print(table)

    if not response.success:
        sys.exit(EXIT_REFUSED)


def _mapping_table(title: str, response) -> Table:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Result", _result_name(response.result_code))
    table.add_row("Protocol", response.operation.protocol_name.upper())
    table.add_row("Internal Port", str(response.internal_port))
    table.add_row("External Port", str(response.external_port))
    table.add_row("Lifetime", f"{response.lifetime}s")
    table.add_row("Epoch", str(response.epoch))
    return table


@click.group()
@click.option("--gateway", "-g", help="Gateway IPv4 address")
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--log-level", "-l", default=None, help="Log level")
@click.option("--json", "as_json", is_flag=True, help="Print responses as JSON")
@click.option("--client-port", is_flag=True,
              help=f"Bind to the NAT-PMP client port {CLIENT_PORT} with address/port reuse")
@click.pass_context
def main(ctx, gateway, config, log_level, as_json, client_port):
    """NAT-PMP client - query the gateway and manage port mappings."""
    ctx.ensure_object(dict)
    ctx.obj.update(
        gateway=gateway,
        config=config,
        log_level=log_level,
        json=as_json,
        client_port=client_port,
    )


@main.command()
@click.pass_context
def address(ctx):
    """Show the gateway's external IPv4 address."""
    config, response = _run(ctx, lambda client: client.send_external_address_request())

    table = Table(title=f"Gateway {config.gateway}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Result", _result_name(response.result_code))
    table.add_row("External Address", str(response.external_address or "-"))
    table.add_row("Epoch", str(response.epoch))

    _finish(ctx, response, table)


@main.command("map")
@click.argument("internal_port", type=click.IntRange(1, 65535))
@click.option("--external", "-e", "external_port", type=click.IntRange(0, 65535), default=None,
              help="Suggested external port (defaults to the internal port)")
@click.option("--protocol", "-p", type=click.Choice(["udp", "tcp"], case_sensitive=False),
              default="udp", help="Transport protocol to map")
@click.option("--lifetime", "-t", type=click.IntRange(1, 0xFFFFFFFF), default=None,
              help="Requested lifetime in seconds")
@click.pass_context
def map_port(ctx, internal_port, external_port, protocol, lifetime):
    """Create or renew a port mapping."""
    if external_port is None:
        external_port = internal_port

    config, response = _run(
        ctx,
        lambda client: client.request_mapping(internal_port, external_port, protocol, lifetime),
    )
    _finish(ctx, response, _mapping_table(f"Mapping on {config.gateway}", response))


@main.command("unmap")
@click.argument("internal_port", type=click.IntRange(1, 65535))
@click.option("--protocol", "-p", type=click.Choice(["udp", "tcp"], case_sensitive=False),
              default="udp", help="Transport protocol of the mapping")
@click.pass_context
def unmap_port(ctx, internal_port, protocol):
    """Delete a port mapping."""
    config, response = _run(ctx, lambda client: client.destroy_mapping(internal_port, protocol))
    _finish(ctx, response, _mapping_table(f"Mapping removed on {config.gateway}", response))


@main.command()
@click.argument("output", type=click.Path())
@click.option("--gateway", "-g", "gateway", default=None, help="Gateway IPv4 address")
@click.option("--lifetime", "-t", type=int, default=7200, help="Default mapping lifetime")
def generate_config(output, gateway, lifetime):
    """Generate a configuration file."""
    config = ClientConfig(gateway=gateway, default_lifetime=lifetime)
    config.to_file(output)
    console.print(f"[green]Configuration saved to {output}[/green]")


@main.command()
def version():
    """Display version information."""
    from . import __version__
    console.print(f"[cyan]natpmp-client v{__version__}[/cyan]")


if __name__ == "__main__":
    main()
