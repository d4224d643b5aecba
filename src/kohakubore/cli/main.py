"""
KohakuBore CLI entry point.

Usage:
    kohakubore [OPTIONS] COMMAND [ARGS]...

Commands:
    local     Expose a local port through a remote tunnel server
    server    Run the tunnel server
    version   Show version information
"""

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from kohakubore.client.config import config as client_config
from kohakubore.client.session import Client
from kohakubore.cli.output import console, print_error, print_success, print_warning
from kohakubore.exceptions import TunnelError
from kohakubore.models.enums import LogLevel
from kohakubore.protocol import CONTROL_PORT
from kohakubore.server.app import TunnelServer
from kohakubore.server.config import config as server_config
from kohakubore.utils.logger import configure_logging

app = typer.Typer(
    name="kohakubore",
    help="Expose local TCP ports through a public tunnel server",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def resolve_secret(secret: str | None, secret_file: Path | None) -> bytes | None:
    """
    Resolve the shared secret from the command line.

    A secret file takes precedence over an inline value; trailing
    whitespace (usually a newline) is stripped from file contents. An
    empty secret counts as no secret.

    Raises:
        OSError: if the secret file cannot be read
    """
    if secret_file is not None:
        value = secret_file.read_bytes().rstrip()
    elif secret is not None:
        value = secret.encode("utf-8")
    else:
        return None
    return value or None


@app.callback()
def main(
    secret: Annotated[
        str | None,
        typer.Option(
            "--secret",
            "-s",
            help="Secret for authentication",
            envvar="KOHAKUBORE_SECRET",
            show_envvar=False,
        ),
    ] = None,
    secret_file: Annotated[
        Path | None,
        typer.Option(
            "--secret-file",
            "-f",
            help="File containing the secret for authentication",
            dir_okay=False,
        ),
    ] = None,
    log_level: Annotated[
        LogLevel,
        typer.Option("--log-level", "-L", help="Logging verbosity"),
    ] = LogLevel.INFO,
):
    """
    KohakuBore tunnel CLI.

    Run [bold]server[/bold] on a public machine and [bold]local[/bold] next to
    the service you want to expose.
    """
    try:
        resolved = resolve_secret(secret, secret_file)
    except OSError as e:
        print_error(f"Could not read secret file {secret_file}: {e}")
        raise typer.Exit(1)

    server_config.SECRET = resolved
    client_config.SECRET = resolved
    server_config.LOG_LEVEL = log_level
    client_config.LOG_LEVEL = log_level


async def _run_client(client: Client) -> None:
    port = await client.connect()
    print_success(
        f"Listening at [cyan]{client.config.SERVER_ADDRESS}:{port}[/cyan] "
        f"[dim]→[/dim] "
        f"[yellow]{client.config.get_local_address()}[/yellow]"
    )
    console.print("[dim]Press Ctrl+C to stop.[/dim]")
    await client.listen()


@app.command("local")
def local(
    local_port: Annotated[
        int, typer.Argument(help="The local port to expose", min=1, max=65535)
    ],
    to: Annotated[
        str,
        typer.Option(
            "--to",
            "-t",
            help="Address of the remote server to expose local ports to",
            envvar="KOHAKUBORE_SERVER",
        ),
    ],
    local_host: Annotated[
        str,
        typer.Option("--local-host", "-l", help="The local host to expose"),
    ] = "localhost",
    port: Annotated[
        int,
        typer.Option(
            "--port", "-p", help="Port on the remote server to select (0=any)",
            min=0, max=65535,
        ),
    ] = 0,
    control_port: Annotated[
        int,
        typer.Option("--control-port", help="Control port of the remote server"),
    ] = CONTROL_PORT,
):
    """Start a local proxy to the remote server."""
    configure_logging(client_config.LOG_LEVEL)

    client_config.LOCAL_HOST = local_host
    client_config.LOCAL_PORT = local_port
    client_config.SERVER_ADDRESS = to
    client_config.CONTROL_PORT = control_port
    client_config.REQUESTED_PORT = port

    try:
        asyncio.run(_run_client(Client(client_config)))
    except TunnelError as e:
        print_error(str(e))
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
        return

    print_error("Connection to the server was closed.")
    raise typer.Exit(1)


@app.command("server")
def server(
    min_port: Annotated[
        int,
        typer.Option("--min-port", help="Minimum accepted TCP port number", min=1, max=65535),
    ] = 1024,
    max_port: Annotated[
        int,
        typer.Option("--max-port", help="Maximum accepted TCP port number", min=1, max=65535),
    ] = 65535,
    bind_addr: Annotated[
        str,
        typer.Option("--bind-addr", help="Address the control port listens on"),
    ] = "0.0.0.0",
    bind_tunnels: Annotated[
        str,
        typer.Option("--bind-tunnels", help="Address leased tunnel ports listen on"),
    ] = "0.0.0.0",
    control_port: Annotated[
        int,
        typer.Option("--control-port", help="Port clients connect to"),
    ] = CONTROL_PORT,
):
    """Run the remote proxy server."""
    if min_port > max_port:
        raise typer.BadParameter(
            f"port range is empty ({min_port} > {max_port})", param_hint="--min-port"
        )

    configure_logging(server_config.LOG_LEVEL)
    if server_config.SECRET is None:
        print_warning("No secret configured, any client can open a tunnel.")

    server_config.MIN_PORT = min_port
    server_config.MAX_PORT = max_port
    server_config.BIND_ADDR = bind_addr
    server_config.BIND_TUNNELS = bind_tunnels
    server_config.CONTROL_PORT = control_port

    try:
        asyncio.run(TunnelServer(server_config).listen())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    except OSError as e:
        print_error(f"Could not start server: {e}")
        raise typer.Exit(1)


@app.command("version")
def version():
    """Show version information."""
    from kohakubore import __version__

    console.print(f"KohakuBore v{__version__}")


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
