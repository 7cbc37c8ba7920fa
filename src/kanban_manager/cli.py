"""
Command-line entry point for Kanban Manager.

Starts the HTTP API and the MCP server against one shared database:

- ``stdio`` (default): API in a background thread, MCP over stdin/stdout
- ``sse`` / ``http``: API and MCP served concurrently on the event loop
- ``none``: API only

All human-facing output goes to stderr because stdout carries the stdio
MCP transport.
"""

import asyncio
import logging
import os
import socket
import sys
import threading
import time
from typing import Any, Dict, List, Optional

import click
import uvicorn
import yaml

from . import api
from .database import KanbanDatabase
from .importer import import_board
from .mcp_server import create_mcp_server
from .service import KanbanService

logger = logging.getLogger(__name__)

_database_instance: Optional[KanbanDatabase] = None

API_SHUTDOWN_TIMEOUT = 5.0


class PortConflictError(Exception):
    """Raised when no free port can be found for a server."""


def check_port_available(host: str, port: int) -> bool:
    """Return True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


def find_available_ports(start_port: int, count: int = 2, host: str = "127.0.0.1",
                         max_attempts: int = 100) -> List[int]:
    """
    Find ``count`` consecutive free ports starting at ``start_port``.

    Raises:
        PortConflictError: If no run of free ports is found within max_attempts
    """
    for base in range(start_port, start_port + max_attempts):
        ports = list(range(base, base + count))
        if all(check_port_available(host, port) for port in ports):
            return ports
    raise PortConflictError(
        f"No {count} consecutive free ports found in {start_port}-{start_port + max_attempts}"
    )


def validate_project_yaml(project_path: str) -> Dict[str, Any]:
    """
    Load and sanity-check a board YAML file.

    Raises:
        click.ClickException: If the file is missing, unparsable or not a mapping
    """
    try:
        with open(project_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise click.ClickException(f"Project file not found: {project_path}")
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in {project_path}: {e}")

    if not isinstance(data, dict):
        raise click.ClickException(f"Project file must contain a YAML dictionary: {project_path}")
    return data


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> None:
    """Block until a TCP connection to host:port succeeds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.5):
                return
        except OSError:
            time.sleep(0.1)
    logger.warning(f"Server on {host}:{port} did not become ready within {timeout}s")


def print_startup_banner(port: int, mcp_port: Optional[int], transport: str, host: str) -> None:
    """Print server addresses to stderr."""
    lines = [
        "=" * 60,
        "KANBAN MANAGER STARTED",
        "=" * 60,
        f"HTTP API:   http://{host}:{port}",
    ]
    if transport == "stdio":
        lines.append("MCP server: stdin/stdout (stdio transport)")
    elif transport in ("sse", "http"):
        path = "/sse" if transport == "sse" else "/mcp"
        lines.append(f"MCP server: http://{host}:{mcp_port}{path} ({transport.upper()} transport)")
    else:
        lines.append("MCP server: disabled")
    lines.append("=" * 60)
    click.echo("\n".join(lines), err=True)


def _uvicorn_config(host: str, port: int, verbose: bool) -> uvicorn.Config:
    return uvicorn.Config(
        api.app,
        host=host,
        port=port,
        log_level="debug" if verbose else "warning",
    )


async def start_stdio_mode(port: int, host: str, service: KanbanService, verbose: bool) -> None:
    """Run the API in a background thread and the MCP server on stdio."""
    server = uvicorn.Server(_uvicorn_config(host, port, verbose))
    api_thread = threading.Thread(target=server.run, name="kanban-api", daemon=True)
    api_thread.start()

    wait_for_server_ready(host, port)
    print_startup_banner(port, None, 'stdio', host)

    mcp_server = create_mcp_server(service)
    try:
        await mcp_server.start_server(transport='stdio')
    finally:
        server.should_exit = True
        api_thread.join(timeout=API_SHUTDOWN_TIMEOUT)
        if api_thread.is_alive():
            logger.warning(f"HTTP API did not stop within {API_SHUTDOWN_TIMEOUT}s")


async def start_network_mode(port: int, mcp_port: int, host: str, transport: str,
                             service: KanbanService, verbose: bool) -> None:
    """Serve the API and the MCP server (SSE or HTTP) concurrently."""
    server = uvicorn.Server(_uvicorn_config(host, port, verbose))
    mcp_server = create_mcp_server(service)

    print_startup_banner(port, mcp_port, transport, host)
    await asyncio.gather(
        server.serve(),
        mcp_server.start_server(transport=transport, host=host, port=mcp_port),
    )


async def start_api_only_mode(port: int, host: str, verbose: bool) -> None:
    """Serve the HTTP API without an MCP server."""
    server = uvicorn.Server(_uvicorn_config(host, port, verbose))
    print_startup_banner(port, None, 'none', host)
    await server.serve()


def cleanup_resources() -> None:
    """Close the shared database connection."""
    global _database_instance
    if _database_instance is None:
        return
    try:
        _database_instance.close()
        logger.info("Database connection closed")
    except Exception as e:
        logger.error(f"Error closing database: {e}")
    finally:
        _database_instance = None
        api.configure_service(None)


def _resolve_ports(host: str, port: int, mcp_port: Optional[int], needs_mcp_port: bool):
    """Return (api_port, mcp_port), moving to free ports if the requested ones are taken."""
    if mcp_port is None:
        mcp_port = port + 1

    wanted = [port, mcp_port] if needs_mcp_port else [port]
    if all(check_port_available(host, p) for p in wanted):
        return port, mcp_port

    try:
        ports = find_available_ports(port + 1, count=len(wanted), host=host)
    except PortConflictError as e:
        raise click.ClickException(f"Port conflict: {e}")

    click.echo(f"Port {port} unavailable, using {ports[0]}", err=True)
    return ports[0], (ports[1] if needs_mcp_port else mcp_port)


@click.command()
@click.option('--port', default=8080, show_default=True, type=int, help='HTTP API port')
@click.option('--host', default='127.0.0.1', show_default=True, help='Host to bind servers to')
@click.option('--mcp-port', default=None, type=int, help='MCP port for sse/http transports (default: port+1)')
@click.option('--mcp-transport', default='stdio', show_default=True,
              type=click.Choice(['stdio', 'sse', 'http', 'none']), help='MCP transport mode')
@click.option('--db-path', default=None, type=click.Path(dir_okay=False),
              help='SQLite database file (default: $DATABASE_PATH or kanban.db)')
@click.option('--project', default=None, type=click.Path(dir_okay=False),
              help='YAML board file to import on startup')
@click.option('--verbose', is_flag=True, help='Enable debug logging')
def main(port: int, host: str, mcp_port: Optional[int], mcp_transport: str,
         db_path: Optional[str], project: Optional[str], verbose: bool) -> None:
    """Run the Kanban Manager HTTP API and MCP server."""
    global _database_instance

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    needs_mcp_port = mcp_transport in ('sse', 'http')
    port, mcp_port = _resolve_ports(host, port, mcp_port, needs_mcp_port)

    db_path = db_path or os.getenv("DATABASE_PATH", api.DEFAULT_DB_PATH)
    os.environ["DATABASE_PATH"] = db_path
    try:
        _database_instance = KanbanDatabase(db_path)
    except Exception as e:
        raise click.ClickException(f"Failed to initialize database at {db_path}: {e}")

    service = KanbanService(_database_instance)
    api.configure_service(service)

    try:
        if project:
            board = validate_project_yaml(project)
            try:
                stats = import_board(service, board)
            except ValueError as e:
                raise click.ClickException(f"Failed to import {project}: {e}")
            click.echo(
                f"Imported {project}: {stats['projects_created']} projects, "
                f"{stats['tasks_created']} tasks created, {stats['tasks_updated']} updated",
                err=True,
            )
            for error in stats["errors"]:
                click.echo(f"  warning: {error}", err=True)

        if mcp_transport == 'stdio':
            asyncio.run(start_stdio_mode(port, host, service, verbose))
        elif needs_mcp_port:
            asyncio.run(start_network_mode(port, mcp_port, host, mcp_transport, service, verbose))
        else:
            asyncio.run(start_api_only_mode(port, host, verbose))
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        cleanup_resources()


if __name__ == "__main__":
    main()
