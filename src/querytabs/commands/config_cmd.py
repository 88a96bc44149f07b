"""Connection settings: where the query service lives and which session to use."""

import asyncio

import typer

from .. import config as config_module
from ..client import APIError, get_client
from ..config import ENV_VARS, get_config
from ..output import print_dict, print_error, print_info, print_json, print_success, print_warning
from ..main import state


app = typer.Typer(help="Query service connection settings")


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="url, session-token or state-file"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Save a connection setting to ~/.querytabs/config.yaml.

    Keys:
    - url: query service base URL (e.g. https://host/api)
    - session-token: session credential sent with every request
    - state-file: where the tab set is persisted
    """
    config = get_config()
    try:
        name = config.set_value(key, value)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    shown = config.to_dict()[name]
    config_file = config_module.CONFIG_FILE
    if state.json_output:
        print_json({"key": name, "value": shown, "file": str(config_file)})
        return

    print_success(f"{name} = {shown} (saved to {config_file})")
    if name in config.env_overrides():
        print_warning(f"{ENV_VARS[name]} is set and takes precedence over the saved value.")


@app.command("show")
def show_config() -> None:
    """Show the effective settings. Environment variables win over the file."""
    config = get_config()
    config_file = config_module.CONFIG_FILE
    overrides = config.env_overrides()

    if state.json_output:
        print_json({
            **config.to_dict(),
            "config_file": str(config_file) if config_file.exists() else None,
            "env_overrides": [ENV_VARS[name] for name in overrides],
        })
        return

    values = config.to_dict()
    print_dict(
        {
            name: f"{value} (from {ENV_VARS[name]})" if name in overrides else value
            for name, value in values.items()
        },
        title="Query service connection",
    )
    if config_file.exists():
        print_info(f"Config file: {config_file}")
    else:
        print_warning(f"Config file not found: {config_file}")


@app.command("check")
def check_config() -> None:
    """Verify the settings by listing the datasources this session may query."""
    try:
        client = get_client(verbose=state.verbose)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    async def run():
        async with client:
            return await client.list_datasources()

    try:
        datasources = asyncio.run(run())
    except APIError as e:
        print_error(f"{client.config.url}: {e.message}")
        raise typer.Exit(1)

    if state.json_output:
        print_json({"url": client.config.url, "datasources": [d.id for d in datasources]})
        return

    print_success(f"Connected to {client.config.url}")
    if datasources:
        print_info("Permitted datasources: " + ", ".join(d.id for d in datasources))
    else:
        print_warning("No datasources are permitted for this session.")
