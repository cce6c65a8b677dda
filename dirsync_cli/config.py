"""Configuration for dirsync-cli."""

import sys
from pathlib import Path
from typing import List

import typer
from pydantic import BaseModel, HttpUrl, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console

from dirsync_cli.constants import DEFAULT_SERVER_URL, DEFAULT_TIMEOUT
from dirsync_cli.models import StateOperation

#: The rich console to use for output.
console_err = Console(file=sys.stderr)


class GraphSettings(BaseModel):
    """Configuration for the directory API."""

    #: The server base url, including the API version.
    server_url: HttpUrl = HttpUrl(DEFAULT_SERVER_URL)
    #: The bearer token to use.
    api_token: SecretStr
    #: The object ID of the principal the token was issued for.
    caller_object_id: str
    #: Timeout for each remote call in seconds.
    timeout: float = DEFAULT_TIMEOUT


class Settings(BaseSettings):
    """Configuration of dirsync-cli."""

    #: Directory API configuration.
    graph: GraphSettings

    #: Operations to perform on resources.
    resource_ops: List[StateOperation] = [
        StateOperation.CREATE,
        StateOperation.UPDATE,
    ]
    #: Whether try run is enabled.
    dry_run: bool = False

    #: Obtaining configuration from environment variables.
    model_config = SettingsConfigDict(env_prefix="DIRSYNC_", env_nested_delimiter="__")


def load_settings(config_path: str) -> Settings:
    """Load configuration from the given path.

    :param path: The path to the configuration file.
    :return: The loaded configuration.
    :raises typer.Exit: If the configuration file does not exist.
    """
    if not Path(config_path).exists():
        console_err.log(f"ERROR: Configuration file {config_path} does not exist.", style="red")
        raise typer.Exit(1)
    with open(config_path, "rt") as f:
        return Settings.model_validate_json(f.read())
