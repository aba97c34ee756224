import logging
import os
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError, field_validator
from yaml import safe_load

from registry_gc.errors import ConfigurationError
from registry_gc.models import CleanupAction, ImageName

CACHE_DIR = Path("cache")
MAX_CONCURRENT_REQUESTS = 20
DEFAULT_TIMEOUT = 20
DEFAULT_ACTION = CleanupAction.PRUNE_DANGLING
DEFAULT_AGE = 30
ACR_DOMAIN = ".azurecr.io"
LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] |> %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def parse_exclusions(images: list[str]) -> list[ImageName]:
    exclusions = []
    for image in images:
        exclusion = ImageName.parse(image.strip())
        if not exclusion.repo or not (exclusion.digest or exclusion.tag):
            raise ConfigurationError(
                f"Invalid exclusion '{image}'. Use '<repo>@<digest>' or '<repo>:<tag>'"
            )
        exclusions.append(exclusion)
    return exclusions


def validate_exclusions(action: CleanupAction, exclusions: list[ImageName]) -> None:
    if exclusions and action == CleanupAction.DELETE:
        raise ConfigurationError(
            "Excluding images is not supported when deleting repositories"
        )


class CacheFiles(BaseModel):
    last_clean: Path
    history: Path

    @classmethod
    def create(cls) -> "CacheFiles":
        latest = CACHE_DIR / Path("latest_cleanup.json")
        history = CACHE_DIR / Path("history.log")
        CACHE_DIR.mkdir(parents=True, exist_ok=True)
        latest.touch(exist_ok=True)
        history.touch(exist_ok=True)
        return cls(last_clean=latest, history=history)


class Args(BaseModel):
    repo_name: str
    action: CleanupAction = DEFAULT_ACTION
    age: int = DEFAULT_AGE
    exclude: list[ImageName] = []
    dry_run: bool = False
    http_logs: bool = False
    config_dir: str = "config"

    @field_validator("exclude", mode="before")
    @classmethod
    def parse_exclude(cls, values: list[Any]) -> list[Any]:
        return [
            value if isinstance(value, ImageName) else parse_exclusions([value])[0]
            for value in values or []
        ]

    @field_validator("age")
    @classmethod
    def check_age(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Age must be a non-negative number of days")
        return value

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> "Args":
        parser = ArgumentParser(
            description="Removes unnecessary images from a container registry",
            formatter_class=ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "repo_name",
            help="Name of repo to target (wildcard chars * and ? supported)",
        )
        parser.add_argument(
            "--action",
            choices=[action.value for action in CleanupAction],
            help="Type of cleanup to perform",
            required=False,
            default=DEFAULT_ACTION.value,
        )
        parser.add_argument(
            "--age",
            type=int,
            help="Minimum age (days) of repo or images to be deleted",
            required=False,
            default=DEFAULT_AGE,
        )
        parser.add_argument(
            "--exclude",
            action="append",
            help=(
                "Image to exclude from cleaning, as <repo>@<digest> or <repo>:<tag>. "
                f"Can be repeated; not allowed with '--action {CleanupAction.DELETE}'"
            ),
            required=False,
            default=[],
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="The application will generate logs without actually deleting anything",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--http-logs",
            action="store_true",
            help="Enable http logs for every request",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--config-dir",
            help="Directory holding config.yaml",
            required=False,
            default="config",
        )
        args = parser.parse_args(argv)

        try:
            exclusions = parse_exclusions(args.exclude)
            validate_exclusions(CleanupAction(args.action), exclusions)
            return cls(
                repo_name=args.repo_name,
                action=args.action,
                age=args.age,
                exclude=exclusions,
                dry_run=args.dry_run,
                http_logs=args.http_logs,
                config_dir=args.config_dir,
            )
        except (ConfigurationError, ValidationError) as err:
            logging.critical(f"Invalid arguments: {err}")
            parser.print_help()
            exit(1)


class Config(BaseModel):
    registry_url: str
    username: str
    password: str
    max_concurrent_requests: int = MAX_CONCURRENT_REQUESTS
    proxy: str | None = None
    timeout: int | None = DEFAULT_TIMEOUT
    files: CacheFiles
    args: Args

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Config":
        return Config.model_validate(data)

    @property
    def registry(self) -> str:
        """Login server, e.g. ``myacr.azurecr.io``."""
        return urlparse(self.registry_url).netloc

    @field_validator("username", "password")
    @classmethod
    def handle_env_vars(cls, v: str) -> str:
        if isinstance(v, str) and v.startswith("__ENV:"):
            value = os.environ.get(v[6:].strip(), "")
            if not value:
                logging.critical(
                    "Credentials are not set. Please set them in config.yaml"
                )
                logging.info(
                    "Use '<field>: string' or env vars as '<field>: \"__ENV: <YOUR_VAR_NAME>\"' for username and password"
                )
                exit(1)
            return value
        return v

    @field_validator("registry_url")
    @classmethod
    def set_registry_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if "://" not in value:
            if "." not in value and ":" not in value:
                value = f"{value}{ACR_DOMAIN}"
            value = f"https://{value}"
        parsed = urlparse(value)
        if not parsed.netloc:
            raise ValueError(f"Invalid registry url: {value}")
        return f"{parsed.scheme}://{parsed.netloc}"

    @field_validator("max_concurrent_requests")
    @classmethod
    def set_max_concurrent_requests(cls, value: int) -> int:
        if value <= 0:
            logging.error("Max_concurrent_requests must be greater than 0. Set 10")
            return 10
        return value

    @field_validator("proxy")
    @classmethod
    def set_proxy(cls, value: str) -> str | None:
        if not value:
            return None
        error = "Field proxy must be a valid url: <scheme>://<address>[:port]; Remove value or fix it"
        if value.startswith("__ENV:"):
            value = os.environ.get(value[6:].strip(), "")
            if not value:
                return None

        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            logging.critical(error)
            exit(1)

        return value

    @field_validator("timeout")
    @classmethod
    def set_timeout(cls, value: int) -> int:
        if not value or not 0 < value <= 120:
            logging.error("Timeout must be in range 1-120. Set 20")
            return DEFAULT_TIMEOUT
        return value


def get_config_file(path: str = "") -> str:
    """Find config.yml or config.yaml in the config directory."""
    path = path if path else "config"
    for ext in ("yml", "yaml"):
        config_file = f"{path}/config.{ext}"
        if Path(config_file).exists():
            return config_file

    logging.critical(f"Missing config file. Ensure you have {path}/config.yaml")
    exit(1)


def load_config(args: Args) -> Config:
    config_file = get_config_file(args.config_dir)

    with open(config_file, "r") as conf_file:
        config = safe_load(conf_file) or {}

    try:
        cache_files = CacheFiles.create()
        return Config.from_dict({**config, "args": args, "files": cache_files})
    except ValidationError as e:
        logging.critical(f"Invalid config: {e}")
        exit(1)
