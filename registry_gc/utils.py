import asyncio
import base64
import json
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from logging import LogRecord
from pathlib import Path
from typing import TypeVar

from registry_gc.config import LOG_FORMAT, Config
from registry_gc.models import CleanupResult

T = TypeVar("T")

_files_lock = asyncio.Lock()


class Colors(StrEnum):
    RED = "\033[31m"
    CRED = "\033[91m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None, *args, **kwargs) -> None:
        self.format_ = fmt
        self.FORMATS = {
            logging.WARNING: f"{Colors.YELLOW}{self.format_}{Colors.RESET}",
            logging.ERROR: f"{Colors.RED}{self.format_}{Colors.RESET}",
            logging.CRITICAL: f"{Colors.CRED}{self.format_}{Colors.RESET}",
        }
        super().__init__(fmt, *args, **kwargs)

    def format(self, record: LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno, self.format_)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def init_logger(config: Config) -> None:
    Path("logs").mkdir(parents=True, exist_ok=True)
    if not config.args.http_logs:
        logging.getLogger("httpx").disabled = True

    file_handler = logging.FileHandler(Path("logs/cleaner.log"))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    logging.basicConfig(
        level=logging.INFO, handlers=[file_handler, stream_handler], force=True
    )


async def write_history(msg: str, config: Config) -> None:
    async with _files_lock:
        with open(config.files.history, "a") as f:
            f.write(f"[{true_utcnow()}] {msg}\n")


async def update_latest_cleanup(results: CleanupResult, config: Config) -> None:
    info = {}
    async with _files_lock:
        with open(config.files.last_clean, "r") as f:
            try:
                info = json.load(f)
            except json.JSONDecodeError as err:
                logging.warning(
                    f"An error occurred while parsing the latest report: {err}. Seems it was blank"
                )
        with open(config.files.last_clean, "w") as f:
            info[f"{results.registry}/{results.repo_name}"] = results.model_dump()
            json.dump(info, f, indent=4, default=str)


def build_headers(config: Config) -> dict[str, str]:
    basic_auth = base64.standard_b64encode(
        f"{config.username}:{config.password}".encode()
    ).decode()
    return {
        "User-Agent": "Registry GC",
        "Docker-Distribution-API-Version": "registry/2.0",
        "Authorization": f"Basic {basic_auth}",
    }


def true_utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def is_expired(timestamp: datetime, age_days: int, now: datetime | None = None) -> bool:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp + timedelta(days=age_days) < (now or true_utcnow())


def glob_to_regex(pattern: str) -> re.Pattern:
    """Anchored regex for a glob where only ``*`` and ``?`` are special."""
    translated = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^(?:{translated})$")


def repo_name_matcher(pattern: str) -> Callable[[str], bool]:
    rule = glob_to_regex(pattern)
    return lambda name: rule.match(name) is not None


async def run_concurrently(
    coros: Iterable[Awaitable[T]], limit: int | None = None
) -> list[T]:
    """Run awaitables as tasks, at most ``limit`` at a time.

    Pending work waits in an unbounded queue. Results come back in submission
    order. The first failure cancels everything still pending and is re-raised.
    """
    coros = list(coros)
    limiter = asyncio.Semaphore(limit) if limit else None

    async def run(coro: Awaitable[T]) -> T:
        if limiter is None:
            return await coro
        async with limiter:
            return await coro

    tasks = [asyncio.create_task(run(coro)) for coro in coros]
    try:
        for completed_task in asyncio.as_completed(tasks):
            await completed_task
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # coroutines cancelled while still queued were never started
        for coro in coros:
            if asyncio.iscoroutine(coro):
                coro.close()
        raise
    return [task.result() for task in tasks]
