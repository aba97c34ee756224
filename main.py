import asyncio
import logging

from registry_gc.cleaner import cleanup_registry
from registry_gc.config import Args, Config, load_config
from registry_gc.models import CleanupResult
from registry_gc.utils import init_logger, update_latest_cleanup, write_history


async def perform_cleanup(config: Config) -> CleanupResult:
    args = config.args
    started = (
        f"Started '{args.action}' of '{args.repo_name}' in {config.registry}, "
        f"age {args.age} days"
    )
    await write_history(started, config)
    logging.info(started)

    res = await cleanup_registry(config)

    await update_latest_cleanup(res, config)
    finish = (
        f"Finished '{res.action}' of '{res.repo_name}': {res.deleted_repos_count} repos "
        f"and {res.deleted_images_count} images deleted, {len(res.errors)} errors"
    )
    await write_history(finish, config)
    logging.info(finish)
    return res


if __name__ == "__main__":
    args = Args.from_args()
    config = load_config(args)
    init_logger(config)
    if config.args.dry_run:
        logging.warning("Running in dry-run mode, found images will not be deleted")
    try:
        result = asyncio.run(perform_cleanup(config))
    except KeyboardInterrupt:
        exit(130)
    if not result.success:
        exit(1)
