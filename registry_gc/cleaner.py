import logging
from urllib.parse import urlparse

from registry_gc.config import Args, Config, validate_exclusions
from registry_gc.errors import CleanupAbortedError, RegistryError
from registry_gc.lifecycle import LifecycleMetadataService
from registry_gc.models import (
    CleanupResult,
    DeletionResult,
    ImageName,
    Manifest,
)
from registry_gc.policies import (
    DeleteRepositoryPolicy,
    ManifestPolicy,
    RetentionPolicy,
    select_policy,
)
from registry_gc.registry import AcrClient, AcrContentClient, open_session
from registry_gc.utils import repo_name_matcher, run_concurrently, true_utcnow

MAX_CONCURRENT_DELETE_REQUESTS_PER_REPO = 5


def is_excluded(manifest: Manifest, exclusions: list[ImageName]) -> bool:
    return any(
        exclusion.repo == manifest.repository
        and (exclusion.digest == manifest.digest or exclusion.tag in manifest.tags)
        for exclusion in exclusions
    )


async def delete_repository(
    acr: AcrClient,
    name: str,
    manifests: list[Manifest],
    args: Args,
    result: DeletionResult,
) -> None:
    if not args.dry_run:
        await acr.delete_repository(name)

    lines = [f"Deleted repository '{name}'", "\tIncluded manifests:"]
    lines.extend(f"\t{digest}" for digest in sorted(m.digest for m in manifests))
    lines.extend(["", "\tIncluded tags:"])
    lines.extend(f"\t{tag}" for tag in sorted(t for m in manifests for t in m.tags))
    logging.info("\n".join(lines))

    await result.add_repo(name)


async def delete_manifest(
    content: AcrContentClient, manifest: Manifest, args: Args, result: DeletionResult
) -> None:
    if not args.dry_run:
        await content.delete_manifest(manifest.digest)
    logging.info(f"Deleted image '{manifest.image_id}'")
    await result.add_image(manifest.image_id)


async def delete_manifests(
    content: AcrContentClient,
    manifests: list[Manifest],
    args: Args,
    result: DeletionResult,
) -> None:
    await run_concurrently(
        (delete_manifest(content, manifest, args, result) for manifest in manifests),
        limit=MAX_CONCURRENT_DELETE_REQUESTS_PER_REPO,
    )


async def find_expired_manifests(
    manifests: list[Manifest],
    policy: ManifestPolicy,
    content: AcrContentClient,
    exclusions: list[ImageName],
) -> list[Manifest]:
    async def can_delete(manifest: Manifest) -> bool:
        if is_excluded(manifest, exclusions):
            return False
        return await policy.is_eligible(manifest, content)

    eligible = await run_concurrently(can_delete(manifest) for manifest in manifests)
    return [manifest for manifest, ok in zip(manifests, eligible) if ok]


async def process_repository(
    acr: AcrClient,
    name: str,
    policy: RetentionPolicy,
    args: Args,
    result: DeletionResult,
) -> None:
    if isinstance(policy, DeleteRepositoryPolicy):
        repository = await acr.get_repository(name)
        if policy.is_eligible(repository):
            manifests = [manifest async for manifest in acr.list_manifests(name)]
            await delete_repository(acr, name, manifests, args, result)
        return

    logging.info(f"Querying manifests for repo '{name}'")
    manifests = [manifest async for manifest in acr.list_manifests(name)]
    logging.info(
        f"Finished querying manifests for repo '{name}'. Manifest count: {len(manifests)}"
    )

    if not manifests:
        await delete_repository(acr, name, manifests, args, result)
        return

    content = acr.get_content_client(name)
    expired = await find_expired_manifests(manifests, policy, content, args.exclude)

    # Everything in the repo is expired: one repository delete replaces
    # the individual manifest deletes.
    if len(expired) == len(manifests):
        await delete_repository(acr, name, manifests, args, result)
        return

    await delete_manifests(content, expired, args, result)


async def clean_registry(
    acr: AcrClient, lifecycle: LifecycleMetadataService, args: Args
) -> DeletionResult:
    validate_exclusions(args.action, args.exclude)
    policy = select_policy(args.action, args.age, lifecycle)
    matches = repo_name_matcher(args.repo_name)

    logging.info("FINDING IMAGES TO CLEAN")
    logging.info(f"Querying catalog of registry '{acr.registry}'")
    repo_names = [name async for name in acr.list_repository_names() if matches(name)]
    logging.info(f"Found {len(repo_names)} repositories matching '{args.repo_name}'")

    logging.info("DELETING IMAGES")
    result = DeletionResult()
    try:
        await run_concurrently(
            process_repository(acr, name, policy, args, result) for name in repo_names
        )
    except Exception as err:
        raise CleanupAbortedError(
            f"Cleanup of '{args.repo_name}' aborted: {err}", result
        ) from err
    return result


def log_deleted(result: DeletionResult) -> None:
    logging.info("Deleted repositories:")
    for deleted_repo in result.deleted_repos:
        logging.info(f"\t{deleted_repo}")
    logging.info("")

    logging.info("Deleted images:")
    for deleted_image in result.deleted_images:
        logging.info(f"\t{deleted_image}")
    logging.info("")


async def log_summary(acr: AcrClient, result: DeletionResult) -> int | None:
    """Log what was deleted and how many repositories are left.

    The remaining count comes from a fresh catalog query and may lag behind
    the deletions on an eventually consistent registry. Returns ``None`` when
    that query fails.
    """
    logging.info("SUMMARY")
    log_deleted(result)

    logging.info("DELETED DATA")
    logging.info(f"Total images deleted: {len(result.deleted_images)}")
    logging.info(f"Total repos deleted: {len(result.deleted_repos)}")
    logging.info("")

    logging.info("<Querying remaining data...>")
    try:
        remaining = len([name async for name in acr.list_repository_names()])
    except RegistryError as err:
        logging.warning(f"Unable to query remaining repositories: {err}")
        return None
    logging.info(f"Total repos remaining: {remaining}")
    return remaining


def log_incomplete(result: DeletionResult) -> None:
    logging.error("INCOMPLETE RUN")
    logging.error("The run was aborted, deletions made before the failure:")
    log_deleted(result)


async def cleanup_registry(config: Config) -> CleanupResult:
    args = config.args
    started_at = true_utcnow()
    errors: list[str] = []
    remaining: int | None = None
    result = DeletionResult()

    async with open_session(config) as session:
        acr = AcrClient(session, config)
        lifecycle = LifecycleMetadataService(
            session, scheme=urlparse(config.registry_url).scheme
        )
        try:
            result = await clean_registry(acr, lifecycle, args)
            remaining = await log_summary(acr, result)
        except CleanupAbortedError as err:
            logging.critical(str(err))
            errors.append(str(err))
            result = err.result
            log_incomplete(result)
        except Exception as err:
            logging.critical(f"Error when cleaning the registry. Info: {err}")
            logging.info("Check your configuration, urls, proxies and try again.")
            errors.append(str(err))

    return CleanupResult(
        registry=config.registry,
        repo_name=args.repo_name,
        action=args.action,
        age=args.age,
        dry_run=args.dry_run,
        started_at=started_at,
        finished_at=true_utcnow(),
        success=not errors,
        errors=errors,
        deleted_repos=result.deleted_repos,
        deleted_repos_count=len(result.deleted_repos),
        deleted_images=result.deleted_images,
        deleted_images_count=len(result.deleted_images),
        remaining_repos_count=remaining,
    )
