"""Retention policies.

Each cleanup action maps to exactly one policy class, chosen once per run by
:func:`select_policy`. Manifest policies decide per manifest; the repository
policy decides for a whole repository and never looks at manifests.
"""

from datetime import datetime, time, timezone

from registry_gc.errors import UnsupportedActionError
from registry_gc.lifecycle import LifecycleMetadataService, is_annotation_manifest
from registry_gc.models import CleanupAction, Manifest, Repository
from registry_gc.registry import AcrContentClient
from registry_gc.utils import is_expired


class ManifestPolicy:
    action: CleanupAction

    def __init__(self, age: int) -> None:
        self.age = age

    async def is_eligible(self, manifest: Manifest, content: AcrContentClient) -> bool:
        raise NotImplementedError


class PruneDanglingPolicy(ManifestPolicy):
    action = CleanupAction.PRUNE_DANGLING

    async def is_eligible(self, manifest: Manifest, content: AcrContentClient) -> bool:
        return not manifest.tags and is_expired(manifest.last_updated_on, self.age)


class PruneAllPolicy(ManifestPolicy):
    action = CleanupAction.PRUNE_ALL

    async def is_eligible(self, manifest: Manifest, content: AcrContentClient) -> bool:
        return is_expired(manifest.last_updated_on, self.age)


class PruneEolPolicy(ManifestPolicy):
    action = CleanupAction.PRUNE_EOL

    def __init__(self, age: int, lifecycle: LifecycleMetadataService) -> None:
        super().__init__(age)
        self.lifecycle = lifecycle

    async def is_eligible(self, manifest: Manifest, content: AcrContentClient) -> bool:
        if is_annotation_manifest(await content.get_manifest(manifest.digest)):
            return False

        annotation = await self.lifecycle.get_eol_annotation(manifest)
        if annotation is None:
            return False
        eol = datetime.combine(annotation.eol_date, time.min, tzinfo=timezone.utc)
        return is_expired(eol, self.age)


class DeleteRepositoryPolicy:
    action = CleanupAction.DELETE

    def __init__(self, age: int) -> None:
        self.age = age

    def is_eligible(self, repository: Repository) -> bool:
        return is_expired(repository.last_updated_on, self.age)


RetentionPolicy = ManifestPolicy | DeleteRepositoryPolicy


def select_policy(
    action: CleanupAction | str, age: int, lifecycle: LifecycleMetadataService
) -> RetentionPolicy:
    if action == CleanupAction.PRUNE_DANGLING:
        return PruneDanglingPolicy(age)
    if action == CleanupAction.PRUNE_EOL:
        return PruneEolPolicy(age, lifecycle)
    if action == CleanupAction.PRUNE_ALL:
        return PruneAllPolicy(age)
    if action == CleanupAction.DELETE:
        return DeleteRepositoryPolicy(age)
    raise UnsupportedActionError(f"Unsupported action: {action}")
