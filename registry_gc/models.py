import asyncio
from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, PrivateAttr


class CleanupAction(StrEnum):
    PRUNE_DANGLING = "prune-dangling"
    PRUNE_EOL = "prune-eol"
    PRUNE_ALL = "prune-all"
    DELETE = "delete"


class Repository(BaseModel):
    name: str
    registry: str
    last_updated_on: datetime


class Manifest(BaseModel):
    digest: str
    repository: str
    registry: str
    last_updated_on: datetime
    tags: list[str] = []

    @property
    def image_id(self) -> str:
        return f"{self.repository}@{self.digest}"

    @property
    def reference(self) -> str:
        return f"{self.registry}/{self.repository}@{self.digest}"


class ImageName(BaseModel):
    repo: str
    registry: str | None = None
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, image_name: str) -> "ImageName":
        """Split ``[registry/]repo[:tag|@digest]``.

        The first path segment is only treated as a registry when it looks
        like a host (contains a dot or a port separator).
        """
        registry = None
        first, sep, rest = image_name.partition("/")
        if sep and ("." in first or ":" in first):
            registry = first
            image_name = rest

        tag = None
        digest = None
        repo, sep, digest_part = image_name.partition("@")
        if sep:
            digest = digest_part
        else:
            repo, sep, tag_part = image_name.partition(":")
            if sep:
                tag = tag_part

        return cls(repo=repo, registry=registry, tag=tag, digest=digest)

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repo}" if self.registry else self.repo
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name


class EolAnnotation(BaseModel):
    digest: str
    eol_date: date


class DeletionResult(BaseModel):
    deleted_repos: list[str] = []
    deleted_images: list[str] = []
    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    async def add_repo(self, name: str) -> None:
        async with self._lock:
            self.deleted_repos.append(name)

    async def add_image(self, image_id: str) -> None:
        async with self._lock:
            self.deleted_images.append(image_id)


class CleanupResult(BaseModel):
    registry: str
    repo_name: str
    action: CleanupAction
    age: int
    dry_run: bool
    started_at: datetime
    finished_at: datetime
    success: bool
    errors: list[str]
    deleted_repos: list[str]
    deleted_repos_count: int
    deleted_images: list[str]
    deleted_images_count: int
    remaining_repos_count: int | None = None
