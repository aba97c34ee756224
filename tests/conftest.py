import asyncio
from datetime import datetime, timedelta

import pytest

from registry_gc.errors import RegistryError
from registry_gc.models import EolAnnotation, Manifest, Repository
from registry_gc.utils import true_utcnow

REGISTRY = "myacr.azurecr.io"


def days_ago(days: float) -> datetime:
    return true_utcnow() - timedelta(days=days)


def make_manifest(
    repository: str, digest: str, age_days: float, tags: list[str] | None = None
) -> Manifest:
    return Manifest(
        digest=digest,
        repository=repository,
        registry=REGISTRY,
        last_updated_on=days_ago(age_days),
        tags=tags or [],
    )


class FakeContentClient:
    def __init__(self, acr: "FakeAcrClient", repository: str) -> None:
        self.acr = acr
        self.repository = repository

    async def get_manifest(self, digest: str) -> dict:
        self.acr.calls.append(("get_manifest", self.repository, digest))
        await asyncio.sleep(0)
        return self.acr.bodies.get(digest, {"schemaVersion": 2})

    async def delete_manifest(self, digest: str) -> None:
        self.acr.calls.append(("delete_manifest", self.repository, digest))
        self.acr.in_flight += 1
        self.acr.max_in_flight = max(self.acr.max_in_flight, self.acr.in_flight)
        try:
            await asyncio.sleep(0.001)
            if digest in self.acr.fail_deletes:
                raise RegistryError(f"Error deleting {self.repository}@{digest}")
            _, manifests = self.acr.repos[self.repository]
            manifests[:] = [m for m in manifests if m.digest != digest]
        finally:
            self.acr.in_flight -= 1


class FakeAcrClient:
    """In-memory registry recording every call made against it."""

    def __init__(self) -> None:
        self.registry = REGISTRY
        self.repos: dict[str, tuple[datetime, list[Manifest]]] = {}
        self.bodies: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_listing: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.fail_catalog = False
        self.in_flight = 0
        self.max_in_flight = 0

    def add_repo(
        self, name: str, manifests: list[Manifest], age_days: float = 0
    ) -> None:
        self.repos[name] = (days_ago(age_days), list(manifests))

    def calls_named(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    async def list_repository_names(self):
        self.calls.append(("list_repository_names",))
        if self.fail_catalog:
            raise RegistryError("Error listing repositories")
        for name in list(self.repos):
            await asyncio.sleep(0)
            yield name

    async def get_repository(self, name: str) -> Repository:
        self.calls.append(("get_repository", name))
        last_updated_on, _ = self.repos[name]
        return Repository(name=name, registry=self.registry, last_updated_on=last_updated_on)

    async def list_manifests(self, name: str):
        self.calls.append(("list_manifests", name))
        if name in self.fail_listing:
            raise RegistryError(f"Error listing manifests of {name}")
        _, manifests = self.repos[name]
        for manifest in list(manifests):
            await asyncio.sleep(0)
            yield manifest

    async def delete_repository(self, name: str) -> None:
        self.calls.append(("delete_repository", name))
        await asyncio.sleep(0)
        del self.repos[name]

    def get_content_client(self, repository: str) -> FakeContentClient:
        return FakeContentClient(self, repository)


class FakeLifecycleService:
    def __init__(self) -> None:
        self.annotations: dict[str, EolAnnotation] = {}
        self.calls: list[str] = []

    def annotate(self, manifest: Manifest, eol_days_ago: float) -> None:
        self.annotations[manifest.reference] = EolAnnotation(
            digest=f"sha256:eol-{manifest.digest[7:]}",
            eol_date=days_ago(eol_days_ago).date(),
        )

    async def get_eol_annotation(self, manifest: Manifest) -> EolAnnotation | None:
        self.calls.append(manifest.reference)
        await asyncio.sleep(0)
        return self.annotations.get(manifest.reference)


@pytest.fixture
def acr() -> FakeAcrClient:
    return FakeAcrClient()


@pytest.fixture
def lifecycle() -> FakeLifecycleService:
    return FakeLifecycleService()
