from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import dateutil.parser
import httpx

from registry_gc.config import Config
from registry_gc.errors import RegistryError
from registry_gc.models import Manifest, Repository
from registry_gc.utils import build_headers

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
    ]
)
PAGE_SIZE = 100


@asynccontextmanager
async def open_session(config: Config) -> AsyncIterator[httpx.AsyncClient]:
    """Authenticated session shared by every request of a run."""
    max_concurrent_requests = config.max_concurrent_requests
    max_keepalive_connections = (max_concurrent_requests // 2) or 1
    async with httpx.AsyncClient(
        headers=build_headers(config),
        timeout=config.timeout,
        follow_redirects=True,
        limits=httpx.Limits(
            max_connections=max_concurrent_requests,
            max_keepalive_connections=max_keepalive_connections,
        ),
        proxy=config.proxy,
        trust_env=False,
    ) as session:
        yield session


async def send(
    session: httpx.AsyncClient, method: str, url: str, what: str, **kwargs: Any
) -> httpx.Response:
    try:
        response = await session.request(method, url, **kwargs)
        response.raise_for_status()
        return response
    except httpx.HTTPStatusError as err:
        raise RegistryError(
            f"Error {what}. code: {err.response.status_code}, text: {err.response.text}"
        ) from err
    except httpx.HTTPError as err:
        raise RegistryError(f"Error {what}. Error: {err}") from err


def json_body(response: httpx.Response, what: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as err:
        raise RegistryError(
            f"Error {what}. Invalid JSON response, code: {response.status_code}, "
            f"text: {response.text[:200]}"
        ) from err
    if not isinstance(data, dict):
        raise RegistryError(f"Error {what}. Unexpected response: {response.text[:200]}")
    return data


def parse_timestamp(value: str) -> datetime:
    timestamp = dateutil.parser.parse(value)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp


async def paginate(
    session: httpx.AsyncClient, url: str, key: str, what: str
) -> AsyncIterator[dict[str, Any] | str]:
    """Yield items of ``key`` across pages linked with ``Link: rel="next"``."""
    params: dict[str, Any] | None = {"n": PAGE_SIZE}
    next_url: str | None = url
    while next_url:
        response = await send(session, "GET", next_url, what, params=params)
        for item in json_body(response, what).get(key) or []:
            yield item
        link = response.links.get("next", {}).get("url")
        next_url = str(response.url.join(link)) if link else None
        params = None


class AcrClient:
    """Catalog-level operations of an Azure Container Registry."""

    def __init__(self, session: httpx.AsyncClient, config: Config) -> None:
        self.session = session
        self.registry = config.registry
        self.base_url = config.registry_url

    def _repo_url(self, name: str) -> str:
        return f"{self.base_url}/acr/v1/{quote(name, safe='/')}"

    async def list_repository_names(self) -> AsyncIterator[str]:
        async for name in paginate(
            self.session,
            f"{self.base_url}/acr/v1/_catalog",
            "repositories",
            f"listing repositories of {self.registry}",
        ):
            yield name

    async def get_repository(self, name: str) -> Repository:
        what = f"getting properties of {name}"
        response = await send(self.session, "GET", self._repo_url(name), what)
        data = json_body(response, what)
        return Repository(
            name=data.get("imageName", name),
            registry=self.registry,
            last_updated_on=parse_timestamp(data["lastUpdateTime"]),
        )

    async def list_manifests(self, name: str) -> AsyncIterator[Manifest]:
        async for data in paginate(
            self.session,
            f"{self._repo_url(name)}/_manifests",
            "manifests",
            f"listing manifests of {name}",
        ):
            yield Manifest(
                digest=data["digest"],
                repository=name,
                registry=self.registry,
                last_updated_on=parse_timestamp(data["lastUpdateTime"]),
                tags=data.get("tags") or [],
            )

    async def delete_repository(self, name: str) -> None:
        await send(self.session, "DELETE", self._repo_url(name), f"deleting {name}")

    def get_content_client(self, repository: str) -> "AcrContentClient":
        return AcrContentClient(self.session, self.base_url, repository)


class AcrContentClient:
    """Manifest operations scoped to a single repository."""

    def __init__(
        self, session: httpx.AsyncClient, base_url: str, repository: str
    ) -> None:
        self.session = session
        self.repository = repository
        self.base_url = f"{base_url}/v2/{quote(repository, safe='/')}"

    async def get_manifest(self, digest: str) -> dict[str, Any]:
        what = f"getting manifest {self.repository}@{digest}"
        response = await send(
            self.session,
            "GET",
            f"{self.base_url}/manifests/{digest}",
            what,
            headers={"Accept": MANIFEST_MEDIA_TYPES},
        )
        return json_body(response, what)

    async def delete_manifest(self, digest: str) -> None:
        await send(
            self.session,
            "DELETE",
            f"{self.base_url}/manifests/{digest}",
            f"deleting {self.repository}@{digest}",
        )
