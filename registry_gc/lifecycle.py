import logging
from typing import Any
from urllib.parse import quote

import dateutil.parser
import httpx

from registry_gc.errors import RegistryError
from registry_gc.models import EolAnnotation, Manifest
from registry_gc.registry import json_body, send

END_OF_LIFE_ANNOTATION = "vnd.microsoft.artifact.lifecycle.end-of-life.date"
LIFECYCLE_ARTIFACT_TYPE = "application/vnd.microsoft.artifact.lifecycle"


def is_annotation_manifest(manifest: dict[str, Any]) -> bool:
    # Referrers point at the manifest they describe through "subject".
    return manifest.get("subject") is not None


class LifecycleMetadataService:
    """Reads EOL annotations attached to images as OCI referrers."""

    def __init__(self, session: httpx.AsyncClient, scheme: str = "https") -> None:
        self.session = session
        self.scheme = scheme

    async def get_eol_annotation(self, manifest: Manifest) -> EolAnnotation | None:
        reference = manifest.reference
        what = f"discovering lifecycle metadata of {reference}"
        response = await send(
            self.session,
            "GET",
            f"{self.scheme}://{manifest.registry}/v2/{quote(manifest.repository, safe='/')}"
            f"/referrers/{manifest.digest}",
            what,
            params={"artifactType": LIFECYCLE_ARTIFACT_TYPE},
        )
        referrers = json_body(response, what).get("manifests") or []
        lifecycle = next(
            (m for m in referrers if m.get("artifactType") == LIFECYCLE_ARTIFACT_TYPE),
            None,
        )
        if lifecycle is None:
            return None

        eol_date = (lifecycle.get("annotations") or {}).get(END_OF_LIFE_ANNOTATION)
        if not eol_date:
            logging.warning(
                f"Lifecycle artifact {lifecycle.get('digest')} of {reference} has no EOL date"
            )
            return None

        try:
            parsed = dateutil.parser.parse(eol_date).date()
        except (ValueError, OverflowError) as err:
            raise RegistryError(
                f"Invalid EOL date '{eol_date}' for {reference}: {err}"
            ) from err
        return EolAnnotation(digest=lifecycle.get("digest", ""), eol_date=parsed)
