from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from registry_gc.models import DeletionResult


class RegistryGcError(Exception):
    pass


class ConfigurationError(RegistryGcError):
    """Invalid combination of options, detected before any request is made."""


class UnsupportedActionError(RegistryGcError):
    pass


class RegistryError(RegistryGcError):
    """A registry or lifecycle metadata request failed."""


class CleanupAbortedError(RegistryGcError):
    """Raised when a repository fails mid-run.

    Carries what was deleted before the failure; the original error is chained
    as ``__cause__``.
    """

    def __init__(self, message: str, result: DeletionResult) -> None:
        super().__init__(message)
        self.result = result
