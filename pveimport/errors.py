"""Error taxonomy shared by the importer core, CLI and HTTP API."""

from __future__ import annotations


class PveImportError(Exception):
    """Base class for every failure the importer reports to a caller."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidSourceURL(PveImportError):
    """The input is not a recognizable GitHub repository URL."""

    status_code = 400


class RepositoryNotFound(PveImportError):
    """The source host answered the repository lookup with a non-2xx status."""

    status_code = 404


class AuthenticationRequired(PveImportError):
    """The repository is private and no matching credential was applied."""

    status_code = 401


class ManifestNotFound(PveImportError):
    """No manifest or registry record exists for the requested slug."""

    status_code = 404


class PersistenceFailure(PveImportError):
    """Writing manifest, script or registry files failed."""

    status_code = 500


class UpstreamUnavailable(PveImportError):
    """A remote host could not be reached."""

    status_code = 502


class InvalidCategory(PveImportError):
    """Category does not exist or cannot be modified."""

    status_code = 400
