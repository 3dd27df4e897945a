"""Encrypted git-provider credential storage and URL matching."""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import urllib.parse
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pveimport.errors import PersistenceFailure
from pveimport.logging_utils import log_event

Provider = Literal["github", "gitlab", "gitea", "bitbucket", "custom"]
AuthType = Literal["token", "basic"]
CREDENTIALS_FILENAME = ".credentials.enc"
_FALLBACK_SECRET = "pvescripts-customiser-default-key"
_KDF_SALT = b"pveimport-credentials"
_HOSTED_PROVIDERS: tuple[tuple[str, Provider], ...] = (
    ("github.com", "github"),
    ("gitlab.com", "gitlab"),
    ("bitbucket.org", "bitbucket"),
)

logger = logging.getLogger(__name__)


class GitCredential(BaseModel):
    """Access credential for one git provider."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str
    name: str = Field(min_length=1)
    provider: Provider
    base_url: str | None = Field(default=None, alias="baseUrl")
    auth_type: AuthType = Field(default="token", alias="authType")
    username: str | None = None
    token: str | None = None
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")

    def public_payload(self) -> dict[str, Any]:
        """Serialize for display, never exposing the raw token."""
        payload = self.model_dump(mode="json", by_alias=True)
        payload["token"] = mask_token(self.token)
        return payload


def mask_token(token: str | None) -> str | None:
    if not token:
        return None
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}****{token[-4:]}"


def default_encryption_secret() -> str:
    return os.environ.get("ENCRYPTION_KEY") or _FALLBACK_SECRET


def derive_fernet_key(secret: str) -> bytes:
    kdf = Scrypt(salt=_KDF_SALT, length=32, n=2**14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


def match_credential(credentials: list[GitCredential], url: str) -> GitCredential | None:
    """Pick the credential for ``url``; first match in list order wins."""
    lowered = url.lower()
    for host, provider in _HOSTED_PROVIDERS:
        if host in lowered:
            return next((item for item in credentials if item.provider == provider), None)
    for item in credentials:
        if item.base_url and item.base_url.rstrip("/").lower() in lowered:
            return item
    return None


def build_auth_header(credential: GitCredential) -> dict[str, str]:
    if not credential.token:
        return {}
    if credential.auth_type == "basic":
        raw = f"{credential.username or ''}:{credential.token}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
    if credential.provider == "github":
        return {"Authorization": f"Bearer {credential.token}"}
    if credential.provider == "gitlab":
        return {"PRIVATE-TOKEN": credential.token}
    return {"Authorization": f"token {credential.token}"}


def build_authenticated_url(url: str, credential: GitCredential | None) -> str:
    """Embed credential userinfo into an HTTPS clone URL."""
    if credential is None or not credential.token:
        return url
    parts = urllib.parse.urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        return url
    token = urllib.parse.quote(credential.token, safe="")
    if credential.provider == "github":
        userinfo = f"{token}:x-oauth-basic"
    elif credential.provider == "gitlab":
        userinfo = f"oauth2:{token}"
    else:
        user = urllib.parse.quote(credential.username or credential.token, safe="")
        userinfo = f"{user}:{token}"
    netloc = parts.hostname if parts.port is None else f"{parts.hostname}:{parts.port}"
    return urllib.parse.urlunsplit(
        (parts.scheme, f"{userinfo}@{netloc}", parts.path, parts.query, parts.fragment)
    )


def _now() -> str:
    return datetime.now(UTC).isoformat()


class CredentialStore:
    """Fernet-encrypted JSON list of credentials in the settings directory."""

    def __init__(self, settings_dir: Path, *, secret: str | None = None) -> None:
        self.path = settings_dir / CREDENTIALS_FILENAME
        self._secret = secret if secret is not None else default_encryption_secret()
        self._fernet: Fernet | None = None

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(derive_fernet_key(self._secret))
        return self._fernet

    def load(self) -> list[GitCredential]:
        if not self.path.exists():
            return []
        try:
            token = self.path.read_bytes()
            raw = json.loads(self._cipher().decrypt(token).decode("utf-8"))
            return [GitCredential.model_validate(item) for item in raw]
        except (OSError, InvalidToken, json.JSONDecodeError, TypeError, ValidationError):
            logger.warning("Ignoring unreadable credential store at %s", self.path)
            return []

    def save(self, credentials: list[GitCredential]) -> None:
        payload = json.dumps([item.model_dump(mode="json", by_alias=True) for item in credentials])
        token = self._cipher().encrypt(payload.encode("utf-8"))
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(token)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise PersistenceFailure(f"Failed to write credential store: {exc}") from exc

    def get(self, credential_id: str) -> GitCredential | None:
        return next((item for item in self.load() if item.id == credential_id), None)

    def add(
        self,
        *,
        name: str,
        provider: Provider,
        token: str | None = None,
        username: str | None = None,
        base_url: str | None = None,
        auth_type: AuthType = "token",
    ) -> GitCredential:
        timestamp = _now()
        credential = GitCredential(
            id=secrets.token_hex(8),
            name=name,
            provider=provider,
            base_url=base_url,
            auth_type=auth_type,
            username=username,
            token=token,
            created_at=timestamp,
            updated_at=timestamp,
        )
        credentials = self.load()
        credentials.append(credential)
        self.save(credentials)
        log_event(
            logger,
            logging.INFO,
            "credentials.added",
            credential_id=credential.id,
            provider=provider,
        )
        return credential

    def update(self, credential_id: str, **changes: Any) -> GitCredential | None:
        """Apply non-null ``changes``; returns ``None`` for an unknown id."""
        credentials = self.load()
        for index, item in enumerate(credentials):
            if item.id != credential_id:
                continue
            values = item.model_dump()
            values.update({key: value for key, value in changes.items() if value is not None})
            values["updated_at"] = _now()
            updated = GitCredential.model_validate(values)
            credentials[index] = updated
            self.save(credentials)
            return updated
        return None

    def delete(self, credential_id: str) -> bool:
        credentials = self.load()
        remaining = [item for item in credentials if item.id != credential_id]
        if len(remaining) == len(credentials):
            return False
        self.save(remaining)
        log_event(logger, logging.INFO, "credentials.deleted", credential_id=credential_id)
        return True

    def match(self, url: str) -> GitCredential | None:
        return match_credential(self.load(), url)
