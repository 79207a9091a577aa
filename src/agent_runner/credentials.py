from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping


OVERRIDE_ENV_VAR = "CLAUDE_CODE_OAUTH_TOKEN"
DEFAULT_KEYCHAIN_SERVICE = "Claude Code-credentials"
DEFAULT_KEYCHAIN_TIMEOUT_SECONDS = 10.0
DEFAULT_REFRESH_TIMEOUT_SECONDS = 30.0
DEFAULT_REFRESH_THRESHOLD_SECONDS = 2 * 60 * 60
OAUTH_BLOB_KEY = "claudeAiOauth"
# Override tokens (`claude setup-token`) carry no expiry; they are issued for a year.
OVERRIDE_TOKEN_LIFETIME_SECONDS = 365 * 24 * 60 * 60

LOGGER = logging.getLogger("agent_runner")
LOGGER.addHandler(logging.NullHandler())


class CredentialSource(str, Enum):
    ENV_OVERRIDE = "env"
    SECRET_STORE = "keychain"
    FILE_STORE = "file"


class CredentialError(Exception):
    pass


class NoCredentialFound(CredentialError):
    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or (
                f"No credential found. Set {OVERRIDE_ENV_VAR} (or add it to .env), "
                'or authenticate with "claude" first.'
            )
        )


class CredentialExpired(NoCredentialFound):
    """A stored credential exists but is past its expiry.

    Subclasses NoCredentialFound so "no usable credential" handlers catch both;
    the remediation differs (refresh rather than authenticate).
    """

    def __init__(self, source: CredentialSource, expired_at: float) -> None:
        self.source = source
        self.expired_at = expired_at
        super().__init__(f'OAuth token from {source.value} expired. Run "claude" to refresh, then retry.')


class RefreshFailed(CredentialError):
    pass


@dataclass(frozen=True)
class Credential:
    value: str
    expires_at: float | None
    source: CredentialSource
    subscription_type: str = ""
    raw: Mapping[str, Any] | None = field(default=None, repr=False, compare=False)

    def seconds_remaining(self, now: float) -> float | None:
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def is_expired(self, now: float) -> bool:
        remaining = self.seconds_remaining(now)
        return remaining is not None and remaining <= 0

    def hours_remaining(self, now: float) -> float | None:
        remaining = self.seconds_remaining(now)
        if remaining is None:
            return None
        return remaining / 3600.0

    def to_secret_blob(self, now: float | None = None) -> str:
        """Serialize as a credentials file the agent CLI can read.

        A blob without expiresAt is treated as expired, so a credential with
        unknown expiry is written with an expiry one token lifetime from now.
        """
        if self.raw is not None:
            return json.dumps(dict(self.raw))
        expires_at = self.expires_at
        if expires_at is None:
            expires_at = (time.time() if now is None else now) + OVERRIDE_TOKEN_LIFETIME_SECONDS
        payload: dict[str, Any] = {
            "accessToken": self.value,
            "subscriptionType": self.subscription_type,
            "expiresAt": int(expires_at * 1000),
        }
        return json.dumps({OAUTH_BLOB_KEY: payload})


def mask_token(token: str) -> str:
    if not token or len(token) < 20:
        return "*" * len(token or "")
    return f"{token[:12]}...{token[-6:]}"


def credential_from_blob(text: str, source: CredentialSource) -> Credential | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        LOGGER.debug("Ignoring unparseable credential blob from %s: %s", source.value, exc)
        return None
    if not isinstance(payload, dict):
        return None
    oauth = payload.get(OAUTH_BLOB_KEY)
    if not isinstance(oauth, dict):
        return None
    access_token = str(oauth.get("accessToken") or "").strip()
    if not access_token:
        return None

    expires_at: float | None = None
    raw_expires_at = oauth.get("expiresAt")
    if isinstance(raw_expires_at, (int, float)) and not isinstance(raw_expires_at, bool):
        expires_at = float(raw_expires_at) / 1000.0
    else:
        # A stored credential without expiry metadata cannot be trusted.
        expires_at = 0.0

    return Credential(
        value=access_token,
        expires_at=expires_at,
        source=source,
        subscription_type=str(oauth.get("subscriptionType") or ""),
        raw=payload,
    )


class EnvOverrideSource:
    source = CredentialSource.ENV_OVERRIDE

    def __init__(self, env_var: str = OVERRIDE_ENV_VAR, env: Mapping[str, str] | None = None) -> None:
        self.env_var = env_var
        self._env = env

    def read(self) -> Credential | None:
        environ = os.environ if self._env is None else self._env
        value = str(environ.get(self.env_var, "")).strip()
        if not value:
            return None
        # Externally managed: expiry is unknown and refresh is not ours to run.
        return Credential(value=value, expires_at=None, source=self.source)


class KeychainSource:
    source = CredentialSource.SECRET_STORE

    def __init__(
        self,
        service: str = DEFAULT_KEYCHAIN_SERVICE,
        *,
        platform: str | None = None,
        timeout: float = DEFAULT_KEYCHAIN_TIMEOUT_SECONDS,
    ) -> None:
        self.service = service
        self.platform = sys.platform if platform is None else platform
        self.timeout = timeout

    def read(self) -> Credential | None:
        if self.platform != "darwin":
            return None
        try:
            result = subprocess.run(
                ["security", "find-generic-password", "-s", self.service, "-w"],
                check=False,
                text=True,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.debug("Keychain lookup for service=%s failed: %s", self.service, exc)
            return None
        if result.returncode != 0 or not result.stdout.strip():
            return None
        return credential_from_blob(result.stdout.strip(), self.source)


class CredentialFileSource:
    source = CredentialSource.FILE_STORE

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self) -> Credential | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeError) as exc:
            LOGGER.warning("Unable to read credentials file %s: %s", self.path, exc)
            return None
        return credential_from_blob(text, self.source)


class CommandRefresher:
    def __init__(self, command: Iterable[str], *, timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS) -> None:
        self.command = [str(part) for part in command]
        self.timeout = timeout

    def __call__(self) -> None:
        if not self.command:
            raise RefreshFailed("Refresh command is empty.")
        try:
            result = subprocess.run(
                self.command,
                check=False,
                text=True,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise RefreshFailed(f"Refresh command timed out after {self.timeout:.0f}s: {self.command[0]}") from exc
        except OSError as exc:
            raise RefreshFailed(f"Unable to run refresh command {self.command[0]}: {exc}") from exc
        if result.returncode != 0:
            detail = ((result.stderr or "") + (result.stdout or "")).strip()
            raise RefreshFailed(f"Refresh command exited with code {result.returncode}: {detail[:300]}")


class CredentialResolver:
    """Resolve a bearer credential from an ordered list of sources.

    The override source wins outright and is never refreshed. Store-backed
    sources are scanned in order and the first non-expired credential is
    returned. When a refresher is configured it runs at most once per
    resolve(): either because the best candidate is within the staleness
    threshold of expiry or because every stored candidate has expired.
    Renewed secrets are re-read from the stores; persisting them is the
    refresh command's job.
    """

    def __init__(
        self,
        sources: Iterable[Any],
        *,
        override: Any | None = None,
        refresher: Callable[[], None] | None = None,
        refresh_threshold_seconds: float = DEFAULT_REFRESH_THRESHOLD_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sources = list(sources)
        self.override = override
        self.refresher = refresher
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.clock = clock
        self.refresh_attempts = 0

    def resolve(self) -> Credential:
        if self.override is not None:
            credential = self.override.read()
            if credential is not None:
                LOGGER.info("Token source: %s (%s)", credential.source.value, mask_token(credential.value))
                return credential

        candidate, expired = self._scan()
        if self._should_refresh(candidate, expired) and self._refresh():
            candidate, expired = self._scan()

        if candidate is not None:
            hours_left = candidate.hours_remaining(self.clock())
            LOGGER.info(
                "Token source: %s (%s remaining)",
                candidate.source.value,
                "unknown" if hours_left is None else f"{hours_left:.1f}h",
            )
            return candidate
        if expired is not None:
            raise CredentialExpired(expired.source, float(expired.expires_at or 0.0))
        raise NoCredentialFound()

    def _scan(self) -> tuple[Credential | None, Credential | None]:
        now = self.clock()
        first_expired: Credential | None = None
        for source in self.sources:
            credential = source.read()
            if credential is None or not credential.value:
                continue
            if credential.is_expired(now):
                LOGGER.debug("Skipping expired credential from %s.", credential.source.value)
                if first_expired is None:
                    first_expired = credential
                continue
            return credential, first_expired
        return None, first_expired

    def _should_refresh(self, candidate: Credential | None, expired: Credential | None) -> bool:
        if self.refresher is None:
            return False
        if candidate is None:
            return expired is not None
        remaining = candidate.seconds_remaining(self.clock())
        return remaining is not None and remaining <= self.refresh_threshold_seconds

    def _refresh(self) -> bool:
        if self.refresher is None:
            return False
        self.refresh_attempts += 1
        LOGGER.info("Refreshing credential before launch.")
        try:
            self.refresher()
        except RefreshFailed as exc:
            LOGGER.warning("Credential refresh failed: %s", exc)
            return False
        return True
