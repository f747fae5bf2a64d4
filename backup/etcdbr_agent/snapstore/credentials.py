"""
Azure Blob Storage credential resolution and rotation detection.

Credentials are resolved from the first source that is configured and
present, in this fixed order (no merging between sources):

    1. A JSON file named by AZURE_APPLICATION_CREDENTIALS_JSON
    2. The single *.json file inside AZURE_APPLICATION_CREDENTIALS
    3. The discrete files storageAccount and storageKey inside
       AZURE_APPLICATION_CREDENTIALS

The JSON shape is {"storageAccount": "...", "storageKey": "..."} with an
optional "bucketName".

Invariants:
    - Credentials are re-read on every call, never cached
    - A directory without a JSON file falls through to the discrete files
    - A JSON file that exists but cannot be parsed is fatal, never a
      fallthrough trigger
    - get_abs_credentials_last_modified() probes sources in the same order
      as resolve_abs_credentials(), so both agree on the authoritative source
    - Secrets never appear in logs or error messages

How to change safely:
    - New sources must be appended after the existing ones
    - Keep resolve and last-modified precedence identical
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from .base import ConfigurationError, CredentialsUnavailableError

if TYPE_CHECKING:
    from ..config import AbsConfig

logger = logging.getLogger(__name__)

ABS_CREDENTIAL_JSON_FILE = "AZURE_APPLICATION_CREDENTIALS_JSON"
ABS_CREDENTIAL_DIRECTORY = "AZURE_APPLICATION_CREDENTIALS"
ABS_EMULATOR_ENABLED = "AZURE_EMULATOR_ENABLED"
ABS_EMULATOR_ENDPOINT = "AZURE_STORAGE_API_ENDPOINT"

AZURE_BLOB_STORAGE_HOST = "blob.core.windows.net"

STORAGE_ACCOUNT_FILE = "storageAccount"
STORAGE_KEY_FILE = "storageKey"

_TRUE_LITERALS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_LITERALS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass(frozen=True)
class AbsCredentials:
    """Azure storage account credentials.

    Attributes:
        storage_account: Storage account name
        storage_key: Shared account key (never printed)
        bucket_name: Optional container name carried by JSON credentials
    """

    storage_account: str
    storage_key: str = field(repr=False)
    bucket_name: str | None = None


def parse_bool(value: str, name: str) -> bool:
    """Parse a boolean flag using the Go strconv literal set.

    Raises:
        ConfigurationError: If value is not a recognised literal
    """
    if value in _TRUE_LITERALS:
        return True
    if value in _FALSE_LITERALS:
        return False
    raise ConfigurationError(f"invalid value for {name}: {value!r}, expected a boolean")


def resolve_abs_credentials(config: AbsConfig) -> AbsCredentials:
    """Resolve ABS credentials from the configured sources.

    Args:
        config: AbsConfig carrying the credential locations

    Returns:
        AbsCredentials from the first source that resolves

    Raises:
        CredentialsUnavailableError: If no source resolves or the chosen
            source is unreadable or malformed
        ConfigurationError: If the credential directory holds more than
            one JSON file
    """
    if config.credential_json_file is not None:
        path = Path(config.credential_json_file)
        logger.debug("Using ABS credentials JSON file", extra={"path": str(path)})
        return _read_credentials_json(path)

    if config.credential_directory is not None:
        directory = Path(config.credential_directory)
        json_file = _find_json_file(directory)
        if json_file is not None:
            logger.debug(
                "Using ABS credentials JSON file from directory",
                extra={"path": str(json_file)},
            )
            return _read_credentials_json(json_file)

        # Non JSON credential files may exist in the directory
        logger.debug("Using ABS credential files", extra={"directory": str(directory)})
        return _read_credential_files(directory)

    raise CredentialsUnavailableError(
        f"unable to get credentials: neither {config.env_prefix}{ABS_CREDENTIAL_JSON_FILE} "
        f"nor {config.env_prefix}{ABS_CREDENTIAL_DIRECTORY} is set"
    )


def get_abs_credentials_last_modified(config: AbsConfig) -> datetime:
    """Latest modification time of the credential source that resolves.

    Used by an external watcher to detect rotation without re-resolving.

    Raises:
        CredentialsUnavailableError: If no source is configured or the
            configured source cannot be inspected
        ConfigurationError: If the credential directory holds more than
            one JSON file
    """
    if config.credential_json_file is not None:
        return _latest_modified([Path(config.credential_json_file)])

    if config.credential_directory is not None:
        directory = Path(config.credential_directory)
        json_file = _find_json_file(directory)
        if json_file is not None:
            return _latest_modified([json_file])
        return _latest_modified(
            [directory / STORAGE_ACCOUNT_FILE, directory / STORAGE_KEY_FILE]
        )

    raise CredentialsUnavailableError("no environment variable set for the ABS credential file")


def construct_abs_uri(storage_account: str, config: AbsConfig) -> str:
    """Build the blob service URL for an account.

    Uses the public cloud host unless the emulator flag is set to true, in
    which case the emulator endpoint is used with the account appended.
    The protocol of the emulator endpoint is chosen by whoever sets it.

    Raises:
        ConfigurationError: If the emulator flag is not a boolean, or is true
            without an emulator endpoint
    """
    default_url = f"https://{storage_account}.{AZURE_BLOB_STORAGE_HOST}"

    if config.emulator_enabled is None:
        return default_url

    flag_name = f"{config.env_prefix}{ABS_EMULATOR_ENABLED}"
    if not parse_bool(config.emulator_enabled, flag_name):
        return default_url

    if not config.emulator_endpoint:
        raise ConfigurationError(
            f"{config.env_prefix}{ABS_EMULATOR_ENDPOINT} environment variable not set "
            f"while {flag_name} is true"
        )
    return f"{config.emulator_endpoint.rstrip('/')}/{storage_account}"


def _find_json_file(directory: Path) -> Path | None:
    try:
        candidates = sorted(
            p for p in directory.iterdir() if p.suffix == ".json" and p.is_file()
        )
    except OSError as e:
        raise CredentialsUnavailableError(
            f"error while finding a JSON credential file in {directory}: {e}"
        ) from e

    if len(candidates) > 1:
        raise ConfigurationError(
            f"expected at most one JSON credential file in {directory}, found {len(candidates)}"
        )
    return candidates[0] if candidates else None


def _read_credentials_json(path: Path) -> AbsCredentials:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CredentialsUnavailableError(
            f"error getting credentials using {path} file: {e}"
        ) from e

    if not isinstance(data, dict):
        raise CredentialsUnavailableError(
            f"error getting credentials using {path} file: expected a JSON object"
        )

    account = data.get("storageAccount")
    key = data.get("storageKey")
    bucket = data.get("bucketName")
    if not isinstance(account, str) or not isinstance(key, str):
        raise CredentialsUnavailableError(
            f"error getting credentials using {path} file: "
            "storageAccount and storageKey must be strings"
        )
    _check_not_empty(account, key)
    return AbsCredentials(
        storage_account=account,
        storage_key=key,
        bucket_name=bucket if isinstance(bucket, str) else None,
    )


def _read_credential_files(directory: Path) -> AbsCredentials:
    values = {}
    for name in (STORAGE_ACCOUNT_FILE, STORAGE_KEY_FILE):
        path = directory / name
        try:
            values[name] = path.read_bytes().decode("utf-8")
        except FileNotFoundError as e:
            raise CredentialsUnavailableError(
                f"error getting credentials from {directory} dir: {name} is missing"
            ) from e
        except (OSError, UnicodeDecodeError) as e:
            raise CredentialsUnavailableError(
                f"error getting credentials from {directory} dir: {e}"
            ) from e

    _check_not_empty(values[STORAGE_ACCOUNT_FILE], values[STORAGE_KEY_FILE])
    return AbsCredentials(
        storage_account=values[STORAGE_ACCOUNT_FILE],
        storage_key=values[STORAGE_KEY_FILE],
    )


def _check_not_empty(account: str, key: str) -> None:
    if not account or not key:
        raise CredentialsUnavailableError(
            "azure object storage credentials: storageKey or storageAccount is missing"
        )


def _latest_modified(paths: list[Path]) -> datetime:
    latest = 0.0
    for path in paths:
        try:
            latest = max(latest, path.stat().st_mtime)
        except OSError as e:
            raise CredentialsUnavailableError(
                f"failed to get ABS credential timestamp of {path}: {e}"
            ) from e
    return datetime.fromtimestamp(latest, tz=timezone.utc)
