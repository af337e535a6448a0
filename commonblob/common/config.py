from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from commonblob.infra.storage.errors import ConfigurationError

ENV_FILE = Path(".env")

SUPPORTED_PROVIDERS: tuple[str, ...] = ("aws", "gcp")

MIB = 1024 * 1024
# S3 rejects multipart parts smaller than 5 MiB (except the last one).
S3_MIN_PART_SIZE_BYTES = 5 * MIB
# GCS resumable upload chunks must be multiples of 256 KiB.
GCS_CHUNK_QUANTUM_BYTES = 256 * 1024


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


@dataclass(frozen=True)
class StorageSettings:
    BUCKET_PROVIDER: str
    BUCKET_NAME: str
    IS_TESTING: bool = False
    AWS_S3_ENDPOINT: str = ""
    AWS_REGION: str = ""
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    GCP_CREDENTIALS_JSON: str = ""
    GCP_STORAGE_EMULATOR_HOST: str = ""
    S3_PART_SIZE_BYTES: int = 8 * MIB
    GCS_CHUNK_SIZE_BYTES: int = 8 * MIB
    LIST_PAGE_SIZE: int = 1000
    CONNECT_TIMEOUT_SECONDS: float = 10.0
    READ_TIMEOUT_SECONDS: float = 60.0
    CREATE_BUCKET_BACKOFF_SECONDS: float = 0.5
    CREATE_BUCKET_MAX_BACKOFF_SECONDS: float = 10.0

    def __post_init__(self) -> None:
        provider = (self.BUCKET_PROVIDER or "").strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported bucket provider: {self.BUCKET_PROVIDER!r}. "
                "Expected 'aws' or 'gcp'."
            )
        object.__setattr__(self, "BUCKET_PROVIDER", provider)
        if not self.BUCKET_NAME:
            raise ConfigurationError("BUCKET_NAME is required")
        if provider == "aws":
            self._validate_aws()
        else:
            self._validate_gcp()
        if self.LIST_PAGE_SIZE <= 0:
            raise ConfigurationError("LIST_PAGE_SIZE must be positive")
        if self.S3_PART_SIZE_BYTES < S3_MIN_PART_SIZE_BYTES:
            raise ConfigurationError("S3_PART_SIZE_BYTES must be at least 5 MiB")
        if (
            self.GCS_CHUNK_SIZE_BYTES <= 0
            or self.GCS_CHUNK_SIZE_BYTES % GCS_CHUNK_QUANTUM_BYTES
        ):
            raise ConfigurationError(
                "GCS_CHUNK_SIZE_BYTES must be a positive multiple of 256 KiB"
            )

    def _validate_aws(self) -> None:
        if not self.AWS_REGION:
            raise ConfigurationError("AWS_REGION is required for the aws provider")
        if not self.AWS_ACCESS_KEY_ID or not self.AWS_SECRET_ACCESS_KEY:
            raise ConfigurationError(
                "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY are required"
            )
        if self.AWS_S3_ENDPOINT:
            parsed = urlparse(self.AWS_S3_ENDPOINT)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ConfigurationError(
                    f"AWS_S3_ENDPOINT must be an http(s) URL: {self.AWS_S3_ENDPOINT!r}"
                )

    def _validate_gcp(self) -> None:
        self.gcp_credentials_info()

    def gcp_credentials_info(self) -> dict:
        """Parse ``GCP_CREDENTIALS_JSON`` into a mapping."""
        if not self.GCP_CREDENTIALS_JSON:
            raise ConfigurationError("GCP_CREDENTIALS_JSON is required for the gcp provider")
        try:
            info = json.loads(self.GCP_CREDENTIALS_JSON)
        except ValueError as exc:
            raise ConfigurationError(
                f"GCP_CREDENTIALS_JSON is not valid JSON: {exc}", cause=exc
            ) from exc
        if not isinstance(info, dict):
            raise ConfigurationError("GCP_CREDENTIALS_JSON must be a JSON object")
        if not info.get("type"):
            raise ConfigurationError("GCP_CREDENTIALS_JSON is missing 'type'")
        return info

    @classmethod
    def from_environment(cls) -> "StorageSettings":
        _load_env_file()
        return cls(
            BUCKET_PROVIDER=os.environ.get("BUCKET_PROVIDER", ""),
            BUCKET_NAME=os.environ.get("BUCKET_NAME", ""),
            IS_TESTING=_as_bool(os.environ.get("IS_TESTING"), cls.IS_TESTING),
            AWS_S3_ENDPOINT=os.environ.get("AWS_S3_ENDPOINT", ""),
            AWS_REGION=os.environ.get("AWS_REGION", ""),
            AWS_ACCESS_KEY_ID=os.environ.get("AWS_ACCESS_KEY_ID", ""),
            AWS_SECRET_ACCESS_KEY=os.environ.get("AWS_SECRET_ACCESS_KEY", ""),
            GCP_CREDENTIALS_JSON=os.environ.get("GCP_CREDENTIAL_JSON", ""),
            GCP_STORAGE_EMULATOR_HOST=os.environ.get("GCP_STORAGE_EMULATOR_HOST", ""),
            S3_PART_SIZE_BYTES=int(
                os.environ.get("S3_PART_SIZE_BYTES", cls.S3_PART_SIZE_BYTES)
            ),
            GCS_CHUNK_SIZE_BYTES=int(
                os.environ.get("GCS_CHUNK_SIZE_BYTES", cls.GCS_CHUNK_SIZE_BYTES)
            ),
            LIST_PAGE_SIZE=int(os.environ.get("LIST_PAGE_SIZE", cls.LIST_PAGE_SIZE)),
            CONNECT_TIMEOUT_SECONDS=float(
                os.environ.get("CONNECT_TIMEOUT_SECONDS", cls.CONNECT_TIMEOUT_SECONDS)
            ),
            READ_TIMEOUT_SECONDS=float(
                os.environ.get("READ_TIMEOUT_SECONDS", cls.READ_TIMEOUT_SECONDS)
            ),
            CREATE_BUCKET_BACKOFF_SECONDS=float(
                os.environ.get(
                    "CREATE_BUCKET_BACKOFF_SECONDS", cls.CREATE_BUCKET_BACKOFF_SECONDS
                )
            ),
            CREATE_BUCKET_MAX_BACKOFF_SECONDS=float(
                os.environ.get(
                    "CREATE_BUCKET_MAX_BACKOFF_SECONDS",
                    cls.CREATE_BUCKET_MAX_BACKOFF_SECONDS,
                )
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> StorageSettings:
    return StorageSettings.from_environment()
