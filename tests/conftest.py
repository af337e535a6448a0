from __future__ import annotations

import os
import uuid

import pytest

from commonblob import CloudStorage, new_cloud_storage


def _live_configs() -> dict[str, dict | None]:
    """Storage targets for the live suite, from the environment.

    Emulator targets need only their endpoint; real-cloud targets need
    credentials. A target without its variables is skipped.
    """
    configs: dict[str, dict | None] = {}
    bucket = os.environ.get("TEST_BUCKET_NAME", "gdpr-req-data")

    endpoint = os.environ.get("TEST_AWS_S3_EMULATOR_ENDPOINT")
    configs["aws-emulator"] = (
        {
            "is_testing": True,
            "bucket_provider": "aws",
            "bucket_name": bucket,
            "aws_s3_endpoint": endpoint,
            "aws_s3_region": "us-west-2",
            "aws_s3_access_key_id": "AWS_ACCESS_KEY_ID",
            "aws_s3_secret_access_key": "AWS_SECRET_ACCESS_KEY",
        }
        if endpoint
        else None
    )

    emulator_host = os.environ.get("TEST_GCP_STORAGE_EMULATOR_HOST")
    configs["gcp-emulator"] = (
        {
            "is_testing": True,
            "bucket_provider": "gcp",
            "bucket_name": bucket,
            "gcp_credentials_json": '{"type": "service_account", "project_id": "my-project-id"}',
            "gcp_storage_emulator_host": emulator_host,
        }
        if emulator_host
        else None
    )

    # Warning: these use real cloud credentials.
    region = os.environ.get("AWS_REGION")
    key_id = os.environ.get("AWS_ACCESS_KEY_ID")
    secret = os.environ.get("AWS_SECRET_ACCESS_KEY")
    configs["aws"] = (
        {
            "is_testing": False,
            "bucket_provider": "aws",
            "bucket_name": bucket,
            "aws_s3_endpoint": os.environ.get("AWS_S3_ENDPOINT", ""),
            "aws_s3_region": region,
            "aws_s3_access_key_id": key_id,
            "aws_s3_secret_access_key": secret,
        }
        if region and key_id and secret
        else None
    )

    credentials = os.environ.get("GCP_CREDENTIAL_JSON")
    configs["gcp"] = (
        {
            "is_testing": False,
            "bucket_provider": "gcp",
            "bucket_name": bucket,
            "gcp_credentials_json": credentials,
        }
        if credentials
        else None
    )
    return configs


LIVE_CONFIGS = _live_configs()


@pytest.fixture(scope="module", params=sorted(LIVE_CONFIGS))
def live_storage(request) -> CloudStorage:
    config = LIVE_CONFIGS[request.param]
    if config is None:
        pytest.skip(f"{request.param}: storage target not configured")
    storage = new_cloud_storage(None, **config)
    yield storage
    storage.close()


@pytest.fixture(scope="module")
def bucket_prefix(live_storage) -> str:
    prefix = f"test_{uuid.uuid4()}"
    live_storage.create_bucket(prefix, 1)
    return prefix
