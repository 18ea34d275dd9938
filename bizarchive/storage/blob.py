"""BizArchive - S3 Blob Store.

Thin synchronous wrapper over a boto3 S3 client. Callers on the event loop go
through ``run_blocking``.
"""

from pathlib import Path
from typing import List, Optional

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.credentials import RefreshableCredentials
from botocore.exceptions import ClientError
from botocore.session import get_session

from bizarchive.config import Settings, settings as default_settings
from bizarchive.core.logging import get_logger

logger = get_logger("storage.blob")

ARCHIVE_SESSION_NAME = "sox-archive-session"
CHECKPOINT_SESSION_NAME = "sox-checkpoint-session"
LOCALSTACK_CREDENTIALS = {"aws_access_key_id": "test", "aws_secret_access_key": "test"}
_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


class S3BlobStore:
    """put / get / list against one bucket."""

    def __init__(self, client: BaseClient, bucket: str):
        self.client = client
        self.bucket = bucket

    def put_file(self, key: str, path: Path, content_type: str) -> None:
        self.client.upload_file(
            str(path), self.bucket, key, ExtraArgs={"ContentType": content_type}
        )

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        self.client.put_object(
            Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
        )

    def get_bytes(self, key: str) -> Optional[bytes]:
        """Object body, or None when the key does not exist."""
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                return None
            raise
        return response["Body"].read()

    def list_recent(self, prefix: str, limit: int = 10) -> List[str]:
        """Most recently modified keys under ``prefix`` (first 1000 scanned)."""
        response = self.client.list_objects_v2(
            Bucket=self.bucket, Prefix=prefix, MaxKeys=1000
        )
        objects = sorted(
            response.get("Contents", []),
            key=lambda obj: obj["LastModified"],
            reverse=True,
        )
        return [obj["Key"] for obj in objects[:limit]]


def _custom_endpoint(cfg: Settings) -> Optional[str]:
    if cfg.use_localstack or cfg.s3_endpoint:
        return cfg.s3_endpoint
    return None


def _assume_role_session(
    base: boto3.Session, cfg: Settings, role_arn: str, session_name: str
) -> boto3.Session:
    """Session whose credentials re-assume ``role_arn`` before they expire."""
    sts = base.client("sts", region_name=cfg.aws_region, endpoint_url=_custom_endpoint(cfg))

    def refresh() -> dict:
        creds = sts.assume_role(RoleArn=role_arn, RoleSessionName=session_name)["Credentials"]
        logger.info(f"Assumed role {role_arn} ({session_name})")
        return {
            "access_key": creds["AccessKeyId"],
            "secret_key": creds["SecretAccessKey"],
            "token": creds["SessionToken"],
            "expiry_time": creds["Expiration"].isoformat(),
        }

    credentials = RefreshableCredentials.create_from_metadata(
        metadata=refresh(), refresh_using=refresh, method="sts-assume-role"
    )
    botocore_session = get_session()
    botocore_session._credentials = credentials
    botocore_session.set_config_variable("region", cfg.aws_region)
    return boto3.Session(botocore_session=botocore_session)


def build_s3_client(
    role_arn: Optional[str] = None,
    session_name: str = ARCHIVE_SESSION_NAME,
    cfg: Optional[Settings] = None,
) -> BaseClient:
    """Build an S3 client honouring LocalStack, custom endpoints and assume-role."""
    cfg = cfg or default_settings
    if cfg.use_localstack:
        session = boto3.Session(region_name=cfg.aws_region, **LOCALSTACK_CREDENTIALS)
    else:
        session = boto3.Session(region_name=cfg.aws_region)

    if role_arn:
        session = _assume_role_session(session, cfg, role_arn, session_name)

    endpoint = _custom_endpoint(cfg)
    path_style = bool(endpoint) or cfg.s3_force_path_style
    client_config = Config(s3={"addressing_style": "path"}) if path_style else None
    logger.info(
        f"S3 client ready (region={cfg.aws_region}, endpoint={endpoint or 'default'}, "
        f"path_style={path_style}, assume_role={'yes' if role_arn else 'no'})"
    )
    return session.client(
        "s3", region_name=cfg.aws_region, endpoint_url=endpoint, config=client_config
    )


def archive_blob_store(cfg: Optional[Settings] = None) -> S3BlobStore:
    cfg = cfg or default_settings
    client = build_s3_client(cfg.assume_role_archive_arn, ARCHIVE_SESSION_NAME, cfg)
    return S3BlobStore(client, cfg.s3_data_bucket)


def checkpoint_blob_store(cfg: Optional[Settings] = None) -> S3BlobStore:
    cfg = cfg or default_settings
    client = build_s3_client(cfg.assume_role_checkpoint_arn, CHECKPOINT_SESSION_NAME, cfg)
    return S3BlobStore(client, cfg.s3_checkpoint_bucket)

