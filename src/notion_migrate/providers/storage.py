"""Object stores for generated assets."""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..api.exceptions import AuthenticationError, RateLimitError, TransientError
from ..config.config import StorageConfig
from .base import ObjectStore

THROTTLING_CODES = {'SlowDown', 'Throttling', 'ThrottlingException', 'RequestLimitExceeded'}
DENIED_CODES = {'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch'}


def _content_type(path: str) -> str:
    suffix = Path(path).suffix.lower()
    return {
        '.png': 'image/png',
        '.jpg': 'image/jpeg',
        '.jpeg': 'image/jpeg',
        '.webp': 'image/webp',
    }.get(suffix, 'application/octet-stream')


class LocalObjectStore(ObjectStore):
    """Assets written under a local directory."""

    def __init__(self, root_dir: str, public_base_url: Optional[str] = None):
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip('/') if public_base_url else None

    async def put(self, data: bytes, path: str) -> str:
        target = self.root_dir / path
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix='.part')
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.replace(tmp_path, target)

        if self.public_base_url:
            return f'{self.public_base_url}/{path}'
        return target.resolve().as_uri()


def create_s3_client(config: StorageConfig) -> Any:
    """Create boto3 S3 client from storage settings."""
    session_kwargs = {}
    if config.profile:
        session_kwargs['profile_name'] = config.profile
    if config.region:
        session_kwargs['region_name'] = config.region
    session = boto3.session.Session(**session_kwargs)
    return session.client('s3')


class S3ObjectStore(ObjectStore):
    """Assets uploaded to an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        client: Any,
        region: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self.bucket = bucket
        self.client = client
        if public_base_url:
            self.public_base_url = public_base_url.rstrip('/')
        elif region:
            self.public_base_url = f'https://{bucket}.s3.{region}.amazonaws.com'
        else:
            self.public_base_url = f'https://{bucket}.s3.amazonaws.com'

    async def put(self, data: bytes, path: str) -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=_content_type(path),
            )
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in THROTTLING_CODES:
                raise RateLimitError(f'S3 throttled upload of {path}', retry_after=5)
            if code in DENIED_CODES:
                raise AuthenticationError(f'S3 denied upload of {path}: {code}')
            raise TransientError(f'S3 upload of {path} failed: {e}')
        except BotoCoreError as e:
            raise TransientError(f'S3 upload of {path} failed: {e}')

        return f'{self.public_base_url}/{path}'
