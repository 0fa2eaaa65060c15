import asyncio
import logging
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from recorder.errors import StorageError
from storage.base import StorageSink, object_name
from storage.local import LocalDiskSink

logger = logging.getLogger(__name__)


def create_client(endpoint_url: str, access_key_id: str, secret_access_key: str,
                  region: str = "auto"):
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url or None,
        aws_access_key_id=access_key_id or None,
        aws_secret_access_key=secret_access_key or None,
        region_name=region,
    )


class S3Sink(StorageSink):
    """S3-compatible object store (R2, MinIO, AWS).

    Bytes are spooled to a local file while the recording is in progress so
    the WAV header can still be patched in place; the object is uploaded on
    finalize and the spool file removed.
    """

    def __init__(self, client, bucket: str, spool_dir: Path, public_url: str = ""):
        self.client = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._spool = LocalDiskSink(spool_dir)
        self._namespaces: dict[str, str] = {}

    @staticmethod
    def key_for(namespace: str, recording_id: str) -> str:
        return f"{namespace}/{object_name(recording_id)}"

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"s3://{self.bucket}/{key}"

    def has_active_upload(self, recording_id: str) -> bool:
        return self._spool.has_active_upload(recording_id)

    async def begin_upload(self, namespace: str, recording_id: str) -> None:
        await self._spool.begin_upload(namespace, recording_id)
        self._namespaces[recording_id] = namespace

    async def append(self, recording_id: str, data: bytes) -> None:
        await self._spool.append(recording_id, data)

    async def size(self, recording_id: str) -> int:
        return await self._spool.size(recording_id)

    async def write_header(self, recording_id: str, header: bytes) -> None:
        await self._spool.write_header(recording_id, header)

    async def finalize(self, recording_id: str) -> str:
        namespace = self._namespaces.get(recording_id)
        spool_url = await self._spool.finalize(recording_id)
        if namespace is None:
            raise StorageError(f"Unknown namespace for {recording_id} ({spool_url})")

        spool_path = self._spool.path_for(namespace, recording_id)
        key = self.key_for(namespace, recording_id)
        try:
            await asyncio.to_thread(
                self.client.upload_file,
                str(spool_path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": "audio/wav"},
            )
        except (BotoCoreError, ClientError) as e:
            # Keep the spool so a later begin_upload/finalize can retry it
            raise StorageError(f"Upload of {key} failed: {e}") from e

        self._namespaces.pop(recording_id, None)
        await self._spool.delete(namespace, recording_id)
        url = self.url_for(key)
        logger.info("Uploaded %s", url)
        return url

    async def read(self, namespace: str, recording_id: str) -> bytes:
        key = self.key_for(namespace, recording_id)

        def _get() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_get)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not fetch {key}: {e}") from e

    async def delete(self, namespace: str, recording_id: str) -> None:
        key = self.key_for(namespace, recording_id)
        self._namespaces.pop(recording_id, None)
        await self._spool.delete(namespace, recording_id)
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not delete {key}: {e}") from e
