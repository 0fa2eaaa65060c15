import config
from storage.base import StorageSink
from storage.local import LocalDiskSink


def create_sink(backend: str = config.STORAGE_BACKEND) -> StorageSink:
    if backend == "local":
        return LocalDiskSink(config.RECORDINGS_DIR)
    if backend == "s3":
        from storage.s3 import S3Sink, create_client

        client = create_client(
            config.S3_ENDPOINT_URL,
            config.S3_ACCESS_KEY_ID,
            config.S3_SECRET_ACCESS_KEY,
            config.S3_REGION,
        )
        return S3Sink(client, config.S3_BUCKET, config.S3_SPOOL_DIR, config.S3_PUBLIC_URL)
    raise ValueError(f"Unknown storage backend: {backend!r}")
