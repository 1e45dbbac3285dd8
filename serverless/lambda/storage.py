# S3 access for the resize Lambda

import logging

import boto3

logger = logging.getLogger(__name__)

# ---------- AWS clients ----------
_s3_client = None


# Create the S3 client on first use and keep it for the life of the container
def _get_s3_client():
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3")
    return _s3_client


class ObjectStore:
    """Narrow view of one bucket: download, upload, delete and content type lookup."""

    def __init__(self, bucket, client=None):
        self.bucket = bucket
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_s3_client()
        return self._client

    def content_type(self, key):
        """Content-Type recorded on the object, or "" when none was set."""
        res = self.client.head_object(Bucket=self.bucket, Key=key)
        return res.get("ContentType") or ""

    def download(self, key, dest):
        self.client.download_file(self.bucket, key, dest)
        return dest

    def upload(self, src, key, metadata):
        extra = {"ContentType": metadata.content_type}
        if metadata.cache_control:
            extra["CacheControl"] = metadata.cache_control
        self.client.upload_file(src, self.bucket, key, ExtraArgs=extra)
        return key

    def delete(self, key):
        self.client.delete_object(Bucket=self.bucket, Key=key)


def get_store(bucket):
    return ObjectStore(bucket)
