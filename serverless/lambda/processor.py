# processor.py
import os
import json
import logging
import posixpath
import tempfile
import urllib.parse
from collections import namedtuple

from imaging import get_resizer
from storage import get_store

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

# ---------- Settings ----------
# Bounding box of the resized copy in pixels
IMAGE_MAX_WIDTH = int(os.getenv("IMAGE_MAX_WIDTH", "500"))
IMAGE_MAX_HEIGHT = int(os.getenv("IMAGE_MAX_HEIGHT", "500"))
# Prefix added to the file name of resized objects
RESIZED_PREFIX = os.getenv("RESIZED_PREFIX", "resized-")
# Client-side caching of resized objects (7 days)
CACHE_CONTROL = os.getenv("CACHE_CONTROL", "public,max-age=604800")
# "imagemagick" shells out to convert, "pillow" resizes in process
RESIZE_BACKEND = os.getenv("RESIZE_BACKEND", "imagemagick")
CONVERT_BIN = os.getenv("CONVERT_BIN", "convert")
TMP_ROOT = os.getenv("TMP_ROOT", "").strip() or tempfile.gettempdir()

# ---------- Feature switches ----------
# Delete the original object once the resized copy is stored
ENABLE_DELETE_SOURCE = os.getenv("ENABLE_DELETE_SOURCE", "true").lower() == "true"
# Remove local temp files when a step fails; the error is still raised
ENABLE_CLEANUP_ON_ERROR = os.getenv("ENABLE_CLEANUP_ON_ERROR", "false").lower() == "true"

# content_type is None for S3 notifications until read from the object
UploadEvent = namedtuple("UploadEvent", ["bucket", "key", "content_type"])
PathSet = namedtuple("PathSet", ["source_key", "resized_key", "local_source", "local_resized"])
ResizeMetadata = namedtuple("ResizeMetadata", ["content_type", "cache_control"])


def resized_key_for(key, prefix=None):
    """Insert the prefix right before the file name, keeping the directory."""
    prefix = RESIZED_PREFIX if prefix is None else prefix
    directory, name = posixpath.split(key)
    return posixpath.normpath(posixpath.join(directory, prefix + name))


def _local_path(tmp_root, key):
    rel = posixpath.normpath(key)
    if posixpath.isabs(rel) or rel == ".." or rel.startswith("../"):
        raise ValueError(f"object key escapes temp root: {key!r}")
    return os.path.join(tmp_root, *rel.split("/"))


def derive_paths(key, tmp_root=None, prefix=None):
    tmp_root = tmp_root or TMP_ROOT
    resized_key = resized_key_for(key, prefix)
    return PathSet(
        source_key=key,
        resized_key=resized_key,
        local_source=_local_path(tmp_root, key),
        local_resized=_local_path(tmp_root, resized_key),
    )


def resize_metadata(content_type):
    return ResizeMetadata(content_type=content_type, cache_control=CACHE_CONTROL)


def is_resized_key(key, prefix=None):
    prefix = RESIZED_PREFIX if prefix is None else prefix
    return posixpath.basename(key).startswith(prefix)


# Return the reason an upload is skipped, or None when it should be resized
def skip_reason(upload, prefix=None):
    if not (upload.content_type or "").startswith("image/"):
        return "not an image"
    if is_resized_key(upload.key, prefix):
        return "already resized"
    return None


# Remove a local file; a file that is already gone is fine
def _remove(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.debug(f"temp file already gone: {path}")


def _cleanup(paths):
    _remove(paths.local_source)
    _remove(paths.local_resized)


def process_upload(upload, store=None, resizer=None, tmp_root=None):
    """Resize one uploaded object.

    Returns False when the object is skipped, True once the resized copy is
    stored, the temp files are removed and (unless disabled) the original
    object is deleted. Errors from any step propagate to the caller.
    """
    reason = skip_reason(upload)
    if reason:
        logger.info(f"skip {upload.key}: {reason}")
        return False

    store = store or get_store(upload.bucket)
    resizer = resizer or get_resizer(RESIZE_BACKEND, CONVERT_BIN)
    paths = derive_paths(upload.key, tmp_root)
    metadata = resize_metadata(upload.content_type)

    try:
        os.makedirs(os.path.dirname(paths.local_source), exist_ok=True)

        store.download(paths.source_key, paths.local_source)
        logger.info(f"downloaded s3://{upload.bucket}/{paths.source_key} to {paths.local_source}")

        resizer.resize(paths.local_source, paths.local_resized, IMAGE_MAX_WIDTH, IMAGE_MAX_HEIGHT)
        logger.info(f"resized copy created at {paths.local_resized}")

        store.upload(paths.local_resized, paths.resized_key, metadata)
        logger.info(f"resized copy uploaded to s3://{upload.bucket}/{paths.resized_key}")
    except Exception:
        if ENABLE_CLEANUP_ON_ERROR:
            _cleanup(paths)
        raise

    _cleanup(paths)

    if ENABLE_DELETE_SOURCE:
        store.delete(paths.source_key)
        logger.info(f"original s3://{upload.bucket}/{paths.source_key} deleted")

    print(json.dumps({"ok": True, "src": paths.source_key, "dst": paths.resized_key}))
    return True


# Turn a Lambda event into upload events
def parse_event(event):
    if "Records" in event:
        uploads = []
        for rec in event["Records"]:
            s3 = rec.get("s3")
            if not s3:
                raise ValueError("unsupported event record")
            bucket = s3["bucket"]["name"]
            key = urllib.parse.unquote_plus(s3["object"]["key"])
            uploads.append(UploadEvent(bucket, key, None))
        return uploads
    if "bucket" in event and "name" in event:
        return [UploadEvent(event["bucket"], event["name"], event.get("contentType") or "")]
    raise ValueError("unsupported event")


def handler(event, context, store_factory=None, resizer=None):
    store_factory = store_factory or get_store
    processed = skipped = 0
    for upload in parse_event(event):
        # our own output; skip before any remote call
        if is_resized_key(upload.key):
            logger.info(f"skip {upload.key}: already resized")
            skipped += 1
            continue
        store = store_factory(upload.bucket)
        if upload.content_type is None:
            # S3 notifications do not carry the content type
            upload = upload._replace(content_type=store.content_type(upload.key))
        if process_upload(upload, store=store, resizer=resizer):
            processed += 1
        else:
            skipped += 1
    return {"status": "done", "processed": processed, "skipped": skipped}
