from contextlib import contextmanager
from datetime import timedelta

from google.cloud import storage

from .errors import StoreFailure
from .log import get_logger
from .utils import file_path, files_prefix

logger = get_logger(__name__)


@contextmanager
def _store_call(action: str, obj_name: str):
    try:
        yield
    except Exception as exc:
        logger.warning("GCS %s failed for %s: %s", action, obj_name, exc)
        raise StoreFailure(f"{action} failed: {exc}") from exc


def upload_file(bucket_name: str, uid: str, filename: str, content: bytes, content_type: str):
    obj_name = file_path(uid, filename)
    with _store_call("upload", obj_name):
        client = storage.Client()
        blob = client.bucket(bucket_name).blob(obj_name)
        blob.upload_from_string(content, content_type=content_type)
    return obj_name, len(content)


def list_files(bucket_name: str, uid: str) -> list[str]:
    """Full object paths under the user's file prefix."""
    prefix = files_prefix(uid)
    with _store_call("list", prefix):
        client = storage.Client()
        # delimiter keeps the listing flat, like a storage "folder"
        return [b.name for b in client.list_blobs(bucket_name, prefix=prefix, delimiter="/")]


def resolve_url(bucket_name: str, obj_name: str, *, ttl_seconds: int = 900) -> str:
    """Signed GET URL; valid for `ttl_seconds` and never stored beyond a listing."""
    with _store_call("resolve url", obj_name):
        client = storage.Client()
        blob = client.bucket(bucket_name).blob(obj_name)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
        )


def download_bytes(bucket_name: str, obj_name: str, *, max_bytes: int = 5_000_000) -> bytes:
    """Download up to `max_bytes + 1` bytes so the caller can detect truncation."""
    with _store_call("download", obj_name):
        client = storage.Client()
        blob = client.bucket(bucket_name).blob(obj_name)
        with blob.open("rb") as stream:
            return stream.read(max_bytes + 1)


def delete_object(bucket_name: str, obj_name: str):
    with _store_call("delete", obj_name):
        client = storage.Client()
        client.bucket(bucket_name).blob(obj_name).delete()
