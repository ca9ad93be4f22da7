import pytest
from google.api_core.exceptions import Forbidden, NotFound

from pitchpractice.backend.gcs_utils import GCSObjectStorage, StorageError, build_gs_uri


class _Blob:
    def __init__(self, error):
        self.error = error

    def download_as_bytes(self):
        raise self.error


class _Client:
    def __init__(self, error):
        self.error = error

    def bucket(self, name):
        return self

    def blob(self, path):
        return _Blob(self.error)


def _storage_raising(error) -> GCSObjectStorage:
    storage = GCSObjectStorage("audio-bucket")
    storage._client = _Client(error)
    return storage


def test_build_gs_uri_strips_leading_slash():
    assert build_gs_uri("audio-bucket", "/session-1/run.webm") == "gs://audio-bucket/session-1/run.webm"


def test_missing_object_maps_to_file_not_found():
    with pytest.raises(FileNotFoundError, match="gs://audio-bucket/a.webm"):
        _storage_raising(NotFound("gone")).download_bytes("a.webm")


def test_permission_error_maps_to_storage_error():
    with pytest.raises(StorageError, match="bucket access denied"):
        _storage_raising(Forbidden("bucket access denied")).download_bytes("a.webm")
