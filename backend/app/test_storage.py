from __future__ import annotations

from types import SimpleNamespace
from unittest import IsolatedAsyncioTestCase, mock

from azure.core.exceptions import HttpResponseError, ServiceRequestError

from . import storage
from .errors import PersistenceUnavailable


class _FakeBlobClient:
    def __init__(self, blob_name: str, error: Exception | None = None):
        self.blob_name = blob_name
        self.uploaded = []
        self.url = f"https://example.com/{blob_name}"
        self._error = error

    def upload_blob(self, content: bytes, overwrite: bool = True, **kwargs):
        if self._error:
            raise self._error
        self.uploaded.append((content, overwrite, kwargs))


class _FakeContainerClient:
    def __init__(self, *, creation_exception: Exception | None = None, public_access: str | None = "blob",
                 upload_error: Exception | None = None):
        self._creation_exception = creation_exception
        self._public_access = public_access
        self._upload_error = upload_error
        self.create_calls: list[str | None] = []
        self.latest: _FakeBlobClient | None = None

    def create_container(self, public_access: str | None = None):
        self.create_calls.append(public_access)
        if self._creation_exception and public_access:
            raise self._creation_exception
        if public_access:
            self._public_access = public_access

    def get_container_properties(self):
        return SimpleNamespace(public_access=self._public_access)

    def get_blob_client(self, blob_name: str) -> _FakeBlobClient:
        self.latest = _FakeBlobClient(blob_name, self._upload_error)
        return self.latest


class _FakeBlobService:
    def __init__(self, container_client: _FakeContainerClient, *, credential: object | None = None,
                 user_delegation_key: object | None = None):
        self._container_client = container_client
        self.account_name = "account-name"
        self.credential = credential if credential is not None else object()
        self._user_delegation_key = user_delegation_key

    def get_container_client(self, container_name: str) -> _FakeContainerClient:
        self.container_name = container_name
        return self._container_client

    def get_user_delegation_key(self, start, expiry):
        self.user_delegation_key_args = (start, expiry)
        return self._user_delegation_key


def _forbidden() -> HttpResponseError:
    error = HttpResponseError(message="forbidden")
    error.error_code = "PublicAccessNotPermitted"
    return error


class QuestionImageStoreTests(IsolatedAsyncioTestCase):
    async def test_upload_to_public_container(self):
        container = _FakeContainerClient()
        images = storage.QuestionImageStore(None, "images", service=_FakeBlobService(container))

        with mock.patch("backend.app.storage.generate_blob_sas") as mock_generate_sas:
            url = await images.upload("q1", "flag.png", b"data")

        self.assertEqual(url, container.latest.url)
        self.assertTrue(container.latest.blob_name.startswith("questions/q1-"))
        self.assertTrue(container.latest.blob_name.endswith(".png"))
        content, overwrite, kwargs = container.latest.uploaded[0]
        self.assertEqual(content, b"data")
        self.assertEqual(kwargs["content_settings"].content_type, "image/png")
        self.assertEqual(container.create_calls, ["blob"])
        mock_generate_sas.assert_not_called()

    async def test_container_is_prepared_once(self):
        container = _FakeContainerClient()
        images = storage.QuestionImageStore(None, "images", service=_FakeBlobService(container))
        await images.upload("q1", "a.png", b"one")
        await images.upload("q2", "b.png", b"two")
        self.assertEqual(container.create_calls, ["blob"])

    async def test_private_container_gets_sas_url(self):
        container = _FakeContainerClient(creation_exception=_forbidden(), public_access=None)
        credential = object()
        service = _FakeBlobService(container, credential=credential)
        images = storage.QuestionImageStore(None, "images", service=service)

        with mock.patch("backend.app.storage.generate_blob_sas", return_value="sig") as mock_generate_sas:
            url = await images.upload("q1", "flag.png", b"data", "image/png")

        self.assertTrue(url.endswith("?sig"))
        self.assertEqual(container.create_calls, ["blob", None])
        kwargs = mock_generate_sas.call_args.kwargs
        self.assertEqual(kwargs["account_name"], service.account_name)
        self.assertEqual(kwargs["container_name"], "images")
        self.assertEqual(kwargs["blob_name"], container.latest.blob_name)
        self.assertIs(kwargs["credential"], credential)
        self.assertEqual(str(kwargs["permission"]), str(storage.BlobSasPermissions(read=True)))

    async def test_token_credentials_sign_with_user_delegation_key(self):
        class _TokenCredential(storage.TokenCredential):
            def get_token(self, *args, **kwargs):
                raise NotImplementedError

        container = _FakeContainerClient(creation_exception=_forbidden(), public_access=None)
        delegation_key = object()
        service = _FakeBlobService(container, credential=_TokenCredential(), user_delegation_key=delegation_key)
        images = storage.QuestionImageStore(None, "images", service=service)

        with mock.patch("backend.app.storage.generate_blob_sas", return_value="sig") as mock_generate_sas:
            url = await images.upload("q1", "flag.png", b"data", "image/png")

        self.assertTrue(url.endswith("?sig"))
        self.assertIs(mock_generate_sas.call_args.kwargs["user_delegation_key"], delegation_key)
        start, expiry = service.user_delegation_key_args
        self.assertEqual(expiry - start, storage.SAS_LIFETIME)

    async def test_empty_upload_is_rejected(self):
        container = _FakeContainerClient()
        images = storage.QuestionImageStore(None, "images", service=_FakeBlobService(container))
        with self.assertRaises(ValueError):
            await images.upload("q1", "flag.png", b"")
        self.assertEqual(container.create_calls, [])

    async def test_azure_failure_is_persistence_unavailable(self):
        container = _FakeContainerClient(upload_error=ServiceRequestError("connection reset"))
        images = storage.QuestionImageStore(None, "images", service=_FakeBlobService(container))
        with self.assertRaises(PersistenceUnavailable):
            await images.upload("q1", "flag.png", b"data")

    def test_unconfigured_store(self):
        images = storage.QuestionImageStore(None, "images")
        self.assertFalse(images.configured)
        self.assertTrue(storage.QuestionImageStore("UseDevelopmentStorage=true", "images").configured)
