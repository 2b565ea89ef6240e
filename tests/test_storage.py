import pytest

from core.errors import NotFoundError, ValidationError
from services.storage import ObjectStorage


@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(str(tmp_path), '/media/')


def test_upload_and_public_url(storage, tmp_path):
    path = storage.upload('partner-logos', 'acme/logo.png', b'png-bytes', 'image/png')
    assert path == 'acme/logo.png'
    assert (tmp_path / 'partner-logos' / 'acme' / 'logo.png').read_bytes() == b'png-bytes'
    assert storage.get_public_url('partner-logos', path) == '/media/partner-logos/acme/logo.png'


def test_documents_accept_any_type(storage):
    assert storage.upload('documents', 'brief.pdf', b'%PDF') == 'brief.pdf'


def test_existing_object_needs_upsert(storage):
    storage.upload('documents', 'brief.pdf', b'v1')
    with pytest.raises(ValidationError):
        storage.upload('documents', 'brief.pdf', b'v2')
    storage.upload('documents', 'brief.pdf', b'v2', upsert=True)
    with open(storage.open('documents', 'brief.pdf'), 'rb') as handle:
        assert handle.read() == b'v2'


@pytest.mark.parametrize('path', ['../escape.txt', 'a/../../b.txt', '', '/'])
def test_rejects_traversal(storage, path):
    with pytest.raises(ValidationError):
        storage.upload('documents', path, b'x')


def test_rejects_unknown_bucket(storage):
    with pytest.raises(ValidationError):
        storage.upload('secrets', 'a.txt', b'x')


def test_open_and_remove(storage):
    storage.upload('images', 'a.png', b'x', 'image/png')
    storage.remove('images', 'a.png')
    with pytest.raises(NotFoundError):
        storage.open('images', 'a.png')
